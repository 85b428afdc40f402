"""Embedding client backed by a local Ollama server.

Transient failures (connection refused, server-side errors) are retried
with exponential backoff. A missing model and a slow request fail at once.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import ollama

from agentmem.core.exceptions import (
    EmbeddingConnectionError,
    EmbeddingResponseError,
    EmbeddingTimeoutError,
    ModelNotFoundError,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ollama.ResponseError, ConnectionError, OSError)


class OllamaClient:
    """Computes embedding vectors through Ollama's async API.

    Args:
        base_url: Address of the Ollama server.
        default_timeout: Seconds allowed for a single request.
        max_retries: Attempts made before giving up on a transient failure.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        default_timeout: float = 10.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self._client = ollama.AsyncClient(host=base_url)

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        model: str = "unknown",
    ) -> Any:
        """Await ``func()`` until it succeeds or attempts run out.

        Sleeps 1s, 2s, 4s... between attempts.

        Raises:
            ModelNotFoundError: Ollama reports ``model`` is not pulled.
            EmbeddingTimeoutError: An attempt exceeded ``default_timeout``.
            EmbeddingConnectionError: Every attempt hit a transient failure.
            EmbeddingResponseError: Any other failure.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(func(), timeout=self.default_timeout)
            except TimeoutError as e:
                raise EmbeddingTimeoutError(
                    f"No answer from Ollama within {self.default_timeout}s"
                ) from e
            except RETRYABLE_ERRORS as e:
                if isinstance(e, ollama.ResponseError) and "not found" in str(e).lower():
                    raise ModelNotFoundError(model) from e
                last_error = e
                logger.debug(f"Ollama attempt {attempt}/{self.max_retries} failed: {e}")
            except Exception as e:
                raise EmbeddingResponseError(f"Unexpected error: {e}") from e

            if attempt < self.max_retries:
                await asyncio.sleep(2 ** (attempt - 1))

        raise EmbeddingConnectionError(
            f"Ollama at {self.base_url} unreachable after {self.max_retries} attempts"
        ) from last_error

    async def embed(self, model: str, text: str) -> list[float]:
        """Embedding vector of ``text`` computed by ``model``.

        Raises:
            ModelNotFoundError: If the model is not available.
            EmbeddingConnectionError: If Ollama cannot be reached.
            EmbeddingTimeoutError: If the request is too slow.
            EmbeddingResponseError: If the answer carries no vector.
        """

        async def request() -> list[float]:
            response = await self._client.embeddings(model=model, prompt=text)
            return list(response.get("embedding") or [])

        vector: list[float] = await self._retry_with_backoff(request, model=model)
        if not vector:
            raise EmbeddingResponseError(f"{model} returned an empty embedding")
        return vector

    async def embed_batch(self, model: str, texts: list[str]) -> list[list[float]]:
        """Embed several texts with concurrent single requests."""
        return list(await asyncio.gather(*(self.embed(model, text) for text in texts)))

    async def health_check(self) -> bool:
        """True when the server answers a model listing request."""
        try:
            await self._retry_with_backoff(self._client.list, model="list")
        except Exception as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False
        return True
