"""Unit tests for the Ollama embedding client."""

from unittest.mock import AsyncMock, patch

import ollama
import pytest

from agentmem.core.exceptions import (
    EmbeddingConnectionError,
    EmbeddingResponseError,
    EmbeddingTimeoutError,
    ModelNotFoundError,
)
from agentmem.llm.client import OllamaClient


class TestClientSettings:
    """Tests for constructor settings."""

    def test_defaults_target_local_server(self):
        """Test a bare client talks to the local Ollama port."""
        client = OllamaClient()

        assert (client.base_url, client.default_timeout, client.max_retries) == (
            "http://localhost:11434",
            10.0,
            3,
        )

    def test_settings_are_kept(self):
        """Test explicit settings override the defaults."""
        client = OllamaClient(base_url="http://gpu-box:11434", default_timeout=2.5, max_retries=5)

        assert (client.base_url, client.default_timeout, client.max_retries) == (
            "http://gpu-box:11434",
            2.5,
            5,
        )


class TestEmbed:
    """Tests for single and batch embedding requests."""

    @pytest.mark.asyncio
    async def test_embed_returns_vector(self):
        """Test the vector from the response is returned as floats."""
        client = OllamaClient()
        vector = [0.1, 0.2, 0.3, 0.4]
        client._client.embeddings = AsyncMock(return_value={"embedding": vector})

        result = await client.embed(model="nomic-embed-text", text="ran tests")

        assert result == vector
        client._client.embeddings.assert_called_once_with(
            model="nomic-embed-text", prompt="ran tests"
        )

    @pytest.mark.asyncio
    async def test_embed_empty_result(self):
        """Test an empty vector is reported as a bad response."""
        client = OllamaClient()
        client._client.embeddings = AsyncMock(return_value={"embedding": []})

        with pytest.raises(EmbeddingResponseError):
            await client.embed(model="nomic-embed-text", text="ran tests")

    @pytest.mark.asyncio
    async def test_embed_model_not_found(self):
        """Test a missing model fails without retrying."""
        client = OllamaClient()
        client._client.embeddings = AsyncMock(
            side_effect=ollama.ResponseError("model not found")
        )

        with pytest.raises(ModelNotFoundError) as exc_info:
            await client.embed(model="missing-model", text="ran tests")

        assert "missing-model" in str(exc_info.value)
        assert client._client.embeddings.call_count == 1

    @pytest.mark.asyncio
    async def test_transient_failures_back_off(self):
        """Test refused connections are retried after 1s then 2s."""
        client = OllamaClient(max_retries=3)
        client._client.embeddings = AsyncMock(
            side_effect=[
                ConnectionError("refused"),
                ConnectionError("refused"),
                {"embedding": [0.5, 0.5]},
            ]
        )

        with patch("agentmem.llm.client.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await client.embed(model="nomic-embed-text", text="ran tests")

        assert result == [0.5, 0.5]
        assert client._client.embeddings.call_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        """Test the last transient failure becomes a connection error."""
        client = OllamaClient(max_retries=2)
        client._client.embeddings = AsyncMock(side_effect=ConnectionError("refused"))

        with patch("agentmem.llm.client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(EmbeddingConnectionError):
                await client.embed(model="nomic-embed-text", text="ran tests")

        assert client._client.embeddings.call_count == 2

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        """Test server-side errors other than a missing model are retried."""
        client = OllamaClient(max_retries=2)
        client._client.embeddings = AsyncMock(
            side_effect=[ollama.ResponseError("server busy"), {"embedding": [1.0]}]
        )

        with patch("agentmem.llm.client.asyncio.sleep", new=AsyncMock()):
            result = await client.embed(model="nomic-embed-text", text="ran tests")

        assert result == [1.0]

    @pytest.mark.asyncio
    async def test_slow_request_times_out(self):
        """Test a timeout is reported without retrying."""
        client = OllamaClient()
        client._client.embeddings = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(EmbeddingTimeoutError):
            await client.embed(model="nomic-embed-text", text="ran tests")

    @pytest.mark.asyncio
    async def test_embed_unexpected_error(self):
        """Test unexpected errors surface as response errors."""
        client = OllamaClient()
        client._client.embeddings = AsyncMock(side_effect=KeyError("embedding"))

        with pytest.raises(EmbeddingResponseError):
            await client.embed(model="nomic-embed-text", text="ran tests")

    @pytest.mark.asyncio
    async def test_embed_batch_keeps_order(self):
        """Test batch results line up with the input texts."""
        client = OllamaClient()
        embeddings = [[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]]
        client._client.embeddings = AsyncMock(
            side_effect=[{"embedding": e} for e in embeddings]
        )

        result = await client.embed_batch(model="nomic-embed-text", texts=["a", "b", "c"])

        assert result == embeddings
        assert client._client.embeddings.call_count == 3


class TestHealthCheck:
    """Tests for the health check."""

    @pytest.mark.asyncio
    async def test_health_check_success(self):
        """Test a model listing answer means healthy."""
        client = OllamaClient()
        client._client.list = AsyncMock(return_value={"models": []})

        assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self):
        """Test an unreachable server means unhealthy."""
        client = OllamaClient(max_retries=1)
        client._client.list = AsyncMock(side_effect=ConnectionError("refused"))

        assert await client.health_check() is False
