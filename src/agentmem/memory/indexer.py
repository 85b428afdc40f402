"""Background embedding indexer.

Entries are queryable structurally and by keyword as soon as they are
committed. Their embeddings are computed here, off the write path, by an
asyncio worker that drains a queue of (id, text) jobs into the vector index.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from agentmem.core.exceptions import EmbeddingError, VectorStoreError

logger = logging.getLogger(__name__)


@dataclass
class IndexJob:
    """One entry waiting to be embedded."""

    memory_id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class EmbeddingIndexer:
    """Queue worker that embeds entries and writes them to the vector index.

    Failures are logged and the job is dropped: an entry without an
    embedding is still found by keyword and simply scores no similarity.

    Attributes:
        embedder: Client exposing ``embed(model, text)``.
        index: Vector index exposing ``upsert_embedding``.
        model: Embedding model name.
        indexed: Number of jobs embedded successfully.
        failed: Number of jobs dropped after an error.
    """

    def __init__(self, embedder: Any, index: Any, model: str, max_queue_size: int = 1000):
        """Initialize the indexer.

        Args:
            embedder: Embedding client (e.g. ``OllamaClient``).
            index: Vector index (e.g. ``ChromaStorage``).
            model: Embedding model name.
            max_queue_size: Jobs beyond this are rejected by ``enqueue``.
        """
        self.embedder = embedder
        self.index = index
        self.model = model
        self.indexed = 0
        self.failed = 0
        self._queue: asyncio.Queue[IndexJob] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker task. Starting twice is a no-op."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="agentmem-embedding-indexer")
        logger.info(f"Embedding indexer started (model {self.model})")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker.

        Args:
            drain: Process queued jobs before stopping.
        """
        if drain:
            await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info(
                f"Embedding indexer stopped ({self.indexed} indexed, {self.failed} failed)"
            )

    async def drain(self) -> None:
        """Wait until every queued job has been processed.

        Without a running worker the queue is processed in the calling task.
        """
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                await self.index_one(job)
            finally:
                self._queue.task_done()

    def enqueue(
        self, memory_id: str, text: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Queue an entry for embedding.

        Returns:
            False if the queue is full and the job was dropped.
        """
        try:
            self._queue.put_nowait(IndexJob(memory_id, text, metadata or {}))
        except asyncio.QueueFull:
            logger.warning(f"Embedding queue full, not indexing {memory_id}")
            return False
        return True

    async def index_one(self, job: IndexJob) -> bool:
        """Embed one entry and store the vector.

        Returns:
            True if the vector was stored.
        """
        try:
            embedding = await self.embedder.embed(self.model, job.text)
            await self.index.upsert_embedding(job.memory_id, embedding, job.text, job.metadata)
        except (EmbeddingError, VectorStoreError) as e:
            self.failed += 1
            logger.warning(f"Failed to index {job.memory_id}: {e}")
            return False

        self.indexed += 1
        logger.debug(f"Indexed {job.memory_id}")
        return True

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.index_one(job)
            finally:
                self._queue.task_done()
