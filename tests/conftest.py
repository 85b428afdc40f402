"""Shared pytest fixtures for agentmem tests.

Provides a controllable clock, an initialized temporary SQLite store and
in-memory stand-ins for the embedding client and vector index.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agentmem.core.config import MemoryConfig
from agentmem.core.exceptions import EmbeddingConnectionError, VectorStoreError
from agentmem.memory.store import MemoryStore
from agentmem.storage.sqlite import SQLiteStorage

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeIndex:
    """In-memory vector index with the ChromaStorage interface."""

    def __init__(self):
        self.vectors: dict[str, list[float]] = {}
        self.documents: dict[str, str] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise VectorStoreError("index offline")

    async def upsert_embedding(self, memory_id, embedding, document, metadata=None):
        self._check()
        self.vectors[memory_id] = list(embedding)
        self.documents[memory_id] = document

    async def get_embeddings(self, memory_ids):
        self._check()
        return {mid: self.vectors[mid] for mid in memory_ids if mid in self.vectors}

    async def delete_embeddings(self, memory_ids):
        self._check()
        for mid in memory_ids:
            self.vectors.pop(mid, None)
            self.documents.pop(mid, None)

    async def move_embedding(self, source_id, target_id, metadata=None):
        self._check()
        if source_id not in self.vectors:
            return False
        self.vectors[target_id] = self.vectors.pop(source_id)
        self.documents[target_id] = self.documents.pop(source_id, "")
        return True

    async def count(self):
        return len(self.vectors)


class FakeEmbedder:
    """Embedding client returning preset vectors per text."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default=None):
        self.vectors = vectors or {}
        self.default = default or [0.0, 0.0, 1.0]
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    async def embed(self, model, text):
        self.calls.append((model, text))
        if self.fail:
            raise EmbeddingConnectionError("embedding service down")
        return self.vectors.get(text, self.default)


def word_count(text: str) -> int:
    """Token counter stand-in: one token per whitespace-separated word."""
    return len(text.split())


@pytest.fixture
def clock():
    """Controllable clock starting at T0."""
    return FakeClock()


@pytest.fixture
def temp_dir():
    """Temporary directory for test data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    """Engine configuration pointing at the temporary directory."""
    return MemoryConfig(db_path=temp_dir / "memory.db", chroma_path=temp_dir / "chroma")


@pytest.fixture
async def sqlite(config):
    """Initialized and connected SQLite storage."""
    storage = SQLiteStorage(config.db_path)
    await storage.initialize()
    await storage.connect()
    yield storage
    await storage.disconnect()


@pytest.fixture
async def store(sqlite, config, clock):
    """Memory store over the temporary database with a fake clock."""
    return MemoryStore(sqlite, config, clock=clock)


@pytest.fixture
def fake_index():
    return FakeIndex()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def count_words():
    return word_count
