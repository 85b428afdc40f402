"""Unit tests for ChromaDB storage."""

import tempfile
from pathlib import Path

import pytest

from agentmem.core.exceptions import VectorStoreError
from agentmem.core.utils import generate_memory_id
from agentmem.storage.chroma import ChromaStorage


@pytest.fixture
async def temp_chroma():
    """Create a temporary ChromaDB storage for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = ChromaStorage(persist_path=Path(tmpdir) / "chroma")
        await storage.initialize()
        yield storage


@pytest.mark.asyncio
class TestChromaStorage:
    """Test suite for ChromaStorage."""

    async def test_initialization(self):
        """Test initialization creates the persistence directory and collection."""
        with tempfile.TemporaryDirectory() as tmpdir:
            persist_path = Path(tmpdir) / "chroma"
            storage = ChromaStorage(persist_path=persist_path)

            await storage.initialize()

            assert persist_path.exists()
            assert storage.collection is not None
            assert await storage.count() == 0

    async def test_operations_before_initialize_fail(self):
        """Test using the store before initialize() raises VectorStoreError."""
        storage = ChromaStorage(persist_path="/nonexistent/never-created")

        with pytest.raises(VectorStoreError):
            await storage.upsert_embedding(generate_memory_id(), [0.1, 0.2], "text")

    async def test_upsert_and_get(self, temp_chroma):
        """Test a stored vector is returned by ID."""
        memory_id = generate_memory_id()

        await temp_chroma.upsert_embedding(
            memory_id, [0.1, 0.2, 0.3], "ran tests", {"user_id": "u1"}
        )
        embeddings = await temp_chroma.get_embeddings([memory_id])

        assert list(embeddings) == [memory_id]
        assert embeddings[memory_id] == pytest.approx([0.1, 0.2, 0.3])
        assert await temp_chroma.count() == 1

    async def test_upsert_replaces(self, temp_chroma):
        """Test upserting the same ID twice keeps one vector."""
        memory_id = generate_memory_id()

        await temp_chroma.upsert_embedding(memory_id, [1.0, 0.0, 0.0], "first")
        await temp_chroma.upsert_embedding(memory_id, [0.0, 1.0, 0.0], "second")

        embeddings = await temp_chroma.get_embeddings([memory_id])
        assert embeddings[memory_id] == pytest.approx([0.0, 1.0, 0.0])
        assert await temp_chroma.count() == 1

    async def test_get_unknown_ids(self, temp_chroma):
        """Test IDs without a vector are absent from the result."""
        known = generate_memory_id()
        await temp_chroma.upsert_embedding(known, [0.1, 0.2, 0.3], "known")

        embeddings = await temp_chroma.get_embeddings([known, generate_memory_id()])

        assert set(embeddings) == {known}
        assert await temp_chroma.get_embeddings([]) == {}

    async def test_delete_embeddings(self, temp_chroma):
        """Test deleting vectors, including unknown IDs."""
        memory_id = generate_memory_id()
        await temp_chroma.upsert_embedding(memory_id, [0.1, 0.2, 0.3], "doc")

        await temp_chroma.delete_embeddings([memory_id, generate_memory_id()])

        assert await temp_chroma.get_embeddings([memory_id]) == {}
        assert await temp_chroma.count() == 0

    async def test_move_embedding(self, temp_chroma):
        """Test a vector is re-keyed to the promoted entry's ID."""
        source_id = generate_memory_id()
        target_id = generate_memory_id()
        await temp_chroma.upsert_embedding(source_id, [0.3, 0.2, 0.1], "promoted note")

        moved = await temp_chroma.move_embedding(source_id, target_id)

        assert moved is True
        embeddings = await temp_chroma.get_embeddings([source_id, target_id])
        assert set(embeddings) == {target_id}
        assert embeddings[target_id] == pytest.approx([0.3, 0.2, 0.1])

    async def test_move_missing_embedding(self, temp_chroma):
        """Test moving an entry that was never indexed is a no-op."""
        moved = await temp_chroma.move_embedding(generate_memory_id(), generate_memory_id())

        assert moved is False
        assert await temp_chroma.count() == 0

    async def test_reset(self, temp_chroma):
        """Test reset empties the collection."""
        await temp_chroma.upsert_embedding(generate_memory_id(), [0.1, 0.2, 0.3], "doc")

        await temp_chroma.reset()

        assert await temp_chroma.count() == 0
