"""Pytest fixtures for integration tests.

These fixtures set up real instances of the storage layer (SQLite and
ChromaDB in a temporary directory) so that complete flows are exercised
end to end. Only the embedding model is replaced by a deterministic fake.
"""

import pytest

from agentmem.context import MemoryContext


@pytest.fixture(scope="function")
async def memory_context(config, clock, fake_embedder, count_words):
    """Open a context with embeddings enabled against real storage.

    Yields:
        Opened MemoryContext.
    """
    config.embeddings_enabled = True
    ctx = MemoryContext(
        config,
        user_id_resolver=lambda: "dev",
        clock=clock,
        embedder=fake_embedder,
        token_counter=count_words,
    )
    await ctx.open()
    yield ctx
    await ctx.close()
