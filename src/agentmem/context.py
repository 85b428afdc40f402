"""Explicit wiring of the memory engine.

A MemoryContext is built from a MemoryConfig and owns the storage
connections of one process. There are no module-level singletons; callers
construct a context, use it and close it:

    async with MemoryContext(MemoryConfig(db_path=path)) as ctx:
        await ctx.memory.remember("ran tests", RememberOptions(user_id="u1"))
"""

import logging
from collections.abc import Callable
from functools import cached_property
from typing import Any

from agentmem.consolidation.engine import ConsolidationEngine
from agentmem.core.config import MemoryConfig
from agentmem.core.exceptions import AgentMemError, VectorStoreError
from agentmem.core.utils import utc_now
from agentmem.llm.client import OllamaClient
from agentmem.memory.hierarchical import HierarchicalMemory
from agentmem.memory.indexer import EmbeddingIndexer
from agentmem.memory.retrieval import MemoryRetriever
from agentmem.memory.store import Clock, MemoryStore
from agentmem.storage.chroma import ChromaStorage
from agentmem.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

_UNRESOLVED = object()


class MemoryContext:
    """Owns the storage layer and builds the engine components on demand.

    Components are created on first access and then reused. Storage is
    initialized once by ``open()`` (or ``async with``).

    Attributes:
        config: Engine configuration.
        sqlite: SQLite storage (after open).
        embedder: Embedding client (when embeddings are enabled).
        index: Vector index (when embeddings are enabled and reachable).
        indexer: Background indexer (when ``index`` is available).
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        user_id_resolver: Callable[[], str | None] | None = None,
        clock: Clock = utc_now,
        embedder: Any = None,
        index: Any = None,
        token_counter: Callable[[str], int] | None = None,
    ):
        """Create an unopened context.

        Args:
            config: Engine configuration (defaults if None).
            user_id_resolver: Called once to find the default user.
            clock: Time source shared by all components.
            embedder: Embedding client to use instead of building one.
            index: Vector index to use instead of building one.
            token_counter: Token counter for recall budgets.
        """
        self.config = config or MemoryConfig()
        self.clock = clock
        self.embedder = embedder
        self.index = index
        self.indexer: EmbeddingIndexer | None = None
        self.sqlite: SQLiteStorage | None = None
        self._user_id_resolver = user_id_resolver
        self._user_id: Any = _UNRESOLVED
        self._token_counter = token_counter

    async def __aenter__(self) -> "MemoryContext":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def open(self) -> None:
        """Validate config, initialize storage and start the indexer.

        Raises:
            ConfigurationError: If the configuration is invalid.
            DatabaseError: If the database cannot be initialized.
        """
        if self.sqlite is not None:
            return

        self.config.validate()

        sqlite = SQLiteStorage(self.config.db_path, busy_timeout_ms=self.config.busy_timeout_ms)
        await sqlite.initialize()
        await sqlite.connect()
        self.sqlite = sqlite

        if self.config.embeddings_enabled:
            await self._open_embeddings()

        logger.info(f"Memory context opened at {self.config.db_path}")

    async def close(self) -> None:
        """Stop the indexer and release the database connection."""
        if self.indexer is not None:
            await self.indexer.stop()
            self.indexer = None
        if self.sqlite is not None:
            await self.sqlite.disconnect()
            self.sqlite = None
        for name in ("store", "retriever", "engine", "memory"):
            self.__dict__.pop(name, None)

    @property
    def user_id(self) -> str | None:
        """Default user, resolved once on first access."""
        if self._user_id is _UNRESOLVED:
            self._user_id = self._user_id_resolver() if self._user_id_resolver else None
        return self._user_id  # type: ignore[no-any-return]

    @cached_property
    def store(self) -> MemoryStore:
        if self.sqlite is None:
            raise AgentMemError("MemoryContext is not open. Call open() first.")
        return MemoryStore(self.sqlite, self.config, clock=self.clock)

    @cached_property
    def retriever(self) -> MemoryRetriever:
        return MemoryRetriever(self.store, self.config, index=self.index)

    @cached_property
    def engine(self) -> ConsolidationEngine:
        return ConsolidationEngine(self.store, self.config.consolidation, index=self.index)

    @cached_property
    def memory(self) -> HierarchicalMemory:
        return HierarchicalMemory(
            self.store,
            self.retriever,
            self.engine,
            config=self.config,
            embedder=self.embedder,
            index=self.index,
            indexer=self.indexer,
            token_counter=self._token_counter,
            default_user_id=self.user_id,
        )

    async def _open_embeddings(self) -> None:
        if self.embedder is None:
            self.embedder = OllamaClient(
                base_url=self.config.ollama_url,
                default_timeout=self.config.embedding_timeout,
            )
        if self.index is None:
            index = ChromaStorage(self.config.chroma_path)
            try:
                await index.initialize()
            except VectorStoreError as e:
                logger.warning(f"Vector index unavailable, semantic search disabled: {e}")
                return
            self.index = index

        self.indexer = EmbeddingIndexer(self.embedder, self.index, self.config.embedding_model)
        await self.indexer.start()
