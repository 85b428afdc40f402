"""Hierarchical memory facade.

This module implements the surface collaborators talk to: ``remember`` and
``recall`` plus tier-specific helpers, maintenance operations and the
session lifecycle hooks. It coordinates the store, the retriever, the
consolidation engine and, when enabled, the embedding subsystem.
"""

import logging
from collections import Counter
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from agentmem.core.config import MemoryConfig
from agentmem.core.exceptions import (
    EmbeddingError,
    InvalidOperationError,
    VectorStoreError,
)
from agentmem.core.types import (
    ConsolidationResult,
    MemoryEntry,
    MemoryFilter,
    MemoryQuery,
    MemoryStats,
    MemoryTier,
    NewMemory,
    RecallOptions,
    RememberOptions,
    ScoredEntry,
    SessionContext,
    SessionScope,
)
from agentmem.core.utils import content_marker
from agentmem.memory.indexer import EmbeddingIndexer
from agentmem.memory.retrieval import MemoryRetriever
from agentmem.memory.store import MemoryStore
from agentmem.memory.tokens import TokenCounter

if TYPE_CHECKING:
    from agentmem.consolidation.engine import ConsolidationEngine

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIMILARITY = 0.3
TASK_CONTEXT_LIMIT = 50
FILE_CONTEXT_LIMIT = 20


class HierarchicalMemory:
    """Coordination layer over the tiered memory engine.

    Lifecycle hooks are invoked by the session manager; the facade never
    schedules work on its own.

    Attributes:
        store: Memory store.
        retriever: Ranked retrieval.
        engine: Consolidation engine.
        config: Engine configuration.
        embedder: Optional embedding client used by ``semantic_search``.
        index: Optional vector index.
        indexer: Optional background indexer fed by ``remember``.
        default_user_id: User used when an operation names none.
    """

    def __init__(
        self,
        store: MemoryStore,
        retriever: MemoryRetriever,
        engine: "ConsolidationEngine",
        config: MemoryConfig | None = None,
        embedder: Any = None,
        index: Any = None,
        indexer: EmbeddingIndexer | None = None,
        token_counter: Callable[[str], int] | None = None,
        default_user_id: str | None = None,
    ):
        """Initialize the facade.

        Args:
            store: Memory store instance.
            retriever: Retriever instance.
            engine: Consolidation engine instance.
            config: Engine configuration (uses the store's if None).
            embedder: Embedding client exposing ``embed(model, text)``.
            index: Vector index exposing ``delete_embeddings(ids)``.
            indexer: Background indexer.
            token_counter: Token counter for ``max_tokens`` budgets.
            default_user_id: User for operations that name none.
        """
        self.store = store
        self.retriever = retriever
        self.engine = engine
        self.config = config or store.config
        self.embedder = embedder
        self.index = index
        self.indexer = indexer
        self.default_user_id = default_user_id
        self._token_counter = token_counter

    @property
    def token_counter(self) -> Callable[[str], int]:
        if self._token_counter is None:
            self._token_counter = TokenCounter(self.config.token_encoding)
        return self._token_counter

    # ========== Write Operations ==========

    async def remember(self, content: str, options: RememberOptions | None = None) -> str:
        """Store a memory.

        Defaults are filled per tier: short-term gets the configured TTL,
        working gets a priority derived from the content type, long-term
        gets the configured default confidence.

        Args:
            content: Memory text.
            options: Tier, scope and tier-specific fields.

        Returns:
            ID of the created (or reinforced) entry.

        Raises:
            InvalidOperationError: On missing user, cross-tier fields or
                out-of-range values.
            DatabaseError: If the database operation fails.
        """
        opts = options or RememberOptions()
        fields: dict[str, Any] = {
            key: value
            for key, value in (
                ("ttl_seconds", opts.ttl_seconds),
                ("priority", opts.priority),
                ("active", opts.active),
                ("confidence", opts.confidence),
            )
            if value is not None
        }

        if opts.tier is MemoryTier.SHORT_TERM:
            fields.setdefault("ttl_seconds", self.config.short_term_ttl_seconds)
        elif opts.tier is MemoryTier.WORKING:
            consolidation = self.engine.config
            fields.setdefault(
                "priority",
                consolidation.default_priorities.get(
                    content_marker(opts.content_type), consolidation.default_priority
                ),
            )
        else:
            fields.setdefault("confidence", self.config.long_term_default_confidence)

        new = NewMemory.from_fields(
            user_id=self._resolve_user(opts.user_id, required=True),
            session_id=opts.session_id,
            folder_id=opts.folder_id,
            task_id=opts.task_id,
            tier=opts.tier,
            content_type=opts.content_type,
            name=opts.name,
            description=opts.description,
            content=content,
            metadata=opts.metadata,
            **fields,
        )
        memory_id = await self.store.create(new)

        if self.indexer is not None:
            self.indexer.enqueue(
                memory_id,
                self._embedding_text(content, opts.name, opts.description),
                {"user_id": new.user_id, "content_type": new.content_type},
            )

        return memory_id

    async def hold(self, content: str, options: RememberOptions | None = None) -> str:
        """Store active task context (working tier)."""
        opts = (options or RememberOptions()).model_copy(update={"tier": MemoryTier.WORKING})
        return await self.remember(content, opts)

    async def learn(self, content: str, options: RememberOptions | None = None) -> str:
        """Store consolidated knowledge (long-term tier)."""
        opts = (options or RememberOptions()).model_copy(update={"tier": MemoryTier.LONG_TERM})
        return await self.remember(content, opts)

    # ========== Query Operations ==========

    async def recall(
        self, keywords: str | None = None, options: RecallOptions | None = None
    ) -> list[ScoredEntry]:
        """Ranked retrieval.

        Args:
            keywords: Optional keyword string.
            options: Scope, filters, paging, optional embedding and token budget.

        Returns:
            Scored entries, best first.
        """
        opts = options or RecallOptions()
        return await self.retriever.query(
            self._build_query(opts, keywords=keywords, embedding=opts.embedding),
            max_tokens=opts.max_tokens,
            count_tokens=self.token_counter if opts.max_tokens is not None else None,
        )

    async def semantic_search(
        self,
        text: str,
        options: RecallOptions | None = None,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[ScoredEntry]:
        """Search by meaning.

        The text is embedded through the embedding client and entries are
        kept when their similarity reaches ``min_similarity``. Without an
        embedder or index, or when embedding fails, this degrades to a
        keyword recall of ``text``.

        Args:
            text: Query text.
            options: Scope, filters and paging.
            min_similarity: Minimum cosine similarity.

        Returns:
            Scored entries, best first.
        """
        opts = options or RecallOptions()
        embedding = await self._embed_query(text)
        if embedding is None:
            return await self.recall(text, opts)

        return await self.retriever.query(
            self._build_query(
                opts, keywords=text, embedding=embedding, min_similarity=min_similarity
            ),
            max_tokens=opts.max_tokens,
            count_tokens=self.token_counter if opts.max_tokens is not None else None,
        )

    async def get_task_context(
        self,
        task_id: str,
        user_id: str | None = None,
        folder_id: str | None = None,
        limit: int = TASK_CONTEXT_LIMIT,
    ) -> list[ScoredEntry]:
        """Working and short-term memories bound to a task, best first."""
        return await self.recall(
            options=RecallOptions(
                user_id=user_id,
                folder_id=folder_id,
                task_id=task_id,
                tiers=[MemoryTier.WORKING, MemoryTier.SHORT_TERM],
                limit=limit,
            )
        )

    async def get_file_context(
        self,
        file_path: str,
        user_id: str | None = None,
        folder_id: str | None = None,
        limit: int = FILE_CONTEXT_LIMIT,
    ) -> list[ScoredEntry]:
        """Memories that mention ``file_path``, best first.

        The path is a keyword match, so a path with spaces matches any of
        its parts.
        """
        return await self.recall(
            file_path,
            RecallOptions(user_id=user_id, folder_id=folder_id, limit=limit),
        )

    async def get(self, memory_id: str) -> MemoryEntry | None:
        """Get an entry by ID (None if unknown or expired)."""
        return await self.store.get(memory_id)

    async def require(self, memory_id: str) -> MemoryEntry:
        """Get an entry by ID, raising MemoryNotFoundError if absent."""
        return await self.store.require(memory_id)

    async def stats(self, user_id: str | None = None) -> MemoryStats:
        """Usage statistics for one user (or everyone)."""
        return await self.store.stats(self._resolve_user(user_id))

    # ========== Maintenance ==========

    async def forget(self, memory_id: str) -> bool:
        """Delete an entry. Returns False if it did not exist."""
        removed = await self.store.delete(memory_id)
        if removed:
            await self._drop_embeddings([memory_id])
        return removed

    async def prune(self) -> int:
        """Physically delete expired short-term entries."""
        pruned = await self.store.purge_expired()
        await self._drop_embeddings(pruned)
        return len(pruned)

    async def consolidate(
        self, user_id: str | None = None, folder_id: str | None = None
    ) -> ConsolidationResult:
        """Run a consolidation sweep."""
        return await self.engine.run_sweep(user_id=user_id, folder_id=folder_id)

    async def promote(self, memory_id: str) -> str:
        """Promote one entry a single tier. Returns the ID it now lives under."""
        return await self.engine.promote(memory_id)

    async def clear_task(self, task_id: str, user_id: str | None = None) -> int:
        """Delete the working entries of a task."""
        cleared = await self.store.purge_task(
            self._resolve_user(user_id, required=True), task_id
        )
        await self._drop_embeddings(cleared)
        return len(cleared)

    # ========== Lifecycle Hooks ==========

    async def on_session_start(self, scope: SessionScope) -> SessionContext:
        """Load context for a starting session.

        Ranks the user's memories in the session's folder together with
        global long-term knowledge.

        Args:
            scope: Identifiers of the starting session.

        Returns:
            SessionContext with the ranked memories and a per-tier tally.
        """
        memories = await self.recall(
            options=RecallOptions(
                user_id=scope.user_id,
                folder_id=scope.folder_id,
                include_global=True,
            )
        )
        loaded = Counter(item.entry.tier for item in memories)
        tally = ", ".join(f"{tier.value}={loaded[tier]}" for tier in MemoryTier if loaded[tier])
        logger.info(
            f"Session start for {scope.user_id}: loaded {len(memories)} memories ({tally})"
        )
        return SessionContext(scope=scope, memories=memories, loaded_by_tier=dict(loaded))

    async def on_session_end(self, scope: SessionScope) -> ConsolidationResult:
        """Run maintenance for an ending session (sweep scoped to user/folder)."""
        return await self.engine.run_sweep(user_id=scope.user_id, folder_id=scope.folder_id)

    # ========== Helper Methods ==========

    def _resolve_user(self, user_id: str | None, required: bool = False) -> str | None:
        resolved = user_id or self.default_user_id
        if required and not resolved:
            raise InvalidOperationError("user_id is required")
        return resolved

    def _build_query(
        self,
        opts: RecallOptions,
        keywords: str | None,
        embedding: list[float] | None,
        min_similarity: float | None = None,
    ) -> MemoryQuery:
        return MemoryQuery(
            filter=MemoryFilter(
                user_id=self._resolve_user(opts.user_id),
                session_id=opts.session_id,
                folder_id=opts.folder_id,
                task_id=opts.task_id,
                tiers=opts.tiers,
                content_types=opts.content_types,
                include_global=opts.include_global,
            ),
            keywords=keywords,
            embedding=embedding,
            limit=opts.limit,
            offset=opts.offset,
            min_score=opts.min_score,
            min_similarity=min_similarity,
        )

    async def _embed_query(self, text: str) -> list[float] | None:
        if self.embedder is None or self.retriever.index is None:
            return None
        try:
            embedding: list[float] = await self.embedder.embed(self.config.embedding_model, text)
            return embedding
        except EmbeddingError as e:
            logger.warning(f"Embedding unavailable, falling back to keyword search: {e}")
            return None

    async def _drop_embeddings(self, memory_ids: list[str]) -> None:
        if self.index is None or not memory_ids:
            return
        try:
            await self.index.delete_embeddings(memory_ids)
        except VectorStoreError as e:
            logger.warning(f"Failed to drop {len(memory_ids)} embeddings: {e}")

    @staticmethod
    def _embedding_text(content: str, name: str | None, description: str | None) -> str:
        return " ".join(part for part in (name, description, content) if part)
