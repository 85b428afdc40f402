"""Ranked retrieval over the tiered store.

Candidates come from the store's structural filter (expired short-term
entries never appear), are narrowed by keywords or embedding similarity
and scored by a single formula combining tier weight, recency, the tier's
own signal, keyword coverage and, when available, embedding similarity.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from agentmem.core.config import MemoryConfig
from agentmem.core.exceptions import VectorStoreError
from agentmem.core.types import (
    LongTermPayload,
    MemoryEntry,
    MemoryQuery,
    MemoryTier,
    ScoreBreakdown,
    ScoredEntry,
    WorkingPayload,
)
from agentmem.memory.store import MemoryStore

logger = logging.getLogger(__name__)


def tokenize_keywords(keywords: str | None) -> list[str]:
    """Split a keyword string into unique lowercase terms, in order."""
    if not keywords:
        return []
    terms: list[str] = []
    for term in keywords.lower().split():
        if term not in terms:
            terms.append(term)
    return terms


def keyword_match_fraction(entry: MemoryEntry, terms: list[str]) -> float:
    """Fraction of terms found in the entry's content, name or description."""
    if not terms:
        return 0.0
    haystack = " ".join(
        part for part in (entry.content, entry.name, entry.description) if part
    ).lower()
    matched = sum(1 for term in terms if term in haystack)
    return matched / len(terms)


def cosine_similarity(vec1: list[float], vec2: list[float]) -> float:
    """Cosine similarity of two vectors, in [-1.0, 1.0].

    Mismatched dimensions or zero vectors score 0.0.
    """
    if len(vec1) != len(vec2) or not vec1:
        return 0.0

    dot_product = sum(a * b for a, b in zip(vec1, vec2, strict=True))
    magnitude1 = sum(a * a for a in vec1) ** 0.5
    magnitude2 = sum(b * b for b in vec2) ** 0.5

    if magnitude1 == 0 or magnitude2 == 0:
        return 0.0

    return dot_product / (magnitude1 * magnitude2)


class MemoryRetriever:
    """Unified relevance ranking across tiers.

    Results are totally ordered by score descending, then ``created_at``
    descending, then ID descending, so identical queries over identical
    data return identical lists. Recency is measured from ``created_at``
    and access counters do not feed the score, so the access bump applied
    to returned long-term entries never reorders a repeated query.

    Attributes:
        store: Memory store.
        config: Engine configuration (ranking weights, default limit).
        index: Optional vector index exposing ``get_embeddings(ids)``.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig | None = None,
        index: Any = None,
    ):
        self.store = store
        self.config = config or store.config
        self.index = index

    async def query(
        self,
        query: MemoryQuery,
        max_tokens: int | None = None,
        count_tokens: Callable[[str], int] | None = None,
    ) -> list[ScoredEntry]:
        """Run a ranked query.

        Args:
            query: Filter, keywords, optional embedding and paging.
            max_tokens: Optional budget; the ranked page is cut before the
                first entry whose content would push the running total past it.
            count_tokens: Token counter used with ``max_tokens``.

        Returns:
            Scored entries, best first, after ``offset`` and ``limit``.
            Long-term results reflect the access bump applied by this call.

        Raises:
            InvalidOperationError: If a stored row is malformed.
            DatabaseError: If the database operation fails.
        """
        now = self.store.clock()
        terms = tokenize_keywords(query.keywords)

        candidates = await self.store.list(query.filter)
        if not candidates:
            return []

        similarities = await self._similarities(query.embedding, candidates)

        if similarities is not None and query.min_similarity is not None:
            candidates = [
                entry
                for entry in candidates
                if entry.id in similarities and similarities[entry.id] >= query.min_similarity
            ]
        elif terms:
            candidates = [
                entry for entry in candidates if keyword_match_fraction(entry, terms) > 0
            ]

        scored = [
            self.score(entry, now, terms, (similarities or {}).get(entry.id, 0.0))
            for entry in candidates
        ]
        if query.min_score is not None:
            scored = [item for item in scored if item.score >= query.min_score]

        ranked = self.rank(scored)
        limit = query.limit if query.limit is not None else self.config.default_limit
        page = ranked[query.offset : query.offset + limit]

        if max_tokens is not None and count_tokens is not None:
            page = self._fit_budget(page, max_tokens, count_tokens)

        return await self._apply_access_bump(page)

    def score(
        self,
        entry: MemoryEntry,
        now: datetime,
        terms: list[str],
        similarity: float = 0.0,
    ) -> ScoredEntry:
        """Compute the relevance score of one entry.

        Args:
            entry: Candidate entry.
            now: Current time.
            terms: Lowercase keyword terms (may be empty).
            similarity: Cosine similarity to the query embedding (0.0 if none).

        Returns:
            The entry with its total score and per-term breakdown.
        """
        ranking = self.config.ranking

        age = max((now - entry.created_at).total_seconds(), 0.0)
        recency = 0.5 ** (age / ranking.recency_half_life_seconds)

        breakdown = ScoreBreakdown(
            tier_weight=ranking.tier_weights[entry.tier],
            recency=ranking.recency_weight * recency,
            signal=ranking.signal_weight * self._tier_signal(entry),
            keyword=ranking.keyword_weight * keyword_match_fraction(entry, terms),
            similarity=ranking.semantic_weight * similarity,
        )
        total = (
            breakdown.tier_weight
            + breakdown.recency
            + breakdown.signal
            + breakdown.keyword
            + breakdown.similarity
        )
        return ScoredEntry(entry=entry, score=total, breakdown=breakdown)

    @staticmethod
    def rank(scored: list[ScoredEntry]) -> list[ScoredEntry]:
        """Order by score desc, then created_at desc, then ID desc."""
        return sorted(
            scored,
            key=lambda item: (item.score, item.entry.created_at, item.entry.id),
            reverse=True,
        )

    def _tier_signal(self, entry: MemoryEntry) -> float:
        payload = entry.payload
        if isinstance(payload, LongTermPayload):
            return payload.confidence
        if isinstance(payload, WorkingPayload):
            # priority 1 -> 1.0, priority 4 -> 0.25
            return (5 - payload.priority) / 4
        return self.config.ranking.short_term_signal

    async def _similarities(
        self, query_embedding: list[float] | None, candidates: list[MemoryEntry]
    ) -> dict[str, float] | None:
        """Cosine similarity per indexed candidate.

        Returns:
            Mapping for candidates that have a vector, or None when no
            semantic scoring is possible (no query vector, no index, or the
            index failed).
        """
        if query_embedding is None or self.index is None:
            return None
        try:
            embeddings: dict[str, list[float]] = await self.index.get_embeddings(
                [entry.id for entry in candidates]
            )
        except VectorStoreError as e:
            logger.warning(f"Vector index unavailable, ranking without similarity: {e}")
            return None

        return {
            memory_id: cosine_similarity(query_embedding, embedding)
            for memory_id, embedding in embeddings.items()
        }

    @staticmethod
    def _fit_budget(
        page: list[ScoredEntry], max_tokens: int, count_tokens: Callable[[str], int]
    ) -> list[ScoredEntry]:
        fitted: list[ScoredEntry] = []
        used = 0
        for item in page:
            used += count_tokens(item.entry.content)
            if used > max_tokens:
                break
            fitted.append(item)
        return fitted

    async def _apply_access_bump(self, page: list[ScoredEntry]) -> list[ScoredEntry]:
        long_term_ids = [
            item.entry.id for item in page if item.entry.tier is MemoryTier.LONG_TERM
        ]
        if not long_term_ids:
            return page

        bumped = await self.store.record_access(long_term_ids)
        return [
            item.model_copy(update={"entry": bumped[item.entry.id]})
            if item.entry.id in bumped
            else item
            for item in page
        ]
