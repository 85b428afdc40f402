"""Consolidation engine for tier promotion, merging and expiry pruning.

This module implements the ConsolidationEngine that moves entries up the
tier ladder (short_term -> working -> long_term), folds near-duplicate
entries of a tier into one and removes expired short-term entries. Sweeps
are discrete and idempotent; the engine owns no timers and runs only when
a caller asks it to.
"""

import logging
import time
from datetime import datetime
from typing import Any

import aiosqlite

from agentmem.core.config import ConsolidationConfig
from agentmem.core.exceptions import (
    AgentMemError,
    ConsolidationError,
    DatabaseError,
    InvalidOperationError,
    MemoryNotFoundError,
    VectorStoreError,
)
from agentmem.core.types import (
    Applicability,
    ConsolidationResult,
    LongTermPayload,
    MemoryEntry,
    MemoryFilter,
    MemoryTier,
    Merge,
    Promotion,
    WorkingPayload,
)
from agentmem.core.utils import (
    content_marker,
    generate_memory_id,
    generate_run_id,
    word_similarity,
)
from agentmem.memory.store import MemoryStore

logger = logging.getLogger(__name__)


class ConsolidationEngine:
    """Promotes entries between tiers, merges near-duplicates and prunes expired ones.

    A sweep runs these steps in order:

    1. Prune expired short-term entries
    2. Merge similar short-term entries
    3. Promote eligible short-term entries to working
    4. Merge similar working entries
    5. Promote eligible working entries to long-term
    6. Merge similar long-term entries

    Each step selects its candidates after the previous one commits, so an
    entry that qualifies for both promotions climbs two tiers in one sweep
    and a second sweep over unchanged data finds nothing to do.

    Every promotion is its own writer-locked transaction that re-reads the
    source, re-checks tier, liveness and eligibility, inserts the promoted
    entry under a new ID and deletes the source. When the destination tier
    already holds the same content within the dedup window, that entry is
    reinforced instead and no new row is written. Every merge is likewise
    one transaction. Concurrent sweeps in other processes therefore never
    promote or merge the same entry twice.

    Attributes:
        store: Memory store.
        config: Promotion thresholds and defaults.
        index: Optional vector index kept in step with promotions and pruning.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: ConsolidationConfig | None = None,
        index: Any = None,
    ):
        """Initialize consolidation engine.

        Args:
            store: Memory store instance.
            config: Configuration for consolidation (uses the store's if None).
            index: Optional vector index (``move_embedding``/``delete_embeddings``).
        """
        self.store = store
        self.config = config or store.config.consolidation
        self.index = index

    # ========== Eligibility Rules ==========

    def is_working_candidate(self, entry: MemoryEntry) -> bool:
        """Short-term entry reinforced enough, or tagged as a decision/todo."""
        if entry.tier is not MemoryTier.SHORT_TERM:
            return False
        if entry.reinforcement_count >= self.config.working_threshold:
            return True
        return content_marker(entry.content_type) in self._markers()

    def is_long_term_candidate(self, entry: MemoryEntry) -> bool:
        """Active working entry reinforced past the long-term threshold."""
        if not isinstance(entry.payload, WorkingPayload):
            return False
        return (
            entry.payload.active
            and entry.reinforcement_count >= self.config.long_term_threshold
        )

    def working_priority(self, entry: MemoryEntry) -> int:
        """Priority of the working entry a short-term entry becomes.

        An integer ``metadata["priority"]`` in 1-4 wins; otherwise the
        content-type marker picks from ``default_priorities``.
        """
        explicit = entry.metadata.get("priority")
        if isinstance(explicit, int) and not isinstance(explicit, bool) and 1 <= explicit <= 4:
            return explicit
        return self.config.default_priorities.get(
            content_marker(entry.content_type), self.config.default_priority
        )

    def are_similar(self, a: MemoryEntry, b: MemoryEntry) -> bool:
        """Whether two entries of one tier should be merged.

        Entries must share user and content type. Folder and session
        boundaries hold unless the config allows crossing them, and entries
        created further apart than ``merge_max_age_seconds`` never merge.
        Identical content always matches; otherwise the word overlap must
        reach ``similarity_threshold``.
        """
        if a.user_id != b.user_id or a.content_type != b.content_type or a.tier is not b.tier:
            return False
        if a.folder_id != b.folder_id and not self.config.merge_cross_folder:
            return False
        if a.session_id != b.session_id and not self.config.merge_cross_session:
            return False
        max_age = self.config.merge_max_age_seconds
        if max_age is not None and abs((a.created_at - b.created_at).total_seconds()) > max_age:
            return False
        if a.content == b.content:
            return True
        return word_similarity(a.content, b.content) >= self.config.similarity_threshold

    def long_term_confidence(self, reinforcement_count: int) -> float:
        """Confidence of a promoted long-term entry, clamped to [0, 1]."""
        confidence = self.config.confidence_base + self.config.confidence_step * reinforcement_count
        return max(0.0, min(1.0, confidence))

    def build_promoted(self, entry: MemoryEntry) -> MemoryEntry:
        """Build the entry that replaces ``entry`` one tier up.

        Raises:
            InvalidOperationError: If ``entry`` is already long-term.
        """
        target = entry.tier.next_tier()
        if target is None:
            raise InvalidOperationError(
                f"entry {entry.id} is already long_term; there is no higher tier"
            )

        payload: WorkingPayload | LongTermPayload
        if target is MemoryTier.WORKING:
            payload = WorkingPayload(priority=self.working_priority(entry), active=True)
        else:
            payload = LongTermPayload(
                confidence=self.long_term_confidence(entry.reinforcement_count),
                applicability=Applicability.for_folder(entry.folder_id),
                access_count=0,
            )

        now = self.store.clock()
        return entry.model_copy(
            update={
                "id": generate_memory_id(),
                "promoted_from": entry.id,
                "created_at": now,
                "updated_at": now,
                "payload": payload,
            }
        )

    # ========== Sweep ==========

    async def run_sweep(
        self, user_id: str | None = None, folder_id: str | None = None
    ) -> ConsolidationResult:
        """Run one consolidation sweep.

        Args:
            user_id: Restrict the sweep to this user.
            folder_id: Restrict the sweep to this folder.

        Returns:
            ConsolidationResult with counts, affected IDs and per-entry failures.

        Raises:
            DatabaseError: If storage fails. Promotions committed before the
                failure stay committed.
            ConsolidationError: On any other unexpected failure.
        """
        started_at = self.store.clock()
        started = time.perf_counter()
        result = ConsolidationResult(run_id=generate_run_id())
        logger.info(
            f"Starting consolidation sweep {result.run_id} "
            f"(user={user_id or '*'}, folder={folder_id or '*'})"
        )

        try:
            # Step 1: Prune expired short-term entries
            pruned = await self.store.purge_expired(user_id=user_id, folder_id=folder_id)
            result.pruned_short_term = len(pruned)
            result.pruned_ids.extend(pruned)
            result.affected_ids.extend(pruned)

            # Step 2: merge similar short_term
            await self._merge_tier(MemoryTier.SHORT_TERM, user_id, folder_id, result)

            # Step 3: short_term -> working
            result.promoted_to_working = await self._promote_tier(
                MemoryTier.SHORT_TERM,
                min_reinforcement=self.config.working_threshold,
                markers=self._markers(),
                user_id=user_id,
                folder_id=folder_id,
                result=result,
            )

            # Step 4: merge similar working
            await self._merge_tier(MemoryTier.WORKING, user_id, folder_id, result)

            # Step 5: working -> long_term
            result.promoted_to_long_term = await self._promote_tier(
                MemoryTier.WORKING,
                min_reinforcement=self.config.long_term_threshold,
                markers=(),
                user_id=user_id,
                folder_id=folder_id,
                result=result,
            )

            # Step 6: merge similar long_term
            await self._merge_tier(MemoryTier.LONG_TERM, user_id, folder_id, result)

        except DatabaseError:
            raise
        except Exception as e:
            raise ConsolidationError(f"Consolidation sweep failed: {e}") from e

        await self._sync_index(result)

        result.processing_time = time.perf_counter() - started
        await self.store.record_consolidation(
            result,
            started_at=started_at,
            completed_at=self.store.clock(),
            user_id=user_id,
            folder_id=folder_id,
        )

        logger.info(
            f"Consolidation sweep complete: {result.pruned_short_term} pruned, "
            f"{result.promoted_to_working} -> working, "
            f"{result.promoted_to_long_term} -> long_term, "
            f"{result.merged_similar} merged, "
            f"{len(result.failures)} failures in {result.processing_time:.2f}s"
        )
        return result

    async def promote(self, memory_id: str) -> str:
        """Promote one entry a single tier, regardless of thresholds.

        Args:
            memory_id: Entry to promote.

        Returns:
            ID of the promoted entry, or of the existing entry one tier up
            that absorbed it.

        Raises:
            MemoryNotFoundError: If the entry is unknown or expired.
            InvalidOperationError: If the entry is already long-term.
        """
        async with self.store.sqlite.transaction() as conn:
            source = await self.store.load(conn, memory_id)
            if source is None or source.is_expired(self.store.clock()):
                raise MemoryNotFoundError(memory_id)
            promotion = await self._apply_promotion(conn, source)

        await self._move_embeddings([promotion])
        return promotion.target_id

    # ========== Helper Methods ==========

    def _markers(self) -> tuple[str, ...]:
        return tuple(marker.lower() for marker in self.config.promotion_markers)

    async def _promote_tier(
        self,
        tier: MemoryTier,
        min_reinforcement: int,
        markers: tuple[str, ...],
        user_id: str | None,
        folder_id: str | None,
        result: ConsolidationResult,
    ) -> int:
        """Promote every eligible entry of ``tier``; return the number promoted."""
        candidate_ids = await self.store.promotion_candidates(
            tier,
            min_reinforcement=min_reinforcement,
            markers=markers,
            user_id=user_id,
            folder_id=folder_id,
            limit=self.config.max_promotions_per_sweep,
        )

        promoted = 0
        for candidate_id in candidate_ids:
            try:
                promotion = await self._promote_if_eligible(candidate_id, tier)
            except DatabaseError:
                raise
            except AgentMemError as e:
                logger.warning(f"Skipping {candidate_id} during consolidation: {e}")
                result.failures[candidate_id] = str(e)
                continue

            if promotion is None:
                continue

            promoted += 1
            result.promotions.append(promotion)
            result.affected_ids.extend([promotion.source_id, promotion.target_id])

        return promoted

    async def _promote_if_eligible(
        self, memory_id: str, expected_tier: MemoryTier
    ) -> Promotion | None:
        """Re-validate and promote one candidate under the writer lock.

        Returns:
            The committed promotion, or None if the candidate went stale.
        """
        async with self.store.sqlite.transaction() as conn:
            source = await self.store.load(conn, memory_id)
            if source is None or source.tier is not expected_tier:
                logger.debug(f"Candidate {memory_id} no longer in {expected_tier.value}")
                return None
            if source.is_expired(self.store.clock()):
                logger.debug(f"Candidate {memory_id} expired before promotion")
                return None

            eligible = (
                self.is_working_candidate(source)
                if expected_tier is MemoryTier.SHORT_TERM
                else self.is_long_term_candidate(source)
            )
            if not eligible:
                logger.debug(f"Candidate {memory_id} is not eligible")
                return None

            return await self._apply_promotion(conn, source)

    async def _apply_promotion(
        self, conn: aiosqlite.Connection, source: MemoryEntry
    ) -> Promotion:
        """Move ``source`` one tier up inside an open transaction.

        A live entry of the destination tier with the same content, updated
        within the dedup window, absorbs the source: it gains the source's
        reinforcements plus one and no new row is written.
        """
        promoted = self.build_promoted(source)
        now = self.store.clock()
        existing = await self.store.find_duplicate(
            conn, source.user_id, promoted.tier, source.content, now
        )

        if existing is not None:
            await self.store.reinforce(conn, existing, source.reinforcement_count + 1, now)
            await self.store.remove(conn, source.id)
            logger.info(
                f"Promoted {source.id} ({source.tier.value}) into existing "
                f"{existing} ({promoted.tier.value})"
            )
            return Promotion(
                source_id=source.id,
                target_id=existing,
                from_tier=source.tier,
                to_tier=promoted.tier,
                merged=True,
            )

        await self.store.insert(conn, promoted)
        await self.store.remove(conn, source.id)
        logger.info(
            f"Promoted {source.id} ({source.tier.value}) -> "
            f"{promoted.id} ({promoted.tier.value})"
        )
        return Promotion(
            source_id=source.id,
            target_id=promoted.id,
            from_tier=source.tier,
            to_tier=promoted.tier,
        )

    async def _merge_tier(
        self,
        tier: MemoryTier,
        user_id: str | None,
        folder_id: str | None,
        result: ConsolidationResult,
    ) -> None:
        """Fold every cluster of similar entries of ``tier`` into one survivor."""
        if not self.config.merge_similar:
            return

        entries, unreadable = await self.store.scan(
            MemoryFilter(user_id=user_id, folder_id=folder_id, tiers=[tier])
        )
        for memory_id, error in unreadable.items():
            logger.warning(f"Skipping {memory_id} during consolidation: {error}")
            result.failures[memory_id] = error

        for cluster in self._similar_clusters(entries):
            try:
                merge = await self._merge_cluster(cluster, tier)
            except DatabaseError:
                raise
            except AgentMemError as e:
                survivor_id = cluster[0].id
                logger.warning(f"Skipping merge into {survivor_id}: {e}")
                result.failures[survivor_id] = str(e)
                continue

            if merge is None:
                continue

            result.merged_similar += len(merge.absorbed_ids)
            result.merges.append(merge)
            result.affected_ids.extend([merge.survivor_id, *merge.absorbed_ids])

    def _similar_clusters(self, entries: list[MemoryEntry]) -> list[list[MemoryEntry]]:
        """Group entries into connected clusters of similar pairs.

        Each cluster holds two or more entries, survivor first: the most
        recently created, ties broken by ID.
        """
        parent = list(range(len(entries)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i, a in enumerate(entries):
            for j in range(i + 1, len(entries)):
                if self.are_similar(a, entries[j]):
                    parent[find(j)] = find(i)

        groups: dict[int, list[MemoryEntry]] = {}
        for i, entry in enumerate(entries):
            groups.setdefault(find(i), []).append(entry)

        return [
            sorted(group, key=lambda e: (e.created_at, e.id), reverse=True)
            for group in groups.values()
            if len(group) > 1
        ]

    async def _merge_cluster(self, cluster: list[MemoryEntry], tier: MemoryTier) -> Merge | None:
        """Merge one cluster under the writer lock.

        Members are re-read; ones that were removed, expired or moved to
        another tier since the scan are left out.

        Returns:
            The committed merge, or None if fewer than two members remain.
        """
        async with self.store.sqlite.transaction() as conn:
            now = self.store.clock()
            members: list[MemoryEntry] = []
            for candidate in cluster:
                entry = await self.store.load(conn, candidate.id)
                if entry is not None and entry.tier is tier and not entry.is_expired(now):
                    members.append(entry)
            if len(members) < 2:
                return None

            survivor, absorbed = members[0], members[1:]
            merged = self._combine(survivor, absorbed, now)
            await self.store.remove(conn, survivor.id)
            await self.store.insert(conn, merged)
            for entry in absorbed:
                await self.store.remove(conn, entry.id)

        absorbed_ids = [entry.id for entry in absorbed]
        logger.info(f"Merged {len(absorbed_ids)} {tier.value} entries into {survivor.id}")
        return Merge(survivor_id=survivor.id, absorbed_ids=absorbed_ids, tier=tier)

    def _combine(
        self, survivor: MemoryEntry, absorbed: list[MemoryEntry], now: datetime
    ) -> MemoryEntry:
        """Survivor carrying the reinforcements and tier state of ``absorbed``."""
        everyone = [survivor, *absorbed]
        payload = survivor.payload
        if isinstance(payload, WorkingPayload):
            workings = [e.payload for e in everyone if isinstance(e.payload, WorkingPayload)]
            payload = WorkingPayload(
                priority=min(p.priority for p in workings),
                active=any(p.active for p in workings),
            )
        elif isinstance(payload, LongTermPayload):
            long_terms = [e.payload for e in everyone if isinstance(e.payload, LongTermPayload)]
            accessed = [p.last_accessed for p in long_terms if p.last_accessed is not None]
            payload = payload.model_copy(
                update={
                    "confidence": max(p.confidence for p in long_terms),
                    "access_count": sum(p.access_count for p in long_terms),
                    "last_accessed": max(accessed) if accessed else None,
                }
            )

        return survivor.model_copy(
            update={
                "reinforcement_count": survivor.reinforcement_count
                + sum(e.reinforcement_count + 1 for e in absorbed),
                "updated_at": max(now, survivor.updated_at),
                "payload": payload,
            }
        )

    async def _sync_index(self, result: ConsolidationResult) -> None:
        """Carry vectors over to promoted IDs and drop removed ones."""
        await self._move_embeddings(result.promotions)
        if self.index is None:
            return
        stale = [*result.pruned_ids]
        for merge in result.merges:
            stale.extend(merge.absorbed_ids)
        if not stale:
            return
        try:
            await self.index.delete_embeddings(stale)
        except VectorStoreError as e:
            logger.warning(f"Failed to drop embeddings of removed entries: {e}")

    async def _move_embeddings(self, promotions: list[Promotion]) -> None:
        if self.index is None:
            return
        for promotion in promotions:
            try:
                if promotion.merged:
                    await self.index.delete_embeddings([promotion.source_id])
                else:
                    await self.index.move_embedding(promotion.source_id, promotion.target_id)
            except VectorStoreError as e:
                logger.warning(
                    f"Failed to move embedding {promotion.source_id} -> "
                    f"{promotion.target_id}: {e}"
                )
