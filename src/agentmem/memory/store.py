"""Durable tiered memory store.

This module implements CRUD over the ``memory_entries`` table with
tier-aware validation, TTL visibility filtering and deduplication of
identical content. All time is read from an injectable clock.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from agentmem.core.config import MemoryConfig
from agentmem.core.exceptions import InvalidOperationError, MemoryNotFoundError
from agentmem.core.types import (
    Applicability,
    ConsolidationResult,
    MemoryEntry,
    MemoryFilter,
    MemoryStats,
    MemoryTier,
    NewMemory,
    ShortTermPayload,
    TierStats,
    WorkingPayload,
    describe_validation_error,
)
from agentmem.core.utils import (
    content_hash,
    from_db_timestamp,
    generate_memory_id,
    to_db_timestamp,
    utc_now,
)
from agentmem.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

INSERT_COLUMNS = (
    "id",
    "user_id",
    "session_id",
    "folder_id",
    "task_id",
    "tier",
    "content_type",
    "name",
    "description",
    "content",
    "content_hash",
    "metadata",
    "reinforcement_count",
    "promoted_from",
    "created_at",
    "updated_at",
    "ttl_seconds",
    "expires_at",
    "priority",
    "active",
    "confidence",
    "applicability",
    "access_count",
    "last_accessed",
)

INSERT_QUERY = (
    f"INSERT INTO memory_entries ({', '.join(INSERT_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in INSERT_COLUMNS)})"
)

# A short-term row is visible while now < expires_at
LIVE_CLAUSE = "(tier != 'short_term' OR expires_at > ?)"


class MemoryStore:
    """Tier-aware CRUD over the shared SQLite store.

    There is no in-memory cache: every read goes to the database so that
    a write committed by any process is visible to the next read.

    Attributes:
        sqlite: SQLite storage instance.
        config: Engine configuration.
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        sqlite: SQLiteStorage,
        config: MemoryConfig | None = None,
        clock: Clock = utc_now,
    ):
        """Initialize the store.

        Args:
            sqlite: Initialized SQLite storage.
            config: Engine configuration (defaults used when None).
            clock: Time source; tests pass a controllable fake.
        """
        self.sqlite = sqlite
        self.config = config or MemoryConfig()
        self.clock = clock

    # ========== Create ==========

    async def create(self, new: NewMemory) -> str:
        """Create an entry, or reinforce an identical recent one.

        An existing live entry of the same user and tier whose content is
        identical and whose ``updated_at`` lies within the dedup window
        absorbs the create: its ``updated_at`` is bumped, its
        ``reinforcement_count`` incremented and, for long-term entries,
        its access counters bumped. The existing ID is returned.

        Args:
            new: Validated create input.

        Returns:
            ID of the created or reinforced entry.

        Raises:
            InvalidOperationError: If the input violates tier rules.
            DatabaseError: If the database operation fails.
        """
        now = self.clock()

        async with self.sqlite.transaction() as conn:
            existing = await self.find_duplicate(conn, new.user_id, new.tier, new.content, now)
            if existing is not None:
                await self.reinforce(
                    conn, existing, 1, now, touch_access=new.tier is MemoryTier.LONG_TERM
                )
                logger.debug(f"Reinforced {new.tier.value} entry {existing}")
                return existing

            entry = MemoryEntry(
                id=generate_memory_id(),
                user_id=new.user_id,
                session_id=new.session_id,
                folder_id=new.folder_id,
                task_id=new.task_id,
                content_type=new.content_type,
                name=new.name,
                description=new.description,
                content=new.content,
                metadata=new.metadata,
                created_at=now,
                updated_at=now,
                payload=new.build_payload(),
            )
            await self.insert(conn, entry)

        logger.debug(f"Created {entry.tier.value} entry {entry.id} for user {entry.user_id}")
        return entry.id

    # ========== Read ==========

    async def get(self, memory_id: str) -> MemoryEntry | None:
        """Get an entry by ID.

        Args:
            memory_id: Entry ID.

        Returns:
            The entry, or None if unknown or logically expired.

        Raises:
            InvalidOperationError: If the stored row is malformed.
            DatabaseError: If the query fails.
        """
        row = await self.sqlite.fetch_one(
            f"SELECT * FROM memory_entries WHERE id = ? AND {LIVE_CLAUSE}",
            (memory_id, to_db_timestamp(self.clock())),
        )
        if row is None:
            return None
        return self._row_to_entry(row)

    async def require(self, memory_id: str) -> MemoryEntry:
        """Get an entry by ID, failing if it is absent.

        Raises:
            MemoryNotFoundError: If the entry is unknown or expired.
        """
        entry = await self.get(memory_id)
        if entry is None:
            raise MemoryNotFoundError(memory_id)
        return entry

    async def list(
        self, memory_filter: MemoryFilter | None = None, limit: int | None = None
    ) -> list[MemoryEntry]:
        """List live entries matching a structural filter.

        Args:
            memory_filter: Filter to apply (None = everything).
            limit: Optional maximum number of rows.

        Returns:
            Entries ordered by ``created_at`` descending, then ID descending.

        Raises:
            InvalidOperationError: If a stored row is malformed.
            DatabaseError: If the query fails.
        """
        where, params = self._build_where(memory_filter or MemoryFilter(), self.clock())
        query = f"SELECT * FROM memory_entries WHERE {where} ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self.sqlite.fetch_all(query, tuple(params))
        return [self._row_to_entry(row) for row in rows]

    async def scan(
        self, memory_filter: MemoryFilter
    ) -> tuple[list[MemoryEntry], dict[str, str]]:
        """List live entries, reporting malformed rows instead of raising.

        Returns:
            Entries in ``list`` order, and row ID -> error for rows that
            could not be read.
        """
        where, params = self._build_where(memory_filter, self.clock())
        rows = await self.sqlite.fetch_all(
            f"SELECT * FROM memory_entries WHERE {where} ORDER BY created_at DESC, id DESC",
            tuple(params),
        )

        entries: list[MemoryEntry] = []
        errors: dict[str, str] = {}
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except InvalidOperationError as e:
                errors[row["id"]] = str(e)
        return entries, errors

    # ========== Delete ==========

    async def delete(self, memory_id: str) -> bool:
        """Delete an entry. Deleting an unknown ID is not an error.

        Returns:
            True if a row was removed.
        """
        removed = await self.sqlite.execute(
            "DELETE FROM memory_entries WHERE id = ?", (memory_id,)
        )
        if removed:
            logger.debug(f"Deleted entry {memory_id}")
        return removed > 0

    async def cleanup_expired(self) -> int:
        """Physically delete every expired short-term row.

        Returns:
            Number of rows deleted (0 when nothing newly expired).
        """
        return len(await self.purge_expired())

    async def purge_expired(
        self, user_id: str | None = None, folder_id: str | None = None
    ) -> list[str]:
        """Delete expired short-term rows and report their IDs.

        Args:
            user_id: Restrict to this user.
            folder_id: Restrict to this folder.

        Returns:
            IDs of deleted rows.
        """
        conditions = ["tier = 'short_term'", "expires_at <= ?"]
        params: list[Any] = [to_db_timestamp(self.clock())]
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if folder_id is not None:
            conditions.append("folder_id = ?")
            params.append(folder_id)

        ids = await self._delete_returning_ids(" AND ".join(conditions), params)
        if ids:
            logger.info(f"Pruned {len(ids)} expired short-term entries")
        return ids

    async def clear_task(self, user_id: str, task_id: str) -> int:
        """Delete the working entries bound to a task.

        Returns:
            Number of rows deleted.
        """
        return len(await self.purge_task(user_id, task_id))

    async def purge_task(self, user_id: str, task_id: str) -> list[str]:
        """Delete the working entries bound to a task and report their IDs."""
        ids = await self._delete_returning_ids(
            "tier = 'working' AND user_id = ? AND task_id = ?", [user_id, task_id]
        )
        logger.info(f"Cleared {len(ids)} working entries for task {task_id}")
        return ids

    async def _delete_returning_ids(self, where: str, params: list[Any]) -> list[str]:
        async with self.sqlite.transaction() as conn:
            cursor = await conn.execute(
                f"SELECT id FROM memory_entries WHERE {where}", tuple(params)
            )
            ids = [row["id"] for row in await cursor.fetchall()]
            if ids:
                await conn.execute(f"DELETE FROM memory_entries WHERE {where}", tuple(params))
        return ids

    # ========== Access Tracking ==========

    async def record_access(self, memory_ids: list[str]) -> dict[str, MemoryEntry]:
        """Bump access counters of the long-term entries among ``memory_ids``.

        Runs a single UPDATE and re-reads the touched rows in the same
        transaction.

        Args:
            memory_ids: IDs returned by a retrieval.

        Returns:
            Mapping of ID to the bumped entry, for long-term IDs still present.
        """
        if not memory_ids:
            return {}

        stamp = to_db_timestamp(self.clock())
        placeholders = ", ".join("?" for _ in memory_ids)

        async with self.sqlite.transaction() as conn:
            await conn.execute(
                f"""
                UPDATE memory_entries
                SET access_count = access_count + 1,
                    last_accessed = ?,
                    updated_at = MAX(updated_at, ?)
                WHERE tier = 'long_term' AND id IN ({placeholders})
                """,
                (stamp, stamp, *memory_ids),
            )
            cursor = await conn.execute(
                f"SELECT * FROM memory_entries WHERE tier = 'long_term' AND id IN ({placeholders})",
                tuple(memory_ids),
            )
            rows = await cursor.fetchall()

        return {row["id"]: self._row_to_entry(dict(row)) for row in rows}

    # ========== Statistics ==========

    async def stats(self, user_id: str | None = None) -> MemoryStats:
        """Collect usage statistics.

        Args:
            user_id: Restrict to this user (None = all users).

        Returns:
            Physical row counts, footprint and consolidation history summary.
        """
        user_clause = "WHERE user_id = ?" if user_id is not None else ""
        user_params: tuple[Any, ...] = (user_id,) if user_id is not None else ()

        tier_rows = await self.sqlite.fetch_all(
            f"""
            SELECT tier,
                   COUNT(*) AS count,
                   COALESCE(SUM(LENGTH(CAST(content AS BLOB))
                              + LENGTH(CAST(metadata AS BLOB))), 0) AS storage_bytes,
                   MIN(created_at) AS oldest,
                   MAX(created_at) AS newest
            FROM memory_entries {user_clause}
            GROUP BY tier
            """,
            user_params,
        )
        tiers = {tier: TierStats() for tier in MemoryTier}
        for row in tier_rows:
            tiers[MemoryTier(row["tier"])] = TierStats(
                count=row["count"],
                storage_bytes=row["storage_bytes"],
                oldest_created_at=from_db_timestamp(row["oldest"]),
                newest_created_at=from_db_timestamp(row["newest"]),
            )

        type_rows = await self.sqlite.fetch_all(
            f"""
            SELECT content_type, COUNT(*) AS count
            FROM memory_entries {user_clause}
            GROUP BY content_type
            ORDER BY content_type
            """,
            user_params,
        )

        expired_where = "tier = 'short_term' AND expires_at <= ?"
        expired_params: tuple[Any, ...] = (to_db_timestamp(self.clock()),)
        if user_id is not None:
            expired_where += " AND user_id = ?"
            expired_params += (user_id,)
        expired = await self.sqlite.count("memory_entries", expired_where, expired_params)

        runs_query = "SELECT MAX(completed_at) AS last_run FROM consolidation_runs"
        runs_params: tuple[Any, ...] = ()
        if user_id is not None:
            runs_query += " WHERE user_id IS NULL OR user_id = ?"
            runs_params = (user_id,)
        last_run = await self.sqlite.fetch_one(runs_query, runs_params)

        return MemoryStats(
            tiers=tiers,
            count_by_content_type={row["content_type"]: row["count"] for row in type_rows},
            expired_short_term=expired,
            database_size_bytes=await self.sqlite.size_bytes(),
            last_consolidation_at=from_db_timestamp(last_run["last_run"]) if last_run else None,
        )

    async def record_consolidation(
        self,
        result: ConsolidationResult,
        started_at: datetime,
        completed_at: datetime,
        user_id: str | None = None,
        folder_id: str | None = None,
    ) -> None:
        """Append a sweep to the consolidation history."""
        await self.sqlite.execute(
            """
            INSERT INTO consolidation_runs (
                run_id, user_id, folder_id, started_at, completed_at,
                promoted_to_working, promoted_to_long_term, pruned_short_term,
                merged_similar, failures
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.run_id,
                user_id,
                folder_id,
                to_db_timestamp(started_at),
                to_db_timestamp(completed_at),
                result.promoted_to_working,
                result.promoted_to_long_term,
                result.pruned_short_term,
                result.merged_similar,
                len(result.failures),
            ),
        )

    # ========== Consolidation Support ==========

    async def promotion_candidates(
        self,
        tier: MemoryTier,
        min_reinforcement: int,
        markers: tuple[str, ...] = (),
        user_id: str | None = None,
        folder_id: str | None = None,
        limit: int | None = None,
    ) -> list[str]:
        """IDs of live entries of ``tier`` that look eligible for promotion.

        A row qualifies when its ``reinforcement_count`` reaches
        ``min_reinforcement`` or its content-type marker (last ':'
        segment) is one of ``markers``. Working rows must be active.
        The caller re-validates each ID under the writer lock.

        Returns:
            IDs ordered oldest first.
        """
        conditions = ["tier = ?", LIVE_CLAUSE]
        params: list[Any] = [tier.value, to_db_timestamp(self.clock())]

        eligibility = ["reinforcement_count >= ?"]
        params.append(min_reinforcement)
        for marker in markers:
            eligibility.append("(LOWER(content_type) = ? OR content_type LIKE ?)")
            params.extend([marker, f"%:{marker}"])
        conditions.append(f"({' OR '.join(eligibility)})")

        if tier is MemoryTier.WORKING:
            conditions.append("active = 1")
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if folder_id is not None:
            conditions.append("folder_id = ?")
            params.append(folder_id)

        query = (
            f"SELECT id FROM memory_entries WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at ASC, id ASC"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self.sqlite.fetch_all(query, tuple(params))
        return [row["id"] for row in rows]

    # ========== Transaction Primitives ==========
    # Used by the consolidation engine inside a writer-locked transaction.

    async def load(self, conn: aiosqlite.Connection, memory_id: str) -> MemoryEntry | None:
        """Read an entry (expired or not) on an open connection."""
        cursor = await conn.execute("SELECT * FROM memory_entries WHERE id = ?", (memory_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_entry(dict(row))

    async def insert(self, conn: aiosqlite.Connection, entry: MemoryEntry) -> None:
        """Insert a fully built entry on an open connection."""
        await conn.execute(INSERT_QUERY, self._entry_to_params(entry))

    async def remove(self, conn: aiosqlite.Connection, memory_id: str) -> bool:
        """Delete an entry on an open connection."""
        cursor = await conn.execute("DELETE FROM memory_entries WHERE id = ?", (memory_id,))
        return cursor.rowcount > 0

    async def find_duplicate(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        tier: MemoryTier,
        content: str,
        now: datetime,
    ) -> str | None:
        """ID of the live entry that would absorb a write of ``content``.

        The match is the most recently updated live entry of the same user
        and tier with identical content, updated within the dedup window.
        """
        window_start = now - timedelta(seconds=self.config.dedup_window_seconds)
        cursor = await conn.execute(
            f"""
            SELECT id FROM memory_entries
            WHERE user_id = ? AND tier = ? AND content_hash = ? AND content = ?
              AND updated_at >= ?
              AND {LIVE_CLAUSE}
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (
                user_id,
                tier.value,
                content_hash(content),
                content,
                to_db_timestamp(window_start),
                to_db_timestamp(now),
            ),
        )
        row = await cursor.fetchone()
        return row["id"] if row is not None else None

    async def reinforce(
        self,
        conn: aiosqlite.Connection,
        memory_id: str,
        count: int,
        now: datetime,
        touch_access: bool = False,
    ) -> None:
        """Add ``count`` reinforcements to an entry and bump ``updated_at``.

        With ``touch_access`` a long-term entry also counts one access.
        ``updated_at`` never moves backwards.
        """
        stamp = to_db_timestamp(now)
        touch = 1 if touch_access else 0
        await conn.execute(
            """
            UPDATE memory_entries
            SET updated_at = MAX(updated_at, ?),
                reinforcement_count = reinforcement_count + ?,
                access_count = CASE WHEN tier = 'long_term' AND ? = 1
                    THEN access_count + 1 ELSE access_count END,
                last_accessed = CASE WHEN tier = 'long_term' AND ? = 1
                    THEN ? ELSE last_accessed END
            WHERE id = ?
            """,
            (stamp, count, touch, touch, stamp, memory_id),
        )

    # ========== Helper Methods ==========

    def _build_where(
        self, memory_filter: MemoryFilter, now: datetime
    ) -> tuple[str, list[Any]]:
        """Translate a structural filter into a WHERE clause.

        Expired short-term rows are always excluded.
        """
        conditions = [LIVE_CLAUSE]
        params: list[Any] = [to_db_timestamp(now)]

        if memory_filter.user_id is not None:
            conditions.append("user_id = ?")
            params.append(memory_filter.user_id)
        if memory_filter.session_id is not None:
            conditions.append("session_id = ?")
            params.append(memory_filter.session_id)
        if memory_filter.task_id is not None:
            conditions.append("task_id = ?")
            params.append(memory_filter.task_id)
        if memory_filter.folder_id is not None:
            if memory_filter.include_global:
                conditions.append(
                    "(folder_id = ? OR (tier = 'long_term' AND applicability = 'global'))"
                )
            else:
                conditions.append("folder_id = ?")
            params.append(memory_filter.folder_id)
        if memory_filter.tiers is not None:
            if not memory_filter.tiers:
                conditions.append("0")
            else:
                conditions.append(
                    f"tier IN ({', '.join('?' for _ in memory_filter.tiers)})"
                )
                params.extend(tier.value for tier in memory_filter.tiers)
        if memory_filter.content_types is not None:
            if not memory_filter.content_types:
                conditions.append("0")
            else:
                conditions.append(
                    f"content_type IN ({', '.join('?' for _ in memory_filter.content_types)})"
                )
                params.extend(memory_filter.content_types)
        if memory_filter.active is not None:
            conditions.append("(tier != 'working' OR active = ?)")
            params.append(1 if memory_filter.active else 0)

        return " AND ".join(conditions), params

    def _entry_to_params(self, entry: MemoryEntry) -> tuple[Any, ...]:
        """Flatten an entry into INSERT parameters (order of INSERT_COLUMNS)."""
        payload = entry.payload
        ttl_seconds = expires_at = priority = active = None
        confidence = applicability = access_count = last_accessed = None

        if isinstance(payload, ShortTermPayload):
            ttl_seconds = payload.ttl_seconds
            expires_at = to_db_timestamp(entry.created_at + timedelta(seconds=ttl_seconds))
        elif isinstance(payload, WorkingPayload):
            priority = payload.priority
            active = 1 if payload.active else 0
        else:
            confidence = payload.confidence
            applicability = payload.applicability.value
            access_count = payload.access_count
            last_accessed = (
                to_db_timestamp(payload.last_accessed) if payload.last_accessed else None
            )

        return (
            entry.id,
            entry.user_id,
            entry.session_id,
            entry.folder_id,
            entry.task_id,
            entry.tier.value,
            entry.content_type,
            entry.name,
            entry.description,
            entry.content,
            content_hash(entry.content),
            json.dumps(entry.metadata, allow_nan=False, sort_keys=True),
            entry.reinforcement_count,
            entry.promoted_from,
            to_db_timestamp(entry.created_at),
            to_db_timestamp(entry.updated_at),
            ttl_seconds,
            expires_at,
            priority,
            active,
            confidence,
            applicability,
            access_count,
            last_accessed,
        )

    def _row_to_entry(self, row: dict[str, Any]) -> MemoryEntry:
        """Convert database row to MemoryEntry model.

        Args:
            row: Database row as dictionary.

        Returns:
            MemoryEntry instance.

        Raises:
            InvalidOperationError: If the row does not form a valid entry.
        """
        tier = row["tier"]
        payload: dict[str, Any]
        if tier == MemoryTier.SHORT_TERM.value:
            payload = {"tier": tier, "ttl_seconds": row["ttl_seconds"]}
        elif tier == MemoryTier.WORKING.value:
            payload = {
                "tier": tier,
                "priority": row["priority"],
                "active": bool(row["active"]),
            }
        else:
            payload = {
                "tier": tier,
                "confidence": row["confidence"],
                "applicability": row["applicability"] or Applicability.GLOBAL.value,
                "access_count": row["access_count"] or 0,
                "last_accessed": from_db_timestamp(row["last_accessed"]),
            }

        try:
            return MemoryEntry(
                id=row["id"],
                user_id=row["user_id"],
                session_id=row["session_id"],
                folder_id=row["folder_id"],
                task_id=row["task_id"],
                content_type=row["content_type"],
                name=row["name"],
                description=row["description"],
                content=row["content"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                reinforcement_count=row["reinforcement_count"],
                promoted_from=row["promoted_from"],
                created_at=from_db_timestamp(row["created_at"]),
                updated_at=from_db_timestamp(row["updated_at"]),
                payload=payload,
            )
        except (PydanticValidationError, ValueError) as e:
            detail = (
                describe_validation_error(e)
                if isinstance(e, PydanticValidationError)
                else str(e)
            )
            raise InvalidOperationError(f"malformed entry {row.get('id')}: {detail}") from e

