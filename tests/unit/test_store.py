"""Unit tests for the tiered memory store."""

import pytest

from agentmem.core.exceptions import InvalidOperationError, MemoryNotFoundError
from agentmem.core.types import (
    Applicability,
    ConsolidationResult,
    LongTermPayload,
    MemoryFilter,
    MemoryTier,
    NewMemory,
    WorkingPayload,
)
from agentmem.core.utils import to_db_timestamp


def short_term(content="ran tests", ttl_seconds=3600, **fields):
    fields.setdefault("user_id", "u1")
    fields.setdefault("content_type", "observation")
    return NewMemory(
        tier=MemoryTier.SHORT_TERM, content=content, ttl_seconds=ttl_seconds, **fields
    )


def working(content="refactor parser", priority=2, **fields):
    fields.setdefault("user_id", "u1")
    fields.setdefault("content_type", "note")
    return NewMemory(tier=MemoryTier.WORKING, content=content, priority=priority, **fields)


def long_term(content="repo uses poetry", confidence=0.8, **fields):
    fields.setdefault("user_id", "u1")
    fields.setdefault("content_type", "fact")
    return NewMemory(
        tier=MemoryTier.LONG_TERM, content=content, confidence=confidence, **fields
    )


@pytest.mark.asyncio
class TestCreateAndGet:
    """Tests for creating and reading entries."""

    async def test_create_and_get(self, store, clock):
        """Test a created entry reads back with its header and payload."""
        memory_id = await store.create(
            working(
                session_id="s1",
                folder_id="repo",
                task_id="t1",
                name="parser",
                description="current task",
                metadata={"files": ["parser.py"]},
            )
        )

        entry = await store.get(memory_id)

        assert entry is not None
        assert entry.id == memory_id
        assert entry.tier is MemoryTier.WORKING
        assert entry.payload == WorkingPayload(priority=2, active=True)
        assert (entry.session_id, entry.folder_id, entry.task_id) == ("s1", "repo", "t1")
        assert entry.metadata == {"files": ["parser.py"]}
        assert entry.reinforcement_count == 0
        assert entry.created_at == entry.updated_at == clock.now

    async def test_long_term_applicability(self, store):
        """Test applicability is derived from the folder."""
        global_id = await store.create(long_term(content="use ruff"))
        folder_id = await store.create(long_term(content="tests live in tests/", folder_id="repo"))

        global_entry = await store.require(global_id)
        folder_entry = await store.require(folder_id)

        assert isinstance(global_entry.payload, LongTermPayload)
        assert global_entry.payload.applicability is Applicability.GLOBAL
        assert folder_entry.payload.applicability is Applicability.FOLDER

    async def test_get_unknown(self, store):
        """Test unknown IDs read as None and fail require()."""
        assert await store.get("mem_0000") is None

        with pytest.raises(MemoryNotFoundError):
            await store.require("mem_0000")

    async def test_malformed_row_is_reported(self, store, sqlite, clock):
        """Test a row that does not form a valid entry raises InvalidOperationError."""
        stamp = to_db_timestamp(clock.now)
        await sqlite.execute(
            "INSERT INTO memory_entries (id, user_id, tier, content_type, content, "
            "content_hash, created_at, updated_at, priority, active) "
            "VALUES ('mem_zzz', 'u1', 'working', 'note', 'x', 'h', ?, ?, 2, 1)",
            (stamp, stamp),
        )

        with pytest.raises(InvalidOperationError, match="mem_zzz"):
            await store.get("mem_zzz")

    async def test_scan_reports_malformed_rows(self, store, sqlite, clock):
        """Test scan() returns readable entries and names the broken rows."""
        stamp = to_db_timestamp(clock.now)
        await sqlite.execute(
            "INSERT INTO memory_entries (id, user_id, tier, content_type, content, "
            "content_hash, created_at, updated_at, priority, active) "
            "VALUES ('mem_zzz', 'u1', 'working', 'note', 'x', 'h', ?, ?, 2, 1)",
            (stamp, stamp),
        )
        good = await store.create(working(content="y"))

        entries, errors = await store.scan(MemoryFilter(user_id="u1"))

        assert [e.id for e in entries] == [good]
        assert list(errors) == ["mem_zzz"]
        assert "malformed" in errors["mem_zzz"]


@pytest.mark.asyncio
class TestExpiry:
    """Tests for TTL visibility and cleanup."""

    async def test_ttl_lifecycle(self, store, clock):
        """Test a short-term note is visible until its TTL, then cleaned up once."""
        memory_id = await store.create(short_term(ttl_seconds=3600))

        clock.advance(10)
        assert await store.get(memory_id) is not None

        clock.advance(3591)
        assert await store.get(memory_id) is None
        assert await store.list() == []

        assert await store.cleanup_expired() == 1
        assert await store.cleanup_expired() == 0

    async def test_expiry_boundary_is_inclusive(self, store, clock):
        """Test an entry is dead exactly at created_at + ttl."""
        memory_id = await store.create(short_term(ttl_seconds=60))

        clock.advance(59)
        assert await store.get(memory_id) is not None

        clock.advance(1)
        assert await store.get(memory_id) is None

    async def test_other_tiers_do_not_expire(self, store, clock):
        """Test working and long-term entries survive any amount of time."""
        working_id = await store.create(working())
        long_id = await store.create(long_term())

        clock.advance(10 * 365 * 86400)

        assert await store.get(working_id) is not None
        assert await store.get(long_id) is not None
        assert await store.cleanup_expired() == 0

    async def test_purge_expired_scoped(self, store, clock):
        """Test purge_expired can be restricted to one user."""
        mine = await store.create(short_term(ttl_seconds=60))
        await store.create(short_term(ttl_seconds=60, user_id="u2"))
        clock.advance(61)

        purged = await store.purge_expired(user_id="u1")

        assert purged == [mine]
        stats = await store.stats()
        assert stats.tiers[MemoryTier.SHORT_TERM].count == 1


@pytest.mark.asyncio
class TestDeduplication:
    """Tests for reinforcement of identical content."""

    async def test_identical_content_reinforces(self, store, clock):
        """Test re-creating identical content returns the existing entry."""
        first = await store.create(working())
        clock.advance(5)
        second = await store.create(working())

        entry = await store.require(first)
        assert second == first
        assert entry.reinforcement_count == 1
        assert entry.updated_at == clock.now
        assert entry.created_at < entry.updated_at

    async def test_dedup_is_per_tier_and_user(self, store):
        """Test identical content in another tier or for another user is new."""
        base = await store.create(short_term(content="same"))
        other_tier = await store.create(working(content="same"))
        other_user = await store.create(short_term(content="same", user_id="u2"))

        assert len({base, other_tier, other_user}) == 3

    async def test_dedup_window(self, store, clock):
        """Test content re-created after the window is a new entry."""
        first = await store.create(working())
        clock.advance(store.config.dedup_window_seconds + 1)

        second = await store.create(working())

        assert second != first

    async def test_window_slides_with_reinforcement(self, store, clock):
        """Test each reinforcement restarts the window."""
        first = await store.create(working())
        for _ in range(3):
            clock.advance(store.config.dedup_window_seconds - 1)
            assert await store.create(working()) == first

        entry = await store.require(first)
        assert entry.reinforcement_count == 3

    async def test_expired_entry_not_reinforced(self, store, clock):
        """Test an expired short-term entry is not revived by a duplicate."""
        first = await store.create(short_term(ttl_seconds=60))
        clock.advance(61)

        second = await store.create(short_term(ttl_seconds=60))

        assert second != first

    async def test_long_term_reinforcement_bumps_access(self, store, clock):
        """Test reinforcing long-term knowledge counts as an access."""
        first = await store.create(long_term())
        clock.advance(30)
        await store.create(long_term())

        entry = await store.require(first)
        assert isinstance(entry.payload, LongTermPayload)
        assert entry.payload.access_count == 1
        assert entry.payload.last_accessed == clock.now
        assert entry.reinforcement_count == 1


@pytest.mark.asyncio
class TestList:
    """Tests for structural listing."""

    async def test_newest_first(self, store, clock):
        """Test entries are listed newest first."""
        ids = []
        for i in range(3):
            ids.append(await store.create(working(content=f"step {i}")))
            clock.advance(1)

        entries = await store.list()

        assert [e.id for e in entries] == list(reversed(ids))

    async def test_ties_broken_by_id(self, store):
        """Test entries created at the same instant are ordered by ID descending."""
        ids = [await store.create(working(content=f"step {i}")) for i in range(3)]

        entries = await store.list()

        assert [e.id for e in entries] == sorted(ids, reverse=True)

    async def test_filters(self, store):
        """Test user, tier, content-type and task filters."""
        await store.create(short_term(content="a"))
        todo = await store.create(working(content="b", content_type="note:todo", task_id="t1"))
        await store.create(long_term(content="c"))
        await store.create(working(content="d", user_id="u2"))

        by_tier = await store.list(MemoryFilter(user_id="u1", tiers=[MemoryTier.WORKING]))
        by_type = await store.list(MemoryFilter(content_types=["note:todo"]))
        by_task = await store.list(MemoryFilter(task_id="t1"))

        assert [e.id for e in by_tier] == [todo]
        assert [e.id for e in by_type] == [todo]
        assert [e.id for e in by_task] == [todo]

    async def test_empty_filter_lists_match_nothing(self, store):
        """Test an empty tier list selects no entries."""
        await store.create(working())

        assert await store.list(MemoryFilter(tiers=[])) == []
        assert await store.list(MemoryFilter(content_types=[])) == []

    async def test_folder_with_global_knowledge(self, store):
        """Test include_global adds global long-term entries to a folder scope."""
        in_folder = await store.create(working(folder_id="repo"))
        global_fact = await store.create(long_term(content="use ruff"))
        await store.create(long_term(content="other repo fact", folder_id="other"))
        await store.create(working(content="elsewhere", folder_id="other"))

        folder_only = await store.list(MemoryFilter(folder_id="repo"))
        with_global = await store.list(MemoryFilter(folder_id="repo", include_global=True))

        assert {e.id for e in folder_only} == {in_folder}
        assert {e.id for e in with_global} == {in_folder, global_fact}

    async def test_active_filter(self, store):
        """Test the active filter applies to working entries only."""
        await store.create(working(content="paused").model_copy(update={"active": False}))
        active = await store.create(working(content="current"))
        fact = await store.create(long_term())

        entries = await store.list(MemoryFilter(active=True))

        assert {e.id for e in entries} == {active, fact}

    async def test_limit(self, store):
        """Test the optional row limit."""
        for i in range(5):
            await store.create(working(content=f"step {i}"))

        assert len(await store.list(limit=2)) == 2


@pytest.mark.asyncio
class TestDelete:
    """Tests for deletion."""

    async def test_delete_is_idempotent(self, store):
        """Test deleting twice reports False the second time."""
        memory_id = await store.create(working())

        assert await store.delete(memory_id) is True
        assert await store.delete(memory_id) is False
        assert await store.get(memory_id) is None

    async def test_clear_task(self, store):
        """Test only working entries of the task are removed."""
        await store.create(working(content="a", task_id="t1"))
        await store.create(working(content="b", task_id="t1"))
        keep_short = await store.create(short_term(content="c", task_id="t1"))
        keep_other = await store.create(working(content="d", task_id="t2"))

        cleared = await store.clear_task("u1", "t1")

        assert cleared == 2
        assert {e.id for e in await store.list()} == {keep_short, keep_other}


@pytest.mark.asyncio
class TestAccessAndStats:
    """Tests for access tracking and statistics."""

    async def test_record_access(self, store, clock):
        """Test only long-term entries have their access counters bumped."""
        fact = await store.create(long_term())
        note = await store.create(working())
        clock.advance(60)

        bumped = await store.record_access([fact, note])

        assert set(bumped) == {fact}
        payload = bumped[fact].payload
        assert isinstance(payload, LongTermPayload)
        assert payload.access_count == 1
        assert payload.last_accessed == clock.now
        assert bumped[fact].updated_at == clock.now

    async def test_stats(self, store, clock):
        """Test per-tier counts, content types and expired rows."""
        await store.create(short_term(content="a", ttl_seconds=60))
        await store.create(short_term(content="b", ttl_seconds=3600))
        await store.create(working(content="c"))
        await store.create(long_term(content="d"))
        await store.create(long_term(content="e", user_id="u2"))
        clock.advance(61)

        stats = await store.stats()
        mine = await store.stats(user_id="u1")

        assert stats.total == 5
        assert stats.tiers[MemoryTier.SHORT_TERM].count == 2
        assert stats.tiers[MemoryTier.LONG_TERM].count == 2
        assert stats.count_by_content_type == {"fact": 2, "note": 1, "observation": 2}
        assert stats.expired_short_term == 1
        assert stats.storage_bytes > 0
        assert stats.database_size_bytes > 0
        assert stats.last_consolidation_at is None
        assert mine.tiers[MemoryTier.LONG_TERM].count == 1

    async def test_stats_last_consolidation(self, store, clock):
        """Test the last recorded sweep is reported."""
        await store.record_consolidation(
            ConsolidationResult(run_id="run_1"), started_at=clock.now, completed_at=clock.now
        )

        stats = await store.stats(user_id="u1")

        assert stats.last_consolidation_at == clock.now


@pytest.mark.asyncio
class TestPromotionCandidates:
    """Tests for candidate selection."""

    async def test_reinforced_and_marked_entries(self, store, clock):
        """Test reinforcement and content-type markers select candidates."""
        reinforced = await store.create(short_term(content="flaky test"))
        for _ in range(2):
            await store.create(short_term(content="flaky test"))
        clock.advance(1)
        marked = await store.create(short_term(content="ship it", content_type="note:TODO"))
        await store.create(short_term(content="noise"))

        candidates = await store.promotion_candidates(
            MemoryTier.SHORT_TERM, min_reinforcement=2, markers=("todo",)
        )

        assert candidates == [reinforced, marked]

    async def test_inactive_working_excluded(self, store):
        """Test inactive working entries are never candidates."""
        paused = working(content="paused").model_copy(update={"active": False})
        for _ in range(5):
            await store.create(paused)

        candidates = await store.promotion_candidates(MemoryTier.WORKING, min_reinforcement=4)

        assert candidates == []
