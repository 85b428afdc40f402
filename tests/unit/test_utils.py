"""Unit tests for core utilities."""

import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest

from agentmem.core.utils import (
    content_hash,
    content_marker,
    ensure_utc,
    from_db_timestamp,
    generate_memory_id,
    generate_run_id,
    to_db_timestamp,
    utc_now,
    word_similarity,
)


class TestIdGeneration:
    """Tests for ID generation functions."""

    def test_generate_memory_id(self):
        """Test memory ID generation."""
        memory_id = generate_memory_id()

        assert memory_id.startswith("mem_")
        assert uuid.UUID(memory_id[4:]).version == 1

    def test_ids_are_unique(self):
        """Test generated IDs do not repeat."""
        ids = {generate_memory_id() for _ in range(100)}

        assert len(ids) == 100

    def test_generate_run_id(self):
        """Test run ID generation."""
        run_id = generate_run_id()

        assert run_id.startswith("run_")
        assert uuid.UUID(run_id[4:]).version == 4


class TestTimeUtilities:
    """Tests for time helpers."""

    def test_utc_now_is_aware(self):
        """Test utc_now returns an aware UTC datetime."""
        assert utc_now().tzinfo is not None

    def test_ensure_utc(self):
        """Test naive and foreign-zone datetimes are normalized."""
        naive = datetime(2024, 1, 1, 12, 0)
        plus_two = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        assert ensure_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert ensure_utc(plus_two) == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert ensure_utc(None) is None

    def test_db_timestamp_round_trip(self):
        """Test stored timestamps keep microseconds and compare as strings."""
        earlier = datetime(2024, 1, 1, 12, 0, 0, 5, tzinfo=UTC)
        later = datetime(2024, 1, 1, 12, 0, 0, 40, tzinfo=UTC)

        assert from_db_timestamp(to_db_timestamp(earlier)) == earlier
        assert to_db_timestamp(earlier) < to_db_timestamp(later)
        assert from_db_timestamp(None) is None


class TestContentHelpers:
    """Tests for content helpers."""

    def test_content_hash(self):
        """Test hashing is deterministic and content-sensitive."""
        assert content_hash("ran tests") == content_hash("ran tests")
        assert content_hash("ran tests") != content_hash("ran test")
        assert len(content_hash("")) == 64

    def test_content_marker(self):
        """Test the marker is the lowercased last ':' segment."""
        assert content_marker("note:todo") == "todo"
        assert content_marker("agent:note:Decision") == "decision"
        assert content_marker("tool_result") == "tool_result"

    def test_word_similarity(self):
        """Test word overlap ignores case, order and repeated spaces."""
        assert word_similarity("Run  the tests", "tests the run") == 1.0
        assert word_similarity("use pnpm", "use npm") == pytest.approx(1 / 3)
        assert word_similarity("alpha", "beta") == 0.0
        assert word_similarity("", "") == 1.0
