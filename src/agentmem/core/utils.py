"""Small helpers shared by the storage and memory layers.

IDs, UTC clock handling, the timestamp format stored in SQLite and
content hashing live here.
"""

import hashlib
import uuid
from datetime import UTC, datetime


def generate_memory_id() -> str:
    """New memory entry ID: ``mem_`` followed by a time-based UUID.

    Promotion writes a new row, so a promoted entry never keeps its
    source's ID.

    Example:
        >>> generate_memory_id().startswith('mem_')
        True
    """
    return f"mem_{uuid.uuid1()}"


def generate_run_id() -> str:
    """New consolidation run ID with a ``run_`` prefix."""
    return f"run_{uuid.uuid4()}"


def utc_now() -> datetime:
    """Timezone-aware current time in UTC. Default clock of the engine."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Convert ``dt`` to an aware UTC datetime.

    Naive values are taken to be UTC already; None passes through.

    Example:
        >>> ensure_utc(datetime(2024, 1, 1)).isoformat()
        '2024-01-01T00:00:00+00:00'
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_db_timestamp(dt: datetime) -> str:
    """Serialize a datetime for storage.

    Always UTC with microsecond precision so that stored values compare
    correctly as strings inside SQL.

    Args:
        dt: Datetime to serialize.

    Returns:
        ISO 8601 string.

    Example:
        >>> from datetime import datetime
        >>> to_db_timestamp(datetime(2024, 1, 1))
        '2024-01-01T00:00:00.000000+00:00'
    """
    utc_dt = ensure_utc(dt)
    assert utc_dt is not None
    return utc_dt.isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    """Deserialize a stored timestamp.

    Args:
        value: ISO 8601 string from the database, or None.

    Returns:
        Timezone-aware UTC datetime, or None.
    """
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def content_hash(content: str) -> str:
    """Compute the dedup hash of an entry's content.

    Args:
        content: Entry payload text.

    Returns:
        Hex-encoded SHA-256 digest.

    Example:
        >>> len(content_hash("ran tests"))
        64
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def content_marker(content_type: str) -> str:
    """Last ':'-separated segment of a content type, lowercased.

    Args:
        content_type: Content type tag such as 'note:todo'.

    Returns:
        The marker used for promotion rules and default priorities.

    Example:
        >>> content_marker("note:todo")
        'todo'
        >>> content_marker("observation")
        'observation'
    """
    return content_type.rsplit(":", 1)[-1].strip().lower()


def word_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the lowercased whitespace-separated words.

    Example:
        >>> word_similarity("Run the tests", "run the TESTS")
        1.0
        >>> word_similarity("use pnpm", "use npm")
        0.3333333333333333
    """
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    if not words_a and not words_b:
        return 1.0
    return len(words_a & words_b) / len(words_a | words_b)
