"""Core data types and Pydantic models for agentmem.

This module defines the tier-typed memory entry (a tagged union over
short-term, working and long-term payloads), the create input and its
validation rules, and the query, result and statistics models exchanged
with collaborators.
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from agentmem.core.exceptions import InvalidOperationError

MemoryID = Annotated[str, StringConstraints(pattern=r"^mem_[a-f0-9\-]+$")]


class MemoryTier(str, Enum):
    """Classification band of a memory entry, in promotion order."""

    SHORT_TERM = "short_term"
    WORKING = "working"
    LONG_TERM = "long_term"

    @property
    def rank(self) -> int:
        """Position in promotion order (0 = lowest)."""
        return _TIER_ORDER.index(self)

    def next_tier(self) -> "MemoryTier | None":
        """Tier an entry is promoted into, or None at the top."""
        index = self.rank + 1
        return _TIER_ORDER[index] if index < len(_TIER_ORDER) else None


_TIER_ORDER = [MemoryTier.SHORT_TERM, MemoryTier.WORKING, MemoryTier.LONG_TERM]


class Applicability(str, Enum):
    """Scope over which a long-term entry is considered valid."""

    GLOBAL = "global"
    FOLDER = "folder"

    @classmethod
    def for_folder(cls, folder_id: str | None) -> "Applicability":
        return cls.FOLDER if folder_id else cls.GLOBAL


# Tier payloads
class ShortTermPayload(BaseModel):
    """Payload of a fast-decaying observation.

    The entry is logically dead once ``now >= created_at + ttl_seconds``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tier: Literal["short_term"] = "short_term"
    ttl_seconds: int = Field(gt=0)


class WorkingPayload(BaseModel):
    """Payload of active task context."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tier: Literal["working"] = "working"
    priority: int = Field(ge=1, le=4, description="1 = highest")
    active: bool = True


class LongTermPayload(BaseModel):
    """Payload of consolidated knowledge."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tier: Literal["long_term"] = "long_term"
    confidence: float = Field(ge=0.0, le=1.0)
    applicability: Applicability = Applicability.GLOBAL
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime | None = None


TierPayload = Annotated[
    Union[ShortTermPayload, WorkingPayload, LongTermPayload],
    Field(discriminator="tier"),
]

# Fields a caller may supply per tier when creating an entry
TIER_FIELDS: dict[MemoryTier, frozenset[str]] = {
    MemoryTier.SHORT_TERM: frozenset({"ttl_seconds"}),
    MemoryTier.WORKING: frozenset({"priority", "active"}),
    MemoryTier.LONG_TERM: frozenset({"confidence"}),
}
REQUIRED_TIER_FIELDS: dict[MemoryTier, frozenset[str]] = {
    MemoryTier.SHORT_TERM: frozenset({"ttl_seconds"}),
    MemoryTier.WORKING: frozenset({"priority"}),
    MemoryTier.LONG_TERM: frozenset({"confidence"}),
}
_ALL_TIER_FIELDS = frozenset().union(*TIER_FIELDS.values())


def _check_metadata(value: dict[str, Any]) -> dict[str, Any]:
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"metadata must be a JSON-serializable object: {e}") from e
    return value


# Entries
class MemoryEntry(BaseModel):
    """A stored memory entry.

    The common header is shared by every tier; ``payload`` carries exactly
    one tier-specific variant, selected by its ``tier`` tag.
    """

    model_config = ConfigDict(frozen=True)

    id: MemoryID
    user_id: str
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None
    content_type: str
    name: str | None = None
    description: str | None = None
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    reinforcement_count: int = Field(default=0, ge=0)
    promoted_from: MemoryID | None = None
    created_at: datetime
    updated_at: datetime
    payload: TierPayload

    @model_validator(mode="after")
    def _check_applicability(self) -> "MemoryEntry":
        if isinstance(self.payload, LongTermPayload):
            expected = Applicability.for_folder(self.folder_id)
            if self.payload.applicability != expected:
                raise ValueError(
                    f"applicability {self.payload.applicability.value} does not match "
                    f"folder_id={self.folder_id!r}"
                )
        return self

    @property
    def tier(self) -> MemoryTier:
        return MemoryTier(self.payload.tier)

    @property
    def expires_at(self) -> datetime | None:
        """Expiry instant for short-term entries, None for other tiers."""
        if isinstance(self.payload, ShortTermPayload):
            return self.created_at + timedelta(seconds=self.payload.ttl_seconds)
        return None

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at


class NewMemory(BaseModel):
    """Input for creating a memory entry.

    Carries the common header, a ``tier`` tag and exactly the fields legal
    for that tier:

    - short_term: ``ttl_seconds`` (required, > 0)
    - working: ``priority`` (required, 1-4), ``active`` (optional)
    - long_term: ``confidence`` (required, 0.0-1.0)

    Supplying a field of another tier, omitting a required one, or an
    out-of-range value fails validation. Values are never clamped.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None
    tier: MemoryTier
    content_type: str = Field(min_length=1)
    name: str | None = None
    description: str | None = None
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    ttl_seconds: int | None = Field(default=None, gt=0)
    priority: int | None = Field(default=None, ge=1, le=4)
    active: bool | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("metadata")
    @classmethod
    def _metadata_is_json(cls, value: dict[str, Any]) -> dict[str, Any]:
        return _check_metadata(value)

    @model_validator(mode="after")
    def _fields_match_tier(self) -> "NewMemory":
        legal = TIER_FIELDS[self.tier]
        for field in sorted(_ALL_TIER_FIELDS - legal):
            if getattr(self, field) is not None:
                raise ValueError(
                    f"field '{field}' is not valid for tier {self.tier.value}"
                )
        for field in sorted(REQUIRED_TIER_FIELDS[self.tier]):
            if getattr(self, field) is None:
                raise ValueError(
                    f"field '{field}' is required for tier {self.tier.value}"
                )
        return self

    @classmethod
    def from_fields(cls, **data: Any) -> "NewMemory":
        """Build an input, reporting validation failures as InvalidOperationError."""
        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise InvalidOperationError(describe_validation_error(e)) from e

    def build_payload(self) -> ShortTermPayload | WorkingPayload | LongTermPayload:
        """Construct the tier payload for a freshly created entry."""
        if self.tier is MemoryTier.SHORT_TERM:
            assert self.ttl_seconds is not None
            return ShortTermPayload(ttl_seconds=self.ttl_seconds)
        if self.tier is MemoryTier.WORKING:
            assert self.priority is not None
            return WorkingPayload(
                priority=self.priority,
                active=True if self.active is None else self.active,
            )
        assert self.confidence is not None
        return LongTermPayload(
            confidence=self.confidence,
            applicability=Applicability.for_folder(self.folder_id),
        )


def describe_validation_error(error: PydanticValidationError) -> str:
    """Flatten a pydantic error into a single readable line."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


# Query/Retrieval
class MemoryFilter(BaseModel):
    """Structural filter shared by list and query operations.

    Attributes:
        tiers: Restrict to these tiers (None = all).
        content_types: Restrict to these content type tags (None = all).
        active: Restrict working entries by their active flag. Entries of
            other tiers are unaffected.
        include_global: When ``folder_id`` is set, also match global
            long-term entries (knowledge valid in every folder).
    """

    user_id: str | None = None
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None
    tiers: list[MemoryTier] | None = None
    content_types: list[str] | None = None
    active: bool | None = None
    include_global: bool = False


class MemoryQuery(BaseModel):
    """A ranked retrieval request.

    Attributes:
        filter: Structural filter defining the candidate set.
        keywords: Optional keyword string; candidates must match at least one term.
        embedding: Optional query vector; enables semantic scoring.
        limit: Maximum results (None = configured default).
        offset: Results to skip before truncating to ``limit``.
        min_score: Drop results scoring below this value.
        min_similarity: With an embedding, keep only entries whose cosine
            similarity reaches this value (the keyword prefilter is then
            skipped). Ignored when the vector index is unavailable.
    """

    filter: MemoryFilter = Field(default_factory=MemoryFilter)
    keywords: str | None = None
    embedding: list[float] | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    min_score: float | None = None
    min_similarity: float | None = Field(default=None, ge=-1.0, le=1.0)


class ScoreBreakdown(BaseModel):
    """Individual terms of a relevance score."""

    tier_weight: float = 0.0
    recency: float = 0.0
    signal: float = 0.0
    keyword: float = 0.0
    similarity: float = 0.0


class ScoredEntry(BaseModel):
    """A retrieved entry with its relevance score."""

    entry: MemoryEntry
    score: float
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


# Statistics
class TierStats(BaseModel):
    """Per-tier storage statistics."""

    count: int = 0
    storage_bytes: int = 0
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None


class MemoryStats(BaseModel):
    """Snapshot of store usage.

    Counts are physical rows; ``expired_short_term`` reports short-term rows
    that are logically dead but not yet swept.
    """

    tiers: dict[MemoryTier, TierStats] = Field(
        default_factory=lambda: {tier: TierStats() for tier in MemoryTier}
    )
    count_by_content_type: dict[str, int] = Field(default_factory=dict)
    expired_short_term: int = 0
    database_size_bytes: int = 0
    last_consolidation_at: datetime | None = None

    @property
    def total(self) -> int:
        return sum(stats.count for stats in self.tiers.values())

    @property
    def storage_bytes(self) -> int:
        return sum(stats.storage_bytes for stats in self.tiers.values())


# Consolidation
class Promotion(BaseModel):
    """One committed tier promotion.

    Attributes:
        merged: The destination tier already held the same content, so the
            source was folded into that entry (``target_id``) instead of
            being copied under a new ID.
    """

    source_id: MemoryID
    target_id: MemoryID
    from_tier: MemoryTier
    to_tier: MemoryTier
    merged: bool = False


class Merge(BaseModel):
    """Near-duplicate entries of one tier folded into a survivor."""

    survivor_id: MemoryID
    absorbed_ids: list[MemoryID]
    tier: MemoryTier


class ConsolidationResult(BaseModel):
    """Outcome of a consolidation sweep.

    Attributes:
        promoted_to_working: Short-term entries promoted to working.
        promoted_to_long_term: Working entries promoted to long-term.
        pruned_short_term: Expired short-term rows deleted.
        merged_similar: Near-duplicate rows absorbed into a survivor.
        affected_ids: Every ID created or removed by the sweep.
        promotions: Source -> target pairs, in commit order.
        merges: Survivor -> absorbed groups, in commit order.
        failures: Entry ID -> error message for entries that could not be processed.
        processing_time: Wall-clock seconds spent in the sweep.
    """

    run_id: str | None = None
    promoted_to_working: int = 0
    promoted_to_long_term: int = 0
    pruned_short_term: int = 0
    merged_similar: int = 0
    affected_ids: list[str] = Field(default_factory=list)
    promotions: list[Promotion] = Field(default_factory=list)
    merges: list[Merge] = Field(default_factory=list)
    pruned_ids: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
    processing_time: float = 0.0

    def has_changes(self) -> bool:
        return self.total_affected() > 0

    def total_affected(self) -> int:
        return (
            self.promoted_to_working
            + self.promoted_to_long_term
            + self.pruned_short_term
            + self.merged_similar
        )


# Facade options
class RememberOptions(BaseModel):
    """Options for ``HierarchicalMemory.remember``.

    Tier-specific fields left as None are filled with defaults for the
    chosen tier; supplying a field of another tier is rejected.
    """

    tier: MemoryTier = MemoryTier.SHORT_TERM
    user_id: str | None = None
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None
    content_type: str = "observation"
    name: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ttl_seconds: int | None = None
    priority: int | None = None
    active: bool | None = None
    confidence: float | None = None


class RecallOptions(BaseModel):
    """Options for ``HierarchicalMemory.recall``.

    Attributes:
        max_tokens: Optional token budget; the ranked list is cut once the
            cumulative content size would exceed it.
    """

    user_id: str | None = None
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None
    tiers: list[MemoryTier] | None = None
    content_types: list[str] | None = None
    include_global: bool = False
    embedding: list[float] | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    min_score: float | None = None
    max_tokens: int | None = Field(default=None, ge=1)


# Session lifecycle
class SessionScope(BaseModel):
    """Identifiers of a session, supplied by the session lifecycle manager."""

    user_id: str = Field(min_length=1)
    session_id: str | None = None
    folder_id: str | None = None
    task_id: str | None = None


class SessionContext(BaseModel):
    """Memories loaded for a starting session."""

    scope: SessionScope
    memories: list[ScoredEntry] = Field(default_factory=list)
    loaded_by_tier: dict[MemoryTier, int] = Field(default_factory=dict)
