"""Configuration for the memory engine.

All knobs live in plain dataclasses with documented defaults. A config is
passed explicitly to the components that need it; nothing is read from
module-level state.
"""

from dataclasses import dataclass, field
from pathlib import Path

from agentmem.core.exceptions import ConfigurationError
from agentmem.core.types import MemoryTier

DEFAULT_DATA_DIR = Path.home() / ".agentmem"
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "memory.db"
DEFAULT_CHROMA_PATH = DEFAULT_DATA_DIR / "chroma"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"


@dataclass
class RankingConfig:
    """Weights of the retrieval score.

    score = tier_weight[tier]
          + recency_weight * 0.5 ** (age / recency_half_life_seconds)
          + signal_weight * tier_signal
          + keyword_weight * matched_terms / total_terms
          + semantic_weight * cosine_similarity

    Attributes:
        tier_weights: Base weight per tier (long-term ranks highest by default).
        recency_weight: Weight of the age-decay term.
        recency_half_life_seconds: Age at which the recency term halves.
        signal_weight: Weight of the tier-native scalar (confidence, priority).
        short_term_signal: Constant signal used for short-term entries.
        keyword_weight: Weight of the keyword match fraction.
        semantic_weight: Weight of the embedding similarity.
    """

    tier_weights: dict[MemoryTier, float] = field(
        default_factory=lambda: {
            MemoryTier.LONG_TERM: 1.0,
            MemoryTier.WORKING: 0.8,
            MemoryTier.SHORT_TERM: 0.6,
        }
    )
    recency_weight: float = 0.3
    recency_half_life_seconds: float = 86400.0
    signal_weight: float = 0.3
    short_term_signal: float = 0.5
    keyword_weight: float = 0.5
    semantic_weight: float = 1.0

    def validate(self) -> None:
        missing = [tier.value for tier in MemoryTier if tier not in self.tier_weights]
        if missing:
            raise ConfigurationError(f"tier_weights missing tiers: {missing}")
        if self.recency_half_life_seconds <= 0:
            raise ConfigurationError("recency_half_life_seconds must be > 0")


@dataclass
class ConsolidationConfig:
    """Thresholds for promotion between tiers.

    Attributes:
        working_threshold: Reinforcements (dedup merges) a short-term entry
            needs before it is promoted to working.
        long_term_threshold: Reinforcements a working entry needs before it
            is promoted to long-term.
        promotion_markers: Content-type markers that promote a short-term
            entry regardless of reinforcement. A tag matches when the marker
            equals its last ':'-separated segment (``note:todo`` -> ``todo``).
        default_priorities: Working priority per content-type marker when the
            caller supplied none.
        default_priority: Working priority for unmapped content types.
        confidence_base: Long-term confidence before reinforcement.
        confidence_step: Confidence added per reinforcement (clamped to 1.0).
        max_promotions_per_sweep: Optional cap per promotion step.
        merge_similar: Merge near-duplicate entries of a tier during sweeps.
        similarity_threshold: Word-overlap (Jaccard) score at which two
            entries count as near-duplicates.
        merge_cross_session: Allow merging entries of different sessions.
        merge_cross_folder: Allow merging entries of different folders.
        merge_max_age_seconds: Entries created further apart than this are
            never merged (None = no limit).
    """

    working_threshold: int = 2
    long_term_threshold: int = 4
    promotion_markers: tuple[str, ...] = ("decision", "todo")
    default_priorities: dict[str, int] = field(
        default_factory=lambda: {"decision": 1, "todo": 2, "error": 2}
    )
    default_priority: int = 3
    confidence_base: float = 0.5
    confidence_step: float = 0.1
    max_promotions_per_sweep: int | None = None
    merge_similar: bool = True
    similarity_threshold: float = 0.8
    merge_cross_session: bool = True
    merge_cross_folder: bool = False
    merge_max_age_seconds: int | None = 7 * 86400

    def validate(self) -> None:
        if self.working_threshold < 1 or self.long_term_threshold < 1:
            raise ConfigurationError("promotion thresholds must be >= 1")
        priorities = [self.default_priority, *self.default_priorities.values()]
        if any(not 1 <= p <= 4 for p in priorities):
            raise ConfigurationError("default priorities must be between 1 and 4")
        if not 0.0 <= self.confidence_base <= 1.0:
            raise ConfigurationError("confidence_base must be between 0.0 and 1.0")
        if self.confidence_step < 0.0:
            raise ConfigurationError("confidence_step must be >= 0.0")
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ConfigurationError("similarity_threshold must be in (0.0, 1.0]")
        if self.merge_max_age_seconds is not None and self.merge_max_age_seconds < 0:
            raise ConfigurationError("merge_max_age_seconds must be >= 0")


@dataclass
class MemoryConfig:
    """Top-level configuration of the memory engine.

    Attributes:
        db_path: SQLite database file shared by all local processes.
        chroma_path: ChromaDB persistence directory for the embedding index.
        short_term_ttl_seconds: TTL applied by ``remember`` when none is given.
        dedup_window_seconds: Identical content re-created within this window
            of the existing entry's last update is merged into it.
        default_limit: Result limit when a query specifies none.
        long_term_default_confidence: Confidence used by ``learn`` when none is given.
        busy_timeout_ms: How long SQLite waits on a locked database.
        embeddings_enabled: Enables the embedding client, index and indexer.
        ollama_url: Embedding service URL.
        embedding_model: Embedding model name.
        embedding_timeout: Seconds before an embedding request times out.
        token_encoding: Tiktoken encoding used for recall token budgets.
    """

    db_path: Path = DEFAULT_DB_PATH
    chroma_path: Path = DEFAULT_CHROMA_PATH
    short_term_ttl_seconds: int = 3600
    dedup_window_seconds: int = 3600
    default_limit: int = 20
    long_term_default_confidence: float = 0.5
    busy_timeout_ms: int = 5000
    embeddings_enabled: bool = False
    ollama_url: str = DEFAULT_OLLAMA_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_timeout: float = 10.0
    token_encoding: str = "cl100k_base"
    ranking: RankingConfig = field(default_factory=RankingConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: If any value is out of range.
        """
        if self.short_term_ttl_seconds <= 0:
            raise ConfigurationError("short_term_ttl_seconds must be > 0")
        if self.dedup_window_seconds < 0:
            raise ConfigurationError("dedup_window_seconds must be >= 0")
        if self.default_limit < 1:
            raise ConfigurationError("default_limit must be >= 1")
        if not 0.0 <= self.long_term_default_confidence <= 1.0:
            raise ConfigurationError(
                "long_term_default_confidence must be between 0.0 and 1.0"
            )
        if self.embedding_timeout <= 0:
            raise ConfigurationError("embedding_timeout must be > 0")
        self.ranking.validate()
        self.consolidation.validate()
