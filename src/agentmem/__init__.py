"""agentmem: hierarchical memory engine for coding-agent sessions.

Entries live in three tiers (short-term, working, long-term) in a single
SQLite file shared by cooperating local processes. Consolidation sweeps
promote reinforced entries upward and prune expired ones; recall ranks
entries across tiers.
"""

from agentmem.context import MemoryContext
from agentmem.core.config import ConsolidationConfig, MemoryConfig, RankingConfig
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
from agentmem.memory.hierarchical import HierarchicalMemory

__version__ = "0.1.0"

__all__ = [
    "MemoryContext",
    "HierarchicalMemory",
    "MemoryConfig",
    "RankingConfig",
    "ConsolidationConfig",
    "MemoryTier",
    "MemoryEntry",
    "NewMemory",
    "MemoryFilter",
    "MemoryQuery",
    "ScoredEntry",
    "MemoryStats",
    "ConsolidationResult",
    "RememberOptions",
    "RecallOptions",
    "SessionScope",
    "SessionContext",
]
