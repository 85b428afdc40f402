"""Consolidation for agentmem.

Promotion of entries between tiers and pruning of expired entries.
"""

from agentmem.consolidation.engine import ConsolidationEngine

__all__ = ["ConsolidationEngine"]
