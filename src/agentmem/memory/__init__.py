"""Memory system components for agentmem.

This module provides the tiered memory engine:
- Memory store: durable tier-aware CRUD with TTL and deduplication
- Retriever: unified relevance ranking across tiers
- Embedding indexer: background vector indexing
- Hierarchical memory: the facade collaborators call
"""

from agentmem.memory.hierarchical import HierarchicalMemory
from agentmem.memory.indexer import EmbeddingIndexer
from agentmem.memory.retrieval import MemoryRetriever
from agentmem.memory.store import MemoryStore
from agentmem.memory.tokens import TokenCounter

__all__ = [
    "MemoryStore",
    "MemoryRetriever",
    "EmbeddingIndexer",
    "HierarchicalMemory",
    "TokenCounter",
]
