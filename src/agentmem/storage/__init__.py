"""Storage layer for agentmem.

This module provides database and vector store operations.
"""

from agentmem.storage.chroma import ChromaStorage
from agentmem.storage.sqlite import SQLiteStorage

__all__ = ["SQLiteStorage", "ChromaStorage"]
