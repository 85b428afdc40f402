"""Exception hierarchy of the memory engine.

Every failure the engine reports is one of these types, so callers can
tell a bad request (``ValidationError``) from a missing entry
(``MemoryError``) or a broken backend (``StorageError``,
``EmbeddingError``) and map each to a status or exit code.
"""


class AgentMemError(Exception):
    """Root of every error raised by agentmem."""

    pass


# ========== Entries ==========


class MemoryError(AgentMemError):
    """An entry-level operation could not be carried out."""

    pass


class MemoryNotFoundError(MemoryError):
    """No live entry has the requested ID.

    Attributes:
        memory_id: The ID that was looked up.
    """

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


# ========== Requests ==========


class ValidationError(AgentMemError):
    """A request or configuration was rejected before touching storage."""

    pass


class InvalidOperationError(ValidationError):
    """A write or transition was refused and nothing was written.

    Covers tier/payload mismatches, out-of-range scalars, metadata that is
    not a JSON object and illegal tier transitions.
    """

    def __init__(self, message: str):
        super().__init__(f"Invalid operation: {message}")


class ConfigurationError(AgentMemError):
    """``MemoryConfig`` holds an unusable value."""

    pass


# ========== Storage ==========


class StorageError(AgentMemError):
    """A persistence backend failed."""

    pass


class DatabaseError(StorageError):
    """A SQLite statement or transaction failed."""

    pass


class DatabaseConnectionError(DatabaseError):
    """The database file could not be opened."""

    pass


class MigrationError(DatabaseError):
    """A schema migration could not be applied."""

    pass


class VectorStoreError(StorageError):
    """The ChromaDB index could not be opened, read or written."""

    pass


# ========== Embeddings ==========


class EmbeddingError(AgentMemError):
    """The embedding backend failed."""

    pass


class EmbeddingConnectionError(EmbeddingError):
    """The embedding server stayed unreachable through every retry."""

    pass


class EmbeddingTimeoutError(EmbeddingError):
    """An embedding request exceeded its timeout."""

    pass


class EmbeddingResponseError(EmbeddingError):
    """The embedding server answered without a usable vector."""

    pass


class ModelNotFoundError(EmbeddingError):
    """The embedding model is not installed on the server."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"Embedding model not available: {model_name}")


# ========== Consolidation ==========


class ConsolidationError(AgentMemError):
    """A consolidation sweep failed for a reason other than storage."""

    pass
