"""Vector index of memory entries, persisted with ChromaDB.

One embedding is kept per memory entry ID. Retrieval reads them back to
score candidates by cosine similarity.
"""

import logging
from pathlib import Path
from typing import Any

import chromadb
from chromadb import Collection

from agentmem.core.exceptions import VectorStoreError

logger = logging.getLogger(__name__)

COLLECTION_NAME = "memory_entries"


class ChromaStorage:
    """Entry embeddings in a cosine-space ChromaDB collection.

    Vectors arrive precomputed (see ``EmbeddingIndexer``); this class only
    stores, re-keys and drops them.

    Attributes:
        persist_path: Directory ChromaDB writes to.
        client: ``PersistentClient`` once initialized.
        collection: The ``memory_entries`` collection once initialized.
    """

    def __init__(self, persist_path: str | Path):
        self.persist_path = Path(persist_path)
        self.client: Any = None
        self.collection: Collection | None = None

    async def initialize(self) -> None:
        """Open the persistent client and get or create the collection.

        Raises:
            VectorStoreError: If ChromaDB cannot open the directory.
        """
        try:
            self.persist_path.mkdir(parents=True, exist_ok=True)

            self.client = chromadb.PersistentClient(path=str(self.persist_path))
            self.collection = self.client.get_or_create_collection(
                name=COLLECTION_NAME,
                metadata={
                    "description": "agentmem entry embeddings",
                    "hnsw:space": "cosine",
                },
            )

            logger.info(
                f"Vector index at {self.persist_path} holds "
                f"{self.collection.count()} embeddings"
            )

        except Exception as e:
            raise VectorStoreError(f"Cannot open vector index at {self.persist_path}: {e}") from e

    def _require_collection(self) -> Collection:
        if self.collection is None:
            raise VectorStoreError("Vector index is not open; call initialize() first")
        return self.collection

    async def upsert_embedding(
        self,
        memory_id: str,
        embedding: list[float],
        document: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Store or replace the embedding of an entry.

        Args:
            memory_id: Entry ID.
            embedding: Embedding vector.
            document: Text the embedding was computed from.
            metadata: Optional scalar metadata (tier, user_id, ...).

        Raises:
            VectorStoreError: If the write fails.
        """
        collection = self._require_collection()
        try:
            collection.upsert(
                ids=[memory_id],
                embeddings=[embedding],
                documents=[document],
                metadatas=[metadata] if metadata else None,
            )
            logger.debug(f"Upserted embedding for {memory_id}")
        except Exception as e:
            raise VectorStoreError(f"Failed to upsert embedding {memory_id}: {e}") from e

    async def get_embeddings(self, memory_ids: list[str]) -> dict[str, list[float]]:
        """Fetch stored embeddings.

        Args:
            memory_ids: Entry IDs to look up.

        Returns:
            Mapping of entry ID to vector. IDs without an embedding are absent.

        Raises:
            VectorStoreError: If the lookup fails.
        """
        if not memory_ids:
            return {}

        collection = self._require_collection()
        try:
            results = collection.get(ids=memory_ids, include=["embeddings"])
        except Exception as e:
            raise VectorStoreError(f"Failed to fetch embeddings: {e}") from e

        ids = results.get("ids") or []
        embeddings = results.get("embeddings")
        if embeddings is None:
            return {}
        return {
            memory_id: [float(value) for value in embedding]
            for memory_id, embedding in zip(ids, embeddings, strict=False)
            if embedding is not None
        }

    async def delete_embeddings(self, memory_ids: list[str]) -> None:
        """Remove embeddings. Unknown IDs are ignored.

        Raises:
            VectorStoreError: If the delete fails.
        """
        if not memory_ids:
            return

        collection = self._require_collection()
        try:
            collection.delete(ids=memory_ids)
            logger.debug(f"Deleted {len(memory_ids)} embeddings")
        except Exception as e:
            raise VectorStoreError(f"Failed to delete embeddings: {e}") from e

    async def move_embedding(
        self, source_id: str, target_id: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Re-key an embedding after its entry was promoted.

        Args:
            source_id: ID of the replaced entry.
            target_id: ID of the entry that replaced it.
            metadata: Optional new metadata for the target.

        Returns:
            True if an embedding existed and was moved.

        Raises:
            VectorStoreError: If the move fails.
        """
        collection = self._require_collection()
        try:
            results = collection.get(ids=[source_id], include=["embeddings", "documents"])
        except Exception as e:
            raise VectorStoreError(f"Failed to read embedding {source_id}: {e}") from e

        embeddings = results.get("embeddings")
        if not results.get("ids") or embeddings is None or len(embeddings) == 0:
            return False

        documents = results.get("documents") or [""]
        await self.upsert_embedding(
            target_id,
            [float(value) for value in embeddings[0]],
            documents[0] or "",
            metadata,
        )
        await self.delete_embeddings([source_id])
        logger.debug(f"Moved embedding {source_id} -> {target_id}")
        return True

    async def count(self) -> int:
        """Number of stored embeddings."""
        return self._require_collection().count()

    async def reset(self) -> None:
        """Delete every stored embedding by recreating the collection.

        Raises:
            VectorStoreError: If the index is not open or cannot be rebuilt.
        """
        if self.client is None:
            raise VectorStoreError("Vector index is not open; call initialize() first")

        try:
            self.client.delete_collection(COLLECTION_NAME)
            await self.initialize()
            logger.warning(f"Dropped all embeddings in {self.persist_path}")
        except Exception as e:
            raise VectorStoreError(f"Could not reset vector index: {e}") from e
