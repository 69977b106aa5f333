"""
ChromaBackend — persistent VectorBackend on ChromaDB.

One collection in cosine space holds every user's records; ownership lives
in each record's metadata and is enforced with ``where`` filters.

chromadb.PersistentClient is not safe to share across threads and
VectorMemory reaches the backend through asyncio.to_thread, so every
collection call goes through one threading.Lock.
"""

import logging
import threading
from pathlib import Path

import chromadb

from chatgate.models import EmbeddingRecord

from .base import StoredMatch, VectorBackend

logger = logging.getLogger(__name__)


class ChromaBackend(VectorBackend):

    def __init__(self, path: str, collection: str = "chat_messages"):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self.collection_name = collection
        self._lock = threading.Lock()
        self._client = chromadb.PersistentClient(path=str(self.path))
        self._collection = self._get_collection()
        logger.info("ChromaDB collection %r at %s (%d records)", collection, self.path, self.count())

    def _get_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def add(self, record: EmbeddingRecord) -> None:
        with self._lock:
            self._collection.upsert(
                ids=[record.message_id],
                embeddings=[list(record.vector)],
                documents=[record.content],
                metadatas=[record.metadata()],
            )

    def nearest(self, vector: list[float], top_k: int, where: dict | None = None) -> list[StoredMatch]:
        if top_k <= 0:
            return []
        with self._lock:
            # n_results may not exceed what the filter matches
            available = len(self._collection.get(where=where, include=[])["ids"]) if where else self._collection.count()
            if available == 0:
                return []
            res = self._collection.query(
                query_embeddings=[vector],
                n_results=min(top_k, available),
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        return [
            StoredMatch(rid, doc or "", meta or {}, float(dist))
            for rid, doc, meta, dist in zip(
                res["ids"][0], res["documents"][0], res["metadatas"][0], res["distances"][0]
            )
        ]

    def delete(self, where: dict) -> int:
        if not where:
            raise ValueError("refusing to delete without a filter")
        with self._lock:
            ids = self._collection.get(where=where, include=[])["ids"]
            if ids:
                self._collection.delete(ids=ids)
        return len(ids)

    def count(self) -> int:
        with self._lock:
            return self._collection.count()

