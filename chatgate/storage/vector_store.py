"""
VectorMemory — per-user semantic memory over conversation turns.

Owns embedding (via EmbeddingService) and tenant scoping; delegates raw
vector storage to a pluggable VectorBackend (storage.vector_backend in
config.yaml, default "chromadb").

Every record carries user_id + conversation_id in its metadata. Searches
and deletes always filter on user_id at the backend, and search hits are
re-checked against the requesting user before they are returned, so one
user's records never leak into another user's results.

Indexing is best-effort. index_exchange() embeds the user turn and the
assistant turn concurrently; a failure on one is logged and does not
affect the other, and nothing is raised to the caller.

Backends are synchronous; their calls run in a worker thread so the
event loop never blocks on disk or HNSW work.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from chatgate.errors import IndexingFailure
from chatgate.models import EmbeddingRecord, SearchHit
from chatgate.storage.backends import VectorBackend, build_where
from chatgate.storage.embeddings import EmbeddingService

logger = logging.getLogger(__name__)


def _valid_id(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


class VectorMemory:
    """Embedding + tenant-scoped search over a VectorBackend."""

    def __init__(self, embeddings: EmbeddingService, backend: VectorBackend):
        self.embeddings = embeddings
        self._backend = backend
        logger.info("VectorMemory initialised (backend=%s)", type(backend).__name__)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index(
        self,
        user_id: str,
        conversation_id: str,
        message: dict,
        conversation_title: str = "",
    ) -> EmbeddingRecord | None:
        """
        Embed and store one message ({"role", "content", optional "id",
        "timestamp"}). Returns the stored record, or None for empty content.

        Raises IndexingFailure when embedding or storage fails.
        """
        if not _valid_id(user_id) or not _valid_id(conversation_id):
            raise IndexingFailure(str(message.get("id", "?")), ValueError("user_id and conversation_id are required"))
        content = message.get("content") or ""
        if not isinstance(content, str) or not content.strip():
            return None

        kwargs = {}
        if message.get("id"):
            kwargs["message_id"] = str(message["id"])
        if isinstance(message.get("timestamp"), int):
            kwargs["timestamp"] = message["timestamp"]
        record = EmbeddingRecord(
            user_id=user_id,
            conversation_id=conversation_id,
            content=content,
            role=message.get("role", "user"),
            conversation_title=conversation_title or "",
            **kwargs,
        )
        try:
            vector = await self.embeddings.embed(content)
            record = replace(record, vector=tuple(vector))
            await asyncio.to_thread(self._backend.add, record)
        except Exception as e:
            raise IndexingFailure(record.message_id, e) from e
        logger.debug("Indexed %s message %s for conversation %s", record.role, record.message_id, conversation_id)
        return record

    async def index_exchange(
        self,
        user_id: str,
        conversation_id: str,
        user_message: dict,
        assistant_message: dict,
        conversation_title: str = "",
    ) -> list[EmbeddingRecord]:
        """Index both sides of an exchange in parallel. Never raises."""
        results = await asyncio.gather(
            self.index(user_id, conversation_id, user_message, conversation_title),
            self.index(user_id, conversation_id, assistant_message, conversation_title),
            return_exceptions=True,
        )
        stored = []
        for label, result in zip(("user", "assistant"), results):
            if isinstance(result, BaseException):
                logger.error("Failed to index %s turn for conversation %s: %s", label, conversation_id, result)
            elif result is not None:
                stored.append(result)
        return stored

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        user_id: str,
        query: str,
        top_k: int = 5,
        conversation_id: str | None = None,
    ) -> list[SearchHit]:
        """Nearest records for one user, best first."""
        if not _valid_id(user_id):
            logger.warning("search called without a user id, returning nothing")
            return []
        if not query or not query.strip() or top_k <= 0:
            return []

        vector = await self.embeddings.embed(query)
        where = build_where(user_id=user_id, conversation_id=conversation_id)
        matches = await asyncio.to_thread(self._backend.nearest, vector, top_k, where)

        hits: list[SearchHit] = []
        for m in matches:
            meta = m.metadata
            if meta.get("user_id") != user_id:
                logger.error("Backend returned a record owned by another user, discarding %s", m.record_id)
                continue
            if conversation_id is not None and meta.get("conversation_id") != conversation_id:
                continue
            hits.append(SearchHit(
                message_id=m.record_id,
                user_id=meta["user_id"],
                conversation_id=meta.get("conversation_id", ""),
                content=m.document,
                role=meta.get("role", ""),
                conversation_title=meta.get("conversation_title", ""),
                timestamp=int(meta.get("timestamp") or 0),
                distance=m.distance,
            ))
        hits.sort(key=lambda h: h.distance)
        return hits[:top_k]

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_conversation(self, user_id: str, conversation_id: str) -> int:
        if not _valid_id(user_id) or not _valid_id(conversation_id):
            raise ValueError("user_id and conversation_id are required")
        n = await asyncio.to_thread(
            self._backend.delete, build_where(user_id=user_id, conversation_id=conversation_id)
        )
        logger.info("Deleted %d vectors for conversation %s", n, conversation_id)
        return n

    async def delete_user(self, user_id: str) -> int:
        if not _valid_id(user_id):
            raise ValueError("user_id is required")
        n = await asyncio.to_thread(self._backend.delete, build_where(user_id=user_id))
        logger.info("Deleted %d vectors for user %s", n, user_id)
        return n

    def get_stats(self) -> dict:
        return {
            "total_embeddings": self._backend.count(),
            "backend": type(self._backend).__name__,
            "cache": self.embeddings.cache.stats(),
        }
