"""
MemoryBackend — in-process VectorBackend on numpy.

Brute-force cosine distance over every stored vector. Nothing survives a
restart; use it for tests and throwaway deployments
(storage.vector_backend: memory).
"""

import logging
import threading

import numpy as np

from chatgate.models import EmbeddingRecord

from .base import StoredMatch, VectorBackend, where_clauses

logger = logging.getLogger(__name__)


def _matches(meta: dict, where: dict | None) -> bool:
    return all(meta.get(k) == v for k, v in where_clauses(where))


class MemoryBackend(VectorBackend):
    """Dict of message_id -> (vector, document, metadata), searched with numpy."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: dict[str, tuple[np.ndarray, str, dict]] = {}

    def add(self, record: EmbeddingRecord) -> None:
        with self._lock:
            self._rows[record.message_id] = (
                np.asarray(record.vector, dtype=np.float32),
                record.content,
                record.metadata(),
            )

    def nearest(self, vector: list[float], top_k: int, where: dict | None = None) -> list[StoredMatch]:
        with self._lock:
            candidates = [
                (rid, vec, doc, meta)
                for rid, (vec, doc, meta) in self._rows.items()
                if _matches(meta, where)
            ]
        if not candidates or top_k <= 0:
            return []

        q = np.asarray(vector, dtype=np.float32)
        matrix = np.stack([c[1] for c in candidates])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        norms[norms == 0] = 1e-12
        distances = 1.0 - (matrix @ q) / norms
        order = np.argsort(distances, kind="stable")[:top_k]
        return [
            StoredMatch(candidates[i][0], candidates[i][2], dict(candidates[i][3]), float(distances[i]))
            for i in order
        ]

    def delete(self, where: dict) -> int:
        if not where:
            raise ValueError("refusing to delete without a filter")
        with self._lock:
            doomed = [rid for rid, (_, _, meta) in self._rows.items() if _matches(meta, where)]
            for rid in doomed:
                del self._rows[rid]
        return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)
