"""
VectorBackend — where VectorMemory keeps its records.

A backend stores EmbeddingRecords and answers three questions about them:
which records are nearest to a vector, which records match a filter (for
deletion), and how many there are. It never embeds anything and never
decides who may see what; VectorMemory does both.

Filters use the ChromaDB ``where`` shape: a single {"field": value}
equality or {"$and": [{...}, {...}]}. Only equality is supported.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from chatgate.models import EmbeddingRecord


@dataclass
class StoredMatch:
    """One nearest-neighbour result. distance is cosine distance (0 = identical)."""
    record_id: str
    document: str
    metadata: dict
    distance: float


def where_clauses(where: dict | None) -> list[tuple[str, object]]:
    """Flatten a where filter into (field, value) equality pairs."""
    if not where:
        return []
    if "$and" in where:
        pairs = []
        for clause in where["$and"]:
            pairs.extend(where_clauses(clause))
        return pairs
    return [(k, v.get("$eq") if isinstance(v, dict) else v) for k, v in where.items()]


def build_where(**fields) -> dict | None:
    """Equality filter over the given non-None fields."""
    clauses = [{k: v} for k, v in fields.items() if v is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class VectorBackend(ABC):
    """Synchronous record store; VectorMemory calls it from worker threads."""

    @abstractmethod
    def add(self, record: EmbeddingRecord) -> None:
        """Store a record, replacing any earlier one with the same message_id."""

    @abstractmethod
    def nearest(self, vector: list[float], top_k: int, where: dict | None = None) -> list[StoredMatch]:
        """Up to top_k records matching ``where``, closest first."""

    @abstractmethod
    def delete(self, where: dict) -> int:
        """Delete every record matching ``where``; return how many went. Refuses an empty filter."""

    @abstractmethod
    def count(self) -> int:
        ...
