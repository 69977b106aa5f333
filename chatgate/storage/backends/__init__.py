"""
Vector storage backends for VectorMemory.
Selected by storage.vector_backend in config.yaml:

    chromadb   persistent, on disk at storage.chroma_path (default)
    memory     in-process numpy store, lost on restart
"""

from .base import VectorBackend, build_where

DEFAULT_CHROMA_PATH = "./data/chroma"

_KINDS = ("chromadb", "memory")


def make_backend(backend_type: str, **kwargs) -> VectorBackend:
    """
    Build a backend by name. Imports are deferred so a deployment running
    the in-memory store never loads chromadb.
    """
    if backend_type == "chromadb":
        from .chroma import ChromaBackend
        return ChromaBackend(**kwargs)
    if backend_type == "memory":
        from .memory import MemoryBackend
        return MemoryBackend()
    raise ValueError(
        f"Unknown vector backend: '{backend_type}'. Available: {', '.join(_KINDS)}"
    )


def make_vector_backend(cfg: dict) -> VectorBackend:
    """Build the backend described by the ``storage:`` config block."""
    s = cfg.get("storage") or {}
    kind = s.get("vector_backend", "chromadb")
    if kind == "chromadb":
        return make_backend(
            kind,
            path=s.get("chroma_path", DEFAULT_CHROMA_PATH),
            collection=s.get("collection", "chat_messages"),
        )
    return make_backend(kind)


__all__ = ["VectorBackend", "build_where", "make_backend", "make_vector_backend"]
