"""
Embedding providers + the in-process embedding cache.

Two providers speak to an external embedding API over httpx:

  OllamaEmbedder  POST {url}/api/embed            (local Ollama)
  GeminiEmbedder  POST {url}/v1beta/models/{m}:embedContent

EmbeddingService wraps a provider with input truncation and an LRU cache
keyed by normalised text (lower-cased, stripped). Embeddings are assumed
idempotent for identical text, so a cache hit skips the API call. The
cache is bounded in entries and each entry expires after a TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

import httpx

from chatgate.errors import EmbeddingProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_CHARS = 10_000
DEFAULT_CACHE_SIZE = 10_000
DEFAULT_CACHE_TTL = 24 * 3600.0


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class EmbeddingCache:
    """Bounded LRU with per-entry TTL."""

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_SIZE,
        ttl_seconds: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, list[float]]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(text: str) -> str:
        return text.lower().strip()

    def get(self, text: str) -> list[float] | None:
        k = self.key(text)
        with self._lock:
            entry = self._data.get(k)
            if entry is None:
                self.misses += 1
                return None
            stored_at, vector = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._data[k]
                self.misses += 1
                return None
            self._data.move_to_end(k)
            self.hits += 1
            return vector

    def put(self, text: str, vector: list[float]) -> None:
        k = self.key(text)
        with self._lock:
            self._data[k] = (self._clock(), vector)
            self._data.move_to_end(k)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._data),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OllamaEmbedder:
    """Embeddings from Ollama's /api/embed endpoint."""

    def __init__(self, model: str, url: str, timeout: float = 30.0):
        self.model = model
        self.url = url.rstrip("/")
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        async with httpx.AsyncClient() as client:
            try:
                resp = await client.post(
                    f"{self.url}/api/embed",
                    json={"model": self.model, "input": text},
                    timeout=self.timeout,
                )
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise EmbeddingProviderError(
                        f"Embedding model '{self.model}' not found - "
                        f"run: ollama pull {self.model}"
                    ) from e
                raise
            try:
                data = resp.json()
            except ValueError as e:
                raise EmbeddingProviderError(
                    f"Embedding endpoint returned non-JSON response: {resp.text[:200]}"
                ) from e
        embeddings = data.get("embeddings")
        if not embeddings or not embeddings[0]:
            raise EmbeddingProviderError(
                f"Embedding model '{self.model}' returned an empty embeddings array"
            )
        return embeddings[0]


class GeminiEmbedder:
    """Embeddings from the Gemini embedContent REST endpoint."""

    def __init__(
        self,
        model: str = "text-embedding-004",
        url: str = "https://generativelanguage.googleapis.com",
        api_key: str = "",
        timeout: float = 30.0,
    ):
        self.model = model
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise EmbeddingProviderError("Gemini embedding API key is not configured")
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.url}/v1beta/models/{self.model}:embedContent",
                params={"key": self.api_key},
                json={
                    "model": f"models/{self.model}",
                    "content": {"parts": [{"text": text}]},
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            try:
                data = resp.json()
            except ValueError as e:
                raise EmbeddingProviderError(
                    f"Embedding endpoint returned non-JSON response: {resp.text[:200]}"
                ) from e
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise EmbeddingProviderError(f"Embedding model '{self.model}' returned no values")
        return values


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """Provider + cache + input truncation."""

    def __init__(
        self,
        embedder,
        cache: EmbeddingCache | None = None,
        max_input_chars: int = DEFAULT_MAX_INPUT_CHARS,
    ):
        self.embedder = embedder
        self.cache = cache if cache is not None else EmbeddingCache()
        self.max_input_chars = max_input_chars

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingProviderError("cannot embed empty text")
        text = text[:self.max_input_chars]
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        vector = await self.embedder.embed(text)
        self.cache.put(text, vector)
        return vector


def make_embedding_service(cfg: dict) -> EmbeddingService:
    """Build the embedding service described by the ``embedding:`` block."""
    e = cfg.get("embedding") or {}
    provider = e.get("provider", "gemini")
    if provider == "ollama":
        embedder = OllamaEmbedder(
            model=e.get("model", "nomic-embed-text"),
            url=e.get("backend_url") or "http://localhost:11434",
        )
    elif provider == "gemini":
        embedder = GeminiEmbedder(
            model=e.get("model", "text-embedding-004"),
            url=e.get("backend_url") or "https://generativelanguage.googleapis.com",
            api_key=e.get("api_key", ""),
        )
    else:
        raise ValueError(f"Unknown embedding provider: '{provider}'. Available: gemini, ollama")

    cache = EmbeddingCache(
        max_entries=int(e.get("cache_size", DEFAULT_CACHE_SIZE)),
        ttl_seconds=float(e.get("cache_ttl_hours", 24)) * 3600.0,
    )
    logger.info("Embedding provider: %s (%s)", provider, getattr(embedder, "model", "?"))
    return EmbeddingService(
        embedder,
        cache=cache,
        max_input_chars=int(e.get("max_input_chars", DEFAULT_MAX_INPUT_CHARS)),
    )
