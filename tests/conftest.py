"""
Shared fixtures for the pipeline and WebSocket tests: a full pipeline
wired with real components, except the model (scripted) and the embedder
(bag-of-words, no network).
"""

import pytest

from chatgate.attachments import AttachmentValidator
from chatgate.backends.base import GenerationBackend, ModelChunk
from chatgate.context import ContextSanitizer
from chatgate.gateway import ModelGateway
from chatgate.pipeline import MessagePipeline
from chatgate.prompts import PromptCatalog
from chatgate.rate_limiter import RateLimiter
from chatgate.storage.backends.memory import MemoryBackend
from chatgate.storage.embeddings import EmbeddingService
from chatgate.storage.vector_store import VectorMemory


class StubBackend(GenerationBackend):
    """Replies with a fixed list of chunks every time."""

    def __init__(self, chunks=None):
        super().__init__("stub", "http://stub", "stub-model")
        self.chunks = chunks if chunks is not None else [ModelChunk(text="Hello "), ModelChunk(text="there")]
        self.requests = 0

    async def stream(self, contents, tools=None):
        self.requests += 1
        for chunk in self.chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


class WordEmbedder:
    model = "words"
    vocab = ["pizza", "python", "cat", "dog", "animal", "favorite", "hello", "there"]

    async def embed(self, text):
        lowered = text.lower()
        return [1.0 if w in lowered else 0.0 for w in self.vocab] + [0.01]


class RecordingSink:
    """EventSink that keeps every event; optionally closes after N chunks."""

    def __init__(self, close_after_chunks: int | None = None):
        self.events: list[tuple[str, dict]] = []
        self.closed = False
        self.close_after_chunks = close_after_chunks

    async def emit(self, event, payload):
        self.events.append((event, payload))
        if event == "message-chunk" and self.close_after_chunks is not None:
            if sum(1 for e, _ in self.events if e == "message-chunk") >= self.close_after_chunks:
                self.closed = True

    def names(self) -> list[str]:
        return [e for e, _ in self.events]

    def payloads(self, name: str) -> list[dict]:
        return [p for e, p in self.events if e == name]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_pipeline(monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_PER_MINUTE", raising=False)
    monkeypatch.delenv("RATE_LIMIT_PER_HOUR", raising=False)

    def _make(chunks=None, per_minute=60, per_hour=500, handlers=None, memory_backend=None):
        backend = StubBackend(chunks)
        validator = AttachmentValidator(extractor=lambda data, mime: "extracted")
        catalog = PromptCatalog()
        memory = VectorMemory(EmbeddingService(WordEmbedder()), memory_backend or MemoryBackend())
        gateway = ModelGateway(backend, handlers=handlers or {}, declarations=[])
        pipeline = MessagePipeline(
            rate_limiter=RateLimiter(per_minute=per_minute, per_hour=per_hour),
            sanitizer=ContextSanitizer(validator, catalog),
            validator=validator,
            gateway=gateway,
            memory=memory,
        )
        return pipeline, backend, memory

    return _make
