"""
FastAPI application — the chatgate entry point.

One WebSocket (/ws) carries the chat protocol. Frames are JSON objects
of the form {"event": <name>, "data": {...}} in both directions.

    inbound   send-message, delete-chat, reset-vector-db
    outbound  typing, message-chunk, rate-limit-info, rate-limit-exceeded,
              attachment-warning, vector-db-reset, error

Each send-message runs as its own task so a slow reply never blocks the
reader. A small HTTP API sits alongside for memory search, rate-limit
status and stats.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from chatgate import __version__
from chatgate.attachments import AttachmentValidator
from chatgate.backends import make_generation_backend
from chatgate.config import get_config
from chatgate.context import ContextSanitizer
from chatgate.documents import extract_text
from chatgate.gateway import ModelGateway
from chatgate.models import SendMessage
from chatgate.pipeline import MessagePipeline
from chatgate.prompts import PromptCatalog
from chatgate.rate_limiter import RateLimiter
from chatgate.storage.backends import make_vector_backend
from chatgate.storage.embeddings import make_embedding_service
from chatgate.storage.vector_store import VectorMemory
from chatgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals — initialized at startup
# ---------------------------------------------------------------------------
rate_limiter: RateLimiter | None = None
vector_memory: VectorMemory | None = None
tool_registry: ToolRegistry | None = None
pipeline: MessagePipeline | None = None
active_connections: int = 0


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging") or {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_pipeline(cfg: dict) -> tuple[MessagePipeline, RateLimiter, VectorMemory, ToolRegistry]:
    """Wire every component from config."""
    memory = VectorMemory(embeddings=make_embedding_service(cfg), backend=make_vector_backend(cfg))

    registry = ToolRegistry(cfg, vector_memory=memory)
    catalog = PromptCatalog.from_config(cfg)
    validator = AttachmentValidator.from_config(cfg, extractor=extract_text)
    gateway = ModelGateway.from_config(
        cfg,
        backend=make_generation_backend(cfg),
        handlers=registry.handlers,
        declarations=catalog.tool_declarations(registry.list_tools()),
    )
    limiter = RateLimiter.from_config(cfg)

    pipe = MessagePipeline(
        rate_limiter=limiter,
        sanitizer=ContextSanitizer.from_config(cfg, validator, catalog),
        validator=validator,
        gateway=gateway,
        memory=memory,
    )
    return pipe, limiter, memory, registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global pipeline, rate_limiter, vector_memory, tool_registry

    cfg = get_config()
    _setup_logging(cfg)

    pipeline, rate_limiter, vector_memory, tool_registry = build_pipeline(cfg)

    interval = float((cfg.get("rate_limit") or {}).get("cleanup_interval_seconds", 7200))
    sweeper = asyncio.create_task(rate_limiter.sweep_forever(interval))

    server = cfg.get("server") or {}
    backend = cfg.get("backend") or {}
    logger.info(
        "chatgate %s started — listening on %s:%s, model %s via %s",
        __version__,
        server.get("host", "0.0.0.0"),
        server.get("port", 8080),
        backend.get("model", "?"),
        backend.get("provider", "gemini"),
    )
    logger.info("Vector backend: %s", (cfg.get("storage") or {}).get("vector_backend", "chromadb"))
    logger.info("Tools: %s", tool_registry.list_tools())

    yield

    sweeper.cancel()
    if pipeline.pending_tasks:
        logger.info("Waiting for %d indexing task(s)", pipeline.pending_tasks)
    await pipeline.drain()
    logger.info("chatgate shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatgate",
    description="Real-time chat gateway with per-user memory.",
    version=__version__,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

class WebSocketSink:
    """EventSink over one WebSocket. Sends are serialized with a lock."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.closed = False
        self._lock = asyncio.Lock()

    async def emit(self, event: str, payload: dict) -> None:
        if self.closed or self.websocket.client_state != WebSocketState.CONNECTED:
            self.closed = True
            return
        async with self._lock:
            try:
                await self.websocket.send_json({"event": event, "data": payload})
            except Exception:
                self.closed = True
                raise


async def _delete_chat(sink: WebSocketSink, data: dict) -> None:
    user_id = str(data.get("userId") or "")
    conversation_id = str(data.get("conversationId") or "")
    try:
        await vector_memory.delete_conversation(user_id, conversation_id)
    except ValueError as e:
        await sink.emit("error", {"message": str(e)})
    except Exception:
        logger.exception("delete-chat failed for %s", conversation_id)
        await sink.emit("error", {"message": "Could not delete this chat's memory."})


async def _reset_vector_db(sink: WebSocketSink, data: dict) -> None:
    user_id = str(data.get("userId") or "")
    try:
        deleted = await vector_memory.delete_user(user_id)
    except ValueError as e:
        await sink.emit("vector-db-reset", {"success": False, "error": str(e)})
        return
    except Exception:
        logger.exception("reset-vector-db failed for %s", user_id)
        await sink.emit("vector-db-reset", {"success": False, "error": "Failed to reset memory."})
        return
    await sink.emit("vector-db-reset", {"success": True, "deleted": deleted})


@app.websocket("/ws")
async def chat_ws(websocket: WebSocket):
    global active_connections
    await websocket.accept()
    active_connections += 1
    sink = WebSocketSink(websocket)
    tasks: set[asyncio.Task] = set()

    def _spawn(coro):
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await sink.emit("error", {"message": "Malformed frame"})
                continue
            if not isinstance(frame, dict):
                await sink.emit("error", {"message": "Malformed frame"})
                continue

            event = frame.get("event")
            data = frame.get("data") if isinstance(frame.get("data"), dict) else {}

            if event == "send-message":
                _spawn(pipeline.process_message(sink, SendMessage.from_payload(data)))
            elif event == "delete-chat":
                _spawn(_delete_chat(sink, data))
            elif event == "reset-vector-db":
                _spawn(_reset_vector_db(sink, data))
            else:
                logger.debug("Ignoring unknown event %r", event)
                await sink.emit("error", {"message": f"Unknown event: {event}"})
    except WebSocketDisconnect:
        logger.debug("Client disconnected (%d task(s) still running)", len(tasks))
    finally:
        sink.closed = True
        active_connections -= 1


# ---------------------------------------------------------------------------
# API v1 endpoints
# ---------------------------------------------------------------------------

@app.get("/api/v1/search")
async def api_search(user_id: str, q: str, n: int = 5, conversation_id: str | None = None):
    """Semantic search over one user's stored messages."""
    if vector_memory is None:
        return JSONResponse({"error": "Vector memory not initialized"}, status_code=503)
    hits = await vector_memory.search(user_id, q, top_k=n, conversation_id=conversation_id)
    return JSONResponse({"query": q, "results": [h.to_dict() for h in hits], "count": len(hits)})


@app.get("/api/v1/rate-limit/{user_id}")
async def api_rate_limit(user_id: str):
    """Current quota for a user. Does not consume a token."""
    if rate_limiter is None:
        return JSONResponse({"error": "Rate limiter not initialized"}, status_code=503)
    return JSONResponse(rate_limiter.get_status(user_id))


@app.get("/api/v1/stats")
async def api_stats():
    return JSONResponse({
        "rate_limit": rate_limiter.get_stats() if rate_limiter is not None else {},
        "vector": vector_memory.get_stats() if vector_memory is not None else {},
        "tools": tool_registry.list_tools() if tool_registry is not None else [],
        "connections": active_connections,
        "pending_indexing": pipeline.pending_tasks if pipeline is not None else 0,
    })


@app.get("/api/v1/health")
async def health():
    return JSONResponse({"status": "ok", "version": __version__})
