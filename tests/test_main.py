"""
Tests for the FastAPI app: the /ws chat protocol and the v1 HTTP endpoints.

The lifespan runs for real against an in-memory pipeline (scripted model,
bag-of-words embedder); build_pipeline is patched to hand it over.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from chatgate import config as cfg_mod
from chatgate.tools.registry import ToolRegistry


CFG = {
    "server": {"host": "127.0.0.1", "port": 8080},
    "backend": {"provider": "gemini", "model": "gemini-test"},
    "storage": {"vector_backend": "memory"},
    "rate_limit": {"cleanup_interval_seconds": 3600},
    "tools": {
        "search_web": {"enabled": False},
        "get_stock_price": {"enabled": False},
        "get_weather": {"enabled": False},
        "get_time": {"enabled": True},
        "search_chat_history": {"enabled": False},
    },
    "logging": {"level": "WARNING"},
}


@pytest.fixture
def app_env(make_pipeline):
    """
    Factory fixture: app_env(**make_pipeline_kwargs) starts the app and
    returns (client, pipeline, backend, memory).
    """
    import chatgate.main as main

    orig_config = cfg_mod._config
    cfg_mod._config = CFG
    started = []

    def _start(**kw):
        pipeline, backend, memory = make_pipeline(**kw)
        registry = ToolRegistry(CFG, vector_memory=memory)
        wired = (pipeline, pipeline.rate_limiter, memory, registry)
        patcher = patch.object(main, "build_pipeline", return_value=wired)
        patcher.start()
        client = TestClient(main.app, raise_server_exceptions=False)
        client.__enter__()
        started.append((client, patcher))
        return client, pipeline, backend, memory

    yield _start

    for client, patcher in started:
        client.__exit__(None, None, None)
        patcher.stop()
    cfg_mod._config = orig_config


def _until_idle(ws) -> list[dict]:
    """Read frames until typing goes off."""
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] == "typing" and frame["data"]["isTyping"] is False:
            return frames


def _send(ws, message="Tell me about pizza", user_id="u1", conversation_id="c1", **extra):
    ws.send_json({"event": "send-message", "data": {
        "conversationId": conversation_id, "message": message, "userId": user_id, **extra,
    }})


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

class TestChatSocket:
    def test_send_message_streams_reply(self, app_env):
        client, _, backend, _ = app_env()
        with client.websocket_connect("/ws") as ws:
            _send(ws)
            frames = _until_idle(ws)

        events = [f["event"] for f in frames]
        assert events[0] == "typing"
        assert events[1] == "rate-limit-info"
        chunks = [f["data"] for f in frames if f["event"] == "message-chunk"]
        assert "".join(c["text"] for c in chunks if not c["isComplete"]) == "Hello there"
        assert chunks[-1]["isComplete"] is True
        assert chunks[-1]["status"] == "complete"
        assert backend.requests == 1

    def test_camel_case_attachments_accepted(self, app_env):
        client, _, _, _ = app_env()
        with client.websocket_connect("/ws") as ws:
            _send(ws, attachments=[{"url": "aGVsbG8=", "mimeType": "text/plain", "fileName": "a.txt"}])
            frames = _until_idle(ws)
        assert not [f for f in frames if f["event"] == "attachment-warning"]

    def test_rate_limit_over_socket(self, app_env):
        client, _, backend, _ = app_env(per_minute=1)
        with client.websocket_connect("/ws") as ws:
            _send(ws)
            _until_idle(ws)
            _send(ws)
            frames = _until_idle(ws)
        exceeded = [f["data"] for f in frames if f["event"] == "rate-limit-exceeded"]
        assert exceeded and exceeded[0]["limitType"] == "minute"
        assert backend.requests == 1

    def test_malformed_frames(self, app_env):
        client, _, _, _ = app_env()
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed frame"}}
            ws.send_text("[1, 2]")
            assert ws.receive_json()["event"] == "error"
            ws.send_json({"event": "launch", "data": {}})
            assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown event: launch"}}

    def test_reset_vector_db_scoped_to_user(self, app_env):
        client, _, _, memory = app_env()
        asyncio.run(memory.index_exchange(
            "u1", "c1", {"role": "user", "content": "pizza"}, {"role": "assistant", "content": "hello"},
        ))
        asyncio.run(memory.index("u2", "c9", {"role": "user", "content": "cat"}))
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "reset-vector-db", "data": {"userId": "u1"}})
            frame = ws.receive_json()
        assert frame == {"event": "vector-db-reset", "data": {"success": True, "deleted": 2}}
        assert memory.get_stats()["total_embeddings"] == 1

    def test_reset_vector_db_without_user(self, app_env):
        client, _, _, _ = app_env()
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "reset-vector-db", "data": {}})
            frame = ws.receive_json()
        assert frame["event"] == "vector-db-reset"
        assert frame["data"]["success"] is False

    def test_delete_chat_requires_ids(self, app_env):
        client, _, _, _ = app_env()
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "delete-chat", "data": {"userId": "u1"}})
            frame = ws.receive_json()
        assert frame["event"] == "error"


class TestWebSocketSink:
    @pytest.mark.asyncio
    async def test_failed_send_marks_sink_closed(self):
        from chatgate.main import WebSocketSink

        ws = MagicMock()
        ws.client_state = WebSocketState.CONNECTED
        ws.send_json = AsyncMock(side_effect=RuntimeError("socket half-closed"))
        sink = WebSocketSink(ws)

        with pytest.raises(RuntimeError):
            await sink.emit("message-chunk", {"text": "hi"})
        assert sink.closed is True

        await sink.emit("message-chunk", {"text": "again"})
        assert ws.send_json.await_count == 1


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestHttpApi:
    def test_health(self, app_env):
        client, _, _, _ = app_env()
        r = client.get("/api/v1/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_search_only_returns_own_messages(self, app_env):
        client, _, _, memory = app_env()
        asyncio.run(memory.index("u1", "c1", {"role": "user", "content": "I love pizza"}, "Food"))
        asyncio.run(memory.index("u2", "c2", {"role": "user", "content": "pizza for me too"}))
        r = client.get("/api/v1/search", params={"user_id": "u1", "q": "pizza"})
        data = r.json()
        assert data["count"] == 1
        assert data["results"][0]["content"] == "I love pizza"
        assert data["results"][0]["conversation_title"] == "Food"

    def test_rate_limit_status_does_not_consume(self, app_env):
        client, pipeline, _, _ = app_env(per_minute=5)
        for _ in range(3):
            r = client.get("/api/v1/rate-limit/u1")
        assert r.status_code == 200
        assert r.json()["remaining"]["minute"] == 5
        assert len(pipeline.rate_limiter) == 0

    def test_stats(self, app_env):
        client, _, _, _ = app_env()
        data = client.get("/api/v1/stats").json()
        assert data["tools"] == ["get_time"]
        assert data["vector"]["total_embeddings"] == 0
        assert data["pending_indexing"] == 0
        assert data["rate_limit"]["limits"] == {"minute": 60, "hour": 500}
