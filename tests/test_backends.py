"""
Tests for the streaming generation backends.
Run with: pytest tests/test_backends.py

HTTP is served by httpx.MockTransport, swapped in by patching the
AsyncClient each backend constructs.
"""

import json
from unittest.mock import patch

import httpx
import pytest

from chatgate.backends import GeminiBackend, OpenAICompatibleBackend, make_generation_backend
from chatgate.backends.base import parse_sse_data
from chatgate.backends.gemini import parse_gemini_event
from chatgate.backends.openai_compat import contents_to_messages, declarations_to_tools

_RealAsyncClient = httpx.AsyncClient


def sse(*events) -> str:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events)


def mock_client(handler):
    """Side effect for a patched httpx.AsyncClient that routes to handler."""
    transport = httpx.MockTransport(handler)
    return lambda *args, **kwargs: _RealAsyncClient(transport=transport, **kwargs)


async def collect(gen):
    return [chunk async for chunk in gen]


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

def test_parse_sse_data():
    assert parse_sse_data('data: {"a": 1}') == {"a": 1}
    assert parse_sse_data("data: [DONE]") is None
    assert parse_sse_data(": keepalive") is None
    assert parse_sse_data("data: {not json") is None
    assert parse_sse_data("data: [1, 2]") is None


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def test_gemini_event_text_and_calls():
    chunk = parse_gemini_event({"candidates": [{"content": {"parts": [
        {"text": "Looking "},
        {"text": "it up"},
        {"functionCall": {"name": "get_time", "args": {"location": "Paris"}}},
    ]}}]})
    assert chunk.text == "Looking it up"
    assert chunk.tool_calls[0].name == "get_time"
    assert chunk.tool_calls[0].arguments == {"location": "Paris"}


def test_gemini_event_prompt_block():
    chunk = parse_gemini_event({"promptFeedback": {"blockReason": "SAFETY"}})
    assert chunk.block_reason == "SAFETY"


def test_gemini_event_safety_finish():
    chunk = parse_gemini_event({"candidates": [{"finishReason": "SAFETY", "content": {"parts": [{"text": "x"}]}}]})
    assert chunk.block_reason == "SAFETY"
    assert chunk.text == ""


def test_gemini_event_normal_stop_is_not_a_block():
    chunk = parse_gemini_event({"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": "done"}]}}]})
    assert chunk.block_reason == ""
    assert chunk.finish_reason == "STOP"


@pytest.mark.asyncio
async def test_gemini_stream_request_and_chunks():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        body = sse(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]},
        )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    backend = GeminiBackend(url="https://gemini.test", model="gemini-x", api_key="k")
    contents = [{"role": "user", "parts": [{"text": "hi"}]}]
    tools = [{"name": "get_time", "description": "time", "parameters": {"type": "object"}}]
    with patch("chatgate.backends.gemini.httpx.AsyncClient", side_effect=mock_client(handler)):
        chunks = await collect(backend.stream(contents, tools))

    assert "".join(c.text for c in chunks) == "Hello"
    assert "/v1beta/models/gemini-x:streamGenerateContent" in seen["url"]
    assert "alt=sse" in seen["url"]
    assert seen["body"]["contents"] == contents
    assert seen["body"]["tools"] == [{"functionDeclarations": tools}]


@pytest.mark.asyncio
async def test_gemini_stream_http_error_raises():
    def handler(request):
        return httpx.Response(500, text="boom")

    backend = GeminiBackend(url="https://gemini.test", api_key="k")
    with patch("chatgate.backends.gemini.httpx.AsyncClient", side_effect=mock_client(handler)):
        with pytest.raises(httpx.HTTPStatusError):
            await collect(backend.stream([{"role": "user", "parts": [{"text": "hi"}]}]))


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------

def test_contents_to_messages_translation():
    contents = [
        {"role": "user", "parts": [
            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
            {"text": "what is this?"},
        ]},
        {"role": "model", "parts": [
            {"functionCall": {"name": "search_web", "args": {"query": "x"}, "id": "call_1"}},
        ]},
        {"role": "user", "parts": [
            {"functionResponse": {"name": "search_web", "response": {"content": "results"}, "id": "call_1"}},
        ]},
        {"role": "model", "parts": [{"text": "It is x."}]},
    ]
    messages = contents_to_messages(contents)
    assert messages[0]["role"] == "user"
    assert messages[0]["content"][0] == {"type": "text", "text": "what is this?"}
    assert messages[0]["content"][1]["image_url"]["url"] == "data:image/png;base64,AAAA"
    assert messages[1]["tool_calls"][0]["function"] == {"name": "search_web", "arguments": '{"query": "x"}'}
    assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": "results"}
    assert messages[3] == {"role": "assistant", "content": "It is x."}


def test_declarations_to_tools():
    [tool] = declarations_to_tools([{"name": "get_time", "description": "d", "parameters": {"type": "object"}}])
    assert tool == {"type": "function", "function": {"name": "get_time", "description": "d", "parameters": {"type": "object"}}}


@pytest.mark.asyncio
async def test_openai_stream_assembles_tool_calls():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        body = sse(
            {"choices": [{"delta": {"content": "Let me check. "}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_9", "function": {"name": "get_", "arguments": '{"loc'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"name": "time", "arguments": 'ation": "Tokyo"}'}},
            ]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        ) + "data: [DONE]\n\n"
        return httpx.Response(200, text=body)

    backend = OpenAICompatibleBackend(url="http://llm.test", model="m", api_key="secret")
    with patch("chatgate.backends.openai_compat.httpx.AsyncClient", side_effect=mock_client(handler)):
        chunks = await collect(backend.stream([{"role": "user", "parts": [{"text": "time in tokyo?"}]}]))

    assert chunks[0].text == "Let me check. "
    [call] = chunks[-1].tool_calls
    assert (call.name, call.arguments, call.id) == ("get_time", {"location": "Tokyo"}, "call_9")
    assert seen["headers"]["authorization"] == "Bearer secret"
    assert seen["body"]["stream"] is True


@pytest.mark.asyncio
async def test_openai_content_filter_is_a_block():
    def handler(request):
        return httpx.Response(200, text=sse(
            {"choices": [{"delta": {"content": "partial"}}]},
            {"choices": [{"delta": {}, "finish_reason": "content_filter"}]},
        ))

    backend = OpenAICompatibleBackend(url="http://llm.test", model="m")
    with patch("chatgate.backends.openai_compat.httpx.AsyncClient", side_effect=mock_client(handler)):
        chunks = await collect(backend.stream([{"role": "user", "parts": [{"text": "x"}]}]))
    assert chunks[-1].block_reason == "content_filter"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def test_make_generation_backend():
    b = make_generation_backend({"backend": {"provider": "openai_compat", "url": "http://x/", "model": "m", "timeout": 5}})
    assert isinstance(b, OpenAICompatibleBackend)
    assert b.url == "http://x"
    assert b.timeout == 5.0
    assert isinstance(make_generation_backend({}), GeminiBackend)


def test_make_generation_backend_unknown():
    with pytest.raises(ValueError, match="Unknown generation backend"):
        make_generation_backend({"backend": {"provider": "carrier-pigeon"}})
