"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks the OpenAI chat completions API with
streaming (llama.cpp server, vLLM, LocalAI, Ollama's /v1, OpenRouter...).

Canonical contents are translated on the way out:
  role "model"                -> "assistant"
  inlineData parts            -> image_url content items (data: URLs)
  functionCall parts          -> assistant tool_calls
  functionResponse parts      -> "tool" role messages
and streamed tool_call deltas are re-assembled by index on the way back.
A finish_reason of content_filter is reported as a safety block.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from chatgate.backends.base import GenerationBackend, ModelChunk, parse_sse_data
from chatgate.models import ToolCall

logger = logging.getLogger(__name__)


def _tool_call_id(fc: dict, turn: int, idx: int) -> str:
    return str(fc.get("id") or f"call_{turn}_{idx}")


def contents_to_messages(contents: list[dict]) -> list[dict]:
    """Translate canonical contents into OpenAI chat messages."""
    messages: list[dict] = []
    for turn_idx, turn in enumerate(contents):
        role = "assistant" if turn.get("role") == "model" else "user"
        texts: list[str] = []
        images: list[dict] = []
        calls: list[dict] = []
        for idx, part in enumerate(turn.get("parts") or []):
            if "text" in part:
                texts.append(str(part["text"]))
            elif "inlineData" in part:
                inline = part["inlineData"]
                images.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{inline['mimeType']};base64,{inline['data']}"},
                })
            elif "functionCall" in part:
                fc = part["functionCall"]
                calls.append({
                    "id": _tool_call_id(fc, turn_idx, idx),
                    "type": "function",
                    "function": {"name": fc.get("name", ""), "arguments": json.dumps(fc.get("args") or {})},
                })
            elif "functionResponse" in part:
                fr = part["functionResponse"]
                response = fr.get("response") or {}
                messages.append({
                    "role": "tool",
                    "tool_call_id": str(fr.get("id") or ""),
                    "content": str(response.get("content", "")),
                })

        if calls:
            messages.append({"role": "assistant", "content": "\n".join(texts) or None, "tool_calls": calls})
        elif images:
            content = [{"type": "text", "text": "\n".join(texts)}] if texts else []
            messages.append({"role": role, "content": content + images})
        elif texts:
            messages.append({"role": role, "content": "\n".join(texts)})
    return messages


def declarations_to_tools(declarations: list[dict] | None) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": d["name"],
                "description": d.get("description", ""),
                "parameters": d.get("parameters") or {"type": "object", "properties": {}},
            },
        }
        for d in declarations or []
    ]


class _ToolCallAssembler:
    """Accumulates streamed tool_call deltas keyed by index."""

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def feed(self, deltas: list[dict]) -> None:
        for d in deltas:
            slot = self._calls.setdefault(int(d.get("index", 0)), {"id": "", "name": "", "arguments": ""})
            if d.get("id"):
                slot["id"] = d["id"]
            fn = d.get("function") or {}
            if fn.get("name"):
                slot["name"] += fn["name"]
            if fn.get("arguments"):
                slot["arguments"] += fn["arguments"]

    def drain(self) -> list[ToolCall]:
        calls = []
        for _, slot in sorted(self._calls.items()):
            try:
                args = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning("Tool call %s had unparseable arguments", slot["name"])
                args = {}
            calls.append(ToolCall(name=slot["name"], arguments=args if isinstance(args, dict) else {}, id=slot["id"]))
        self._calls.clear()
        return calls


class OpenAICompatibleBackend(GenerationBackend):
    """
    Generic backend for OpenAI-compatible endpoints.

    Works with any service that implements streaming /v1/chat/completions.
    """

    def __init__(
        self,
        name: str = "openai_compat",
        url: str = "http://localhost:11434",
        model: str = "",
        timeout: float = 60,
        api_key: str = "",
    ):
        super().__init__(name, url, model, timeout, api_key)

    async def stream(self, contents: list[dict], tools: list[dict] | None = None) -> AsyncIterator[ModelChunk]:
        """Forward a streaming request, yielding normalised chunks."""
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body: dict = {
            "model": self.model,
            "messages": contents_to_messages(contents),
            "stream": True,
        }
        if tools:
            body["tools"] = declarations_to_tools(tools)

        assembler = _ToolCallAssembler()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=headers,
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        data = parse_sse_data(line)
                        if data is None:
                            continue
                        choices = data.get("choices") or []
                        if not choices:
                            continue
                        choice = choices[0]
                        delta = choice.get("delta") or {}
                        finish = choice.get("finish_reason") or ""
                        if finish == "content_filter":
                            yield ModelChunk(block_reason="content_filter", finish_reason=finish)
                            return
                        if delta.get("tool_calls"):
                            assembler.feed(delta["tool_calls"])
                        text = delta.get("content") or ""
                        calls = assembler.drain() if finish else []
                        if text or calls or finish:
                            yield ModelChunk(text=text, tool_calls=calls, finish_reason=finish)
        except httpx.TimeoutException:
            logger.warning("OpenAI-compatible backend '%s' stream timed out", self.name)
            raise
        except httpx.HTTPError as e:
            logger.warning("OpenAI-compatible backend '%s' stream failed: %s", self.name, e)
            raise
