"""
Gemini backend — REST streamGenerateContent with server-sent events.

Contents are already in Gemini's shape, so they go over the wire as-is.
Safety signals are surfaced as ModelChunk.block_reason: a prompt-level
promptFeedback.blockReason, or a candidate finishReason of SAFETY (or
one of the other moderation reasons).
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from chatgate.backends.base import GenerationBackend, ModelChunk, parse_sse_data
from chatgate.models import ToolCall

logger = logging.getLogger(__name__)

BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


def parse_gemini_event(data: dict) -> ModelChunk:
    """Normalise one streamGenerateContent response object."""
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        return ModelChunk(block_reason=str(feedback["blockReason"]))

    candidates = data.get("candidates") or []
    if not candidates:
        return ModelChunk()
    candidate = candidates[0] or {}
    finish = str(candidate.get("finishReason") or "")
    if finish in BLOCKING_FINISH_REASONS:
        return ModelChunk(block_reason=finish, finish_reason=finish)

    texts: list[str] = []
    calls: list[ToolCall] = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        if "text" in part and isinstance(part["text"], str):
            texts.append(part["text"])
        elif "functionCall" in part:
            fc = part["functionCall"] or {}
            args = fc.get("args") or {}
            calls.append(ToolCall(
                name=str(fc.get("name", "")),
                arguments=args if isinstance(args, dict) else {},
                id=str(fc.get("id", "")),
            ))
    return ModelChunk(text="".join(texts), tool_calls=calls, finish_reason=finish)


class GeminiBackend(GenerationBackend):
    """Google Gemini via the public REST API."""

    def __init__(
        self,
        name: str = "gemini",
        url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.0-flash",
        timeout: float = 60,
        api_key: str = "",
    ):
        super().__init__(name, url, model, timeout, api_key)

    def _body(self, contents: list[dict], tools: list[dict] | None) -> dict:
        body: dict = {"contents": contents}
        if tools:
            body["tools"] = [{"functionDeclarations": tools}]
        return body

    async def stream(self, contents: list[dict], tools: list[dict] | None = None) -> AsyncIterator[ModelChunk]:
        """POST streamGenerateContent?alt=sse and yield a chunk per event."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1beta/models/{self.model}:streamGenerateContent",
                    params={"alt": "sse", "key": self.api_key},
                    json=self._body(contents, tools),
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        data = parse_sse_data(line)
                        if data is None:
                            continue
                        yield parse_gemini_event(data)
        except httpx.TimeoutException:
            logger.warning("Gemini backend '%s' stream timed out", self.name)
            raise
        except httpx.HTTPStatusError as e:
            logger.warning("Gemini backend '%s' returned HTTP %s", self.name, e.response.status_code)
            raise
