"""
ModelGateway — streams one reply from the generation backend.

stream_reply() is an async generator of StreamEvents:

    chunk   a piece of reply text, in order
    notice  a sanitized message for the user that is not part of the reply
            (a tool failed, for example)
    done    always last; carries the ReplyResult

Per invocation the gateway moves through

    Streaming -> (tool calls -> executing -> Streaming)* -> Complete
                                                          | SafetyBlocked
                                                          | TimedOut
                                                          | Failed

with these bounds:

  - one deadline covers every read from the backend, including follow-up
    streams after tool calls. Each read is awaited under
    asyncio.timeout_at(deadline), so no timer outlives the read it guards.
  - reply text is capped at max_response_chars. The chunk that crosses
    the cap is cut so the total is exactly the cap, then streaming stops.
  - at most max_tool_calls tool executions per reply, in total.
  - each tool result is capped at max_tool_result_chars before it goes
    back to the model.
  - a safety block ends the reply at once; any partial text is dropped.

Tool handler exceptions are logged here with the traceback and replaced by
a generic message, both for the model and for the user.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

import httpx

from chatgate.backends.base import GenerationBackend
from chatgate.errors import (
    GENERIC_ERROR_MESSAGE,
    ExternalApiTimeout,
    SafetyBlocked,
    ToolExecutionError,
)
from chatgate.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_RESPONSE_CHARS = 50_000
DEFAULT_MAX_TOOL_CALLS = 5
DEFAULT_MAX_TOOL_RESULT_CHARS = 10_000
DEFAULT_TOOL_TIMEOUT = 20.0

RESULT_TRUNCATION_MARKER = "\n\n[Result truncated due to length]"
EMPTY_RESPONSE_MESSAGE = (
    "I apologize, but I couldn't generate a response. Please try rephrasing your question."
)

ToolHandler = Callable[[dict, dict], Awaitable[str]]


class ReplyState(str, enum.Enum):
    COMPLETE = "complete"
    SAFETY_BLOCKED = "safety_blocked"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class ReplyResult:
    state: ReplyState
    text: str = ""
    used_tools: list[str] = field(default_factory=list)
    truncated: bool = False
    notice: str = ""


@dataclass
class StreamEvent:
    kind: str                        # "chunk" | "notice" | "done"
    text: str = ""
    result: ReplyResult | None = None


class ModelGateway:
    """Streaming generation with tool-call interception and hard bounds."""

    def __init__(
        self,
        backend: GenerationBackend,
        handlers: dict[str, ToolHandler] | None = None,
        declarations: list[dict] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_response_chars: int = DEFAULT_MAX_RESPONSE_CHARS,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        max_tool_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
    ):
        self.backend = backend
        self.handlers = dict(handlers or {})
        self.declarations = list(declarations or [])
        self.timeout = timeout
        self.max_response_chars = max_response_chars
        self.max_tool_calls = max_tool_calls
        self.max_tool_result_chars = max_tool_result_chars
        self.tool_timeout = tool_timeout

    @classmethod
    def from_config(cls, cfg: dict, backend: GenerationBackend, handlers: dict, declarations: list[dict]) -> "ModelGateway":
        g = cfg.get("gateway") or {}
        return cls(
            backend=backend,
            handlers=handlers,
            declarations=declarations,
            timeout=float(g.get("timeout", DEFAULT_TIMEOUT)),
            max_response_chars=int(g.get("max_response_chars", DEFAULT_MAX_RESPONSE_CHARS)),
            max_tool_calls=int(g.get("max_tool_calls", DEFAULT_MAX_TOOL_CALLS)),
            max_tool_result_chars=int(g.get("max_tool_result_chars", DEFAULT_MAX_TOOL_RESULT_CHARS)),
            tool_timeout=float(g.get("tool_timeout", DEFAULT_TOOL_TIMEOUT)),
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _cap_result(self, text: str) -> str:
        if len(text) > self.max_tool_result_chars:
            logger.warning("Tool result truncated: %d -> %d chars", len(text), self.max_tool_result_chars)
            return text[:self.max_tool_result_chars] + RESULT_TRUNCATION_MARKER
        return text

    async def execute_tool(self, call: ToolCall, context: dict | None = None) -> ToolResult:
        """Run one tool call. Never raises; failures become a generic result."""
        handler = self.handlers.get(call.name)
        if handler is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return ToolResult(call.name, f"Unknown function: {call.name}", ok=False, call_id=call.id)
        try:
            async with asyncio.timeout(self.tool_timeout):
                result = await handler(call.arguments or {}, context or {})
        except Exception as e:
            err = ToolExecutionError(call.name, e)
            logger.exception("Tool %s failed", call.name)
            return ToolResult(call.name, err.user_message, ok=False, call_id=call.id)
        text = result if isinstance(result, str) else str(result)
        return ToolResult(call.name, self._cap_result(text), ok=True, call_id=call.id)

    @staticmethod
    def _function_call_part(call: ToolCall) -> dict:
        fc = {"name": call.name, "args": call.arguments or {}}
        if call.id:
            fc["id"] = call.id
        return {"functionCall": fc}

    @staticmethod
    def _function_response_part(result: ToolResult) -> dict:
        fr = {"name": result.name, "response": {"content": result.result_text}}
        if result.call_id:
            fr["id"] = result.call_id
        return {"functionResponse": fr}

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_reply(
        self,
        contents: list[dict],
        message_parts: list[dict],
        context: dict | None = None,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a reply to ``message_parts`` given the sanitized ``contents``.
        ``context`` is handed to tool handlers (user_id, conversation_id).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        declarations = self.declarations if tools is None else tools
        history = list(contents) + [{"role": "user", "parts": list(message_parts)}]

        pieces: list[str] = []
        total = 0
        used_tools: list[str] = []
        calls_made = 0
        truncated = False

        try:
            while True:
                round_text: list[str] = []
                pending: list[ToolCall] = []
                stream = self.backend.stream(history, declarations or None)
                try:
                    while True:
                        try:
                            async with asyncio.timeout_at(deadline):
                                chunk = await anext(stream)
                        except StopAsyncIteration:
                            break

                        if chunk.block_reason:
                            blocked = SafetyBlocked(chunk.block_reason)
                            logger.warning("%s", blocked)
                            yield StreamEvent("done", result=ReplyResult(
                                ReplyState.SAFETY_BLOCKED,
                                used_tools=used_tools,
                                notice=blocked.user_message,
                            ))
                            return

                        if chunk.text:
                            piece = chunk.text
                            room = self.max_response_chars - total
                            if len(piece) > room:
                                piece = piece[:room]
                                truncated = True
                            if piece:
                                total += len(piece)
                                pieces.append(piece)
                                round_text.append(piece)
                                yield StreamEvent("chunk", text=piece)
                            if truncated:
                                logger.warning("Response reached %d chars, stopping stream", self.max_response_chars)
                                break
                        if chunk.tool_calls:
                            pending.extend(chunk.tool_calls)
                finally:
                    await stream.aclose()

                if truncated or not pending:
                    break

                budget = self.max_tool_calls - calls_made
                if budget <= 0:
                    logger.warning("Tool call limit (%d) reached, ignoring %d more", self.max_tool_calls, len(pending))
                    break
                if len(pending) > budget:
                    logger.warning("Tool calls limited: %d -> %d", len(pending), budget)
                    pending = pending[:budget]

                model_parts = [{"text": "".join(round_text)}] if round_text else []
                response_parts = []
                for call in pending:
                    calls_made += 1
                    logger.info("Executing tool %s (%d/%d)", call.name, calls_made, self.max_tool_calls)
                    result = await self.execute_tool(call, context)
                    used_tools.append(call.name)
                    model_parts.append(self._function_call_part(call))
                    response_parts.append(self._function_response_part(result))
                    if not result.ok and call.name in self.handlers:
                        yield StreamEvent("notice", text=result.result_text)
                history.append({"role": "model", "parts": model_parts})
                history.append({"role": "user", "parts": response_parts})

        except (TimeoutError, httpx.TimeoutException):
            err = ExternalApiTimeout("generation", self.timeout)
            logger.warning("%s (tools used: %s)", err, used_tools)
            yield StreamEvent("done", result=ReplyResult(
                ReplyState.TIMED_OUT, text="".join(pieces), used_tools=used_tools, notice=err.user_message,
            ))
            return
        except Exception:
            logger.exception("Generation failed")
            yield StreamEvent("done", result=ReplyResult(
                ReplyState.FAILED, text="".join(pieces), used_tools=used_tools, notice=GENERIC_ERROR_MESSAGE,
            ))
            return

        text = "".join(pieces)
        yield StreamEvent("done", result=ReplyResult(
            ReplyState.COMPLETE,
            text=text,
            used_tools=used_tools,
            truncated=truncated,
            notice="" if text else EMPTY_RESPONSE_MESSAGE,
        ))
