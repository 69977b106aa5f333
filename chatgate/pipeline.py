"""
MessagePipeline — one inbound send-message, start to finish.

    typing on
    -> RateLimiter.check_and_consume      (stop with a notice when denied)
    -> ContextSanitizer.build_context     (history)
    -> AttachmentValidator.validate       (new uploads)
    -> ModelGateway.stream_reply          (chunks forwarded as they arrive)
    -> VectorMemory.index_exchange        (background task, never awaited here)
    typing off                            (always, in finally)

The pipeline only talks to the caller through an EventSink, so it doesn't
care what the transport is. Anything that escapes a stage is logged with
its traceback and replaced by a generic message. Raw exception text
never reaches the sink.

If the sink closes mid-reply (client disconnected) no further chunks are
emitted, but the reply is still read to the end and indexed.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Protocol

from chatgate.attachments import AttachmentValidator, render_message
from chatgate.context import ContextSanitizer, coerce_content
from chatgate.errors import GENERIC_ERROR_MESSAGE, RateLimited
from chatgate.gateway import ModelGateway, ReplyResult, ReplyState
from chatgate.models import RateLimitResult, SendMessage, now_ms
from chatgate.rate_limiter import RateLimiter
from chatgate.storage.vector_store import VectorMemory

logger = logging.getLogger(__name__)

TITLE_CHARS = 50
EMPTY_MESSAGE_NOTICE = "Please enter a message or attach a file."


class EventSink(Protocol):
    closed: bool

    async def emit(self, event: str, payload: dict) -> None:
        ...


def derive_title(history: list, message: str) -> str:
    """First user turn (or the new message), cut to 50 chars."""
    first = ""
    for turn in history or []:
        if isinstance(turn, dict) and turn.get("role") == "user":
            first = coerce_content(turn.get("content")).strip()
            break
    if not first:
        first = (message or "").strip()
    if not first:
        return "New Chat"
    return first[:TITLE_CHARS] + "..." if len(first) > TITLE_CHARS else first


def _wait_text(retry_after_ms: int) -> str:
    seconds = max(1, math.ceil(retry_after_ms / 1000))
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"
    minutes = math.ceil(seconds / 60)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'s' if hours != 1 else ''}"


def rate_limit_message(rl: RateLimitResult) -> str:
    window = "hour" if rl.limit_type == "hour" else "minute"
    reset_at = rl.reset_at.get(window, 0)
    at = datetime.fromtimestamp(reset_at / 1000, tz=timezone.utc).strftime("%H:%M UTC")
    return (
        "### You've reached your message limit\n\n"
        f"To prevent abuse, there's a limit on how many messages you can send per {window}.\n\n"
        f"**You can send more messages in {_wait_text(rl.retry_after_ms)}** (at {at}).\n\n"
        "**Current usage:**\n"
        f"- {rl.remaining['minute']} of {rl.limit['minute']} messages remaining this minute\n"
        f"- {rl.remaining['hour']} of {rl.limit['hour']} messages remaining this hour"
    )


class MessagePipeline:
    """Composes the pipeline stages for one message at a time."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        sanitizer: ContextSanitizer,
        validator: AttachmentValidator,
        gateway: ModelGateway,
        memory: VectorMemory | None = None,
        max_attachments: int | None = None,
    ):
        self.rate_limiter = rate_limiter
        self.sanitizer = sanitizer
        self.validator = validator
        self.gateway = gateway
        self.memory = memory
        self.max_attachments = max_attachments
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def _emit(self, sink: EventSink, event: str, payload: dict) -> bool:
        if getattr(sink, "closed", False):
            logger.debug("Sink closed, dropping %s", event)
            return False
        try:
            await sink.emit(event, payload)
        except Exception as e:
            logger.warning("Failed to emit %s: %s", event, e)
            return False
        return True

    async def _complete(self, sink: EventSink, conversation_id: str, text: str, **extra) -> None:
        await self._emit(sink, "message-chunk", {
            "conversationId": conversation_id,
            "text": text,
            "isComplete": True,
            **extra,
        })

    # ------------------------------------------------------------------
    # Background indexing
    # ------------------------------------------------------------------

    def _schedule_index(self, request: SendMessage, reply: str) -> None:
        if self.memory is None:
            return
        title = derive_title(request.history, request.message)
        ts = now_ms()
        user_msg = {"id": str(uuid.uuid4()), "role": "user", "content": request.message, "timestamp": ts}
        bot_msg = {"id": str(uuid.uuid4()), "role": "assistant", "content": reply, "timestamp": ts + 1}

        async def _run():
            try:
                await self.memory.index_exchange(
                    request.user_id, request.conversation_id, user_msg, bot_msg, title
                )
            except Exception as e:
                logger.error("Background indexing failed for %s: %s", request.conversation_id, e)

        task = asyncio.create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for in-flight indexing (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def process_message(self, sink: EventSink, request: SendMessage) -> ReplyResult | None:
        """Run one send-message. Returns the reply result, or None if it never streamed."""
        cid = request.conversation_id
        await self._emit(sink, "typing", {"conversationId": cid, "isTyping": True})
        try:
            # Stage 1: rate limit
            rl = self.rate_limiter.check_and_consume(request.user_id)
            await self._emit(sink, "rate-limit-info", rl.info_payload())
            if not rl.allowed:
                denied = RateLimited(rl.retry_after_ms, rl.limit_type)
                logger.info("Rejected message from %r: %s", request.user_id, denied)
                await self._emit(sink, "rate-limit-exceeded", {
                    "conversationId": cid,
                    "retryAfterMs": denied.retry_after_ms,
                    "limitType": denied.limit_type,
                })
                text = rate_limit_message(rl) if rl.limit_type != "error" else denied.user_message
                await self._complete(sink, cid, text, rateLimited=True)
                return None

            # Stage 2: history
            contents = await self.sanitizer.build_context(request.history, list(self.gateway.handlers))

            # Stage 3: attachments
            validation = await self.validator.validate(request.attachments, self.max_attachments)
            if validation.warnings:
                await self._emit(sink, "attachment-warning", {
                    "conversationId": cid,
                    "warnings": list(validation.warnings),
                })
            parts = render_message(request.message, validation)
            if not parts:
                await self._complete(sink, cid, EMPTY_MESSAGE_NOTICE)
                return None

            # Stage 4: stream
            result: ReplyResult | None = None
            context = {"user_id": request.user_id, "conversation_id": cid}
            replies = self.gateway.stream_reply(contents, parts, context)
            gone = False
            try:
                async for event in replies:
                    if event.kind == "done":
                        result = event.result
                        break
                    if sink.closed:
                        if not gone:
                            logger.info("Client went away mid-reply in %s, finishing quietly", cid)
                            gone = True
                        continue
                    await self._emit(sink, "message-chunk", {
                        "conversationId": cid,
                        "text": event.text,
                        "isComplete": False,
                    })
            finally:
                await replies.aclose()

            if result is None:
                raise RuntimeError("reply stream ended without a result")

            # Stage 5: index (fire and forget)
            if result.state is ReplyState.COMPLETE and result.text:
                self._schedule_index(request, result.text)

            # Stage 6: completion
            await self._complete(
                sink, cid, result.notice,
                status=result.state.value,
                truncated=result.truncated,
                usedTools=list(result.used_tools),
            )
            return result

        except Exception:
            logger.exception("Pipeline failed for conversation %s", cid)
            await self._complete(sink, cid, GENERIC_ERROR_MESSAGE, error=True)
            return None
        finally:
            await self._emit(sink, "typing", {"conversationId": cid, "isTyping": False})
