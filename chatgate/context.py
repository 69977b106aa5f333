"""
ContextSanitizer — raw client history in, model-ready contents out.

Client-supplied history is untrusted. Each entry is normalised to a
ConversationTurn (user / assistant only; anything else, including a
"system" role, is dropped so clients can't smuggle in instructions),
its content coerced back to plain text, and any attachments it carries
re-validated through the same AttachmentValidator used for new uploads.

Output is the canonical contents format used throughout the gateway:

    {"role": "user" | "model", "parts": [{"text": ...} | {"inlineData": {...}}]}

with the catalog's instruction turns prepended.
"""

from __future__ import annotations

import logging
from typing import Iterable

from chatgate.attachments import AttachmentValidator, render_message
from chatgate.models import AttachmentRef, ConversationTurn, now_ms
from chatgate.prompts import PromptCatalog

logger = logging.getLogger(__name__)

CORRUPTED_MARKER = "[object Object]"

_ROLE_MAP = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "model": "assistant",
    "ai": "assistant",
}
_MODEL_ROLE = {"user": "user", "assistant": "model"}


def coerce_content(value) -> str:
    """Best-effort plain text from whatever an upstream serializer produced."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if isinstance(value.get("text"), (str, int, float)):
            return str(value["text"])
        for v in value.values():
            if isinstance(v, str) and v.strip():
                return v
        return ""
    if isinstance(value, (list, tuple)):
        return "".join(coerce_content(v) for v in value)
    return str(value)


def strip_corrupted(text: str, original=None) -> str:
    """Remove serialization placeholders rather than show them to the model."""
    if CORRUPTED_MARKER not in text:
        return text
    logger.error(
        "Corrupted placeholder %s in history content (type=%s), stripping",
        CORRUPTED_MARKER, type(original).__name__,
    )
    return text.replace(CORRUPTED_MARKER, "").strip()


def _timestamp(value) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return now_ms()


class ContextSanitizer:
    """Builds the model context from untrusted history."""

    def __init__(
        self,
        validator: AttachmentValidator,
        catalog: PromptCatalog,
        replay_categories: Iterable[str] = ("image",),
    ):
        self.validator = validator
        self.catalog = catalog
        self.replay_categories = tuple(replay_categories)

    @classmethod
    def from_config(cls, cfg: dict, validator: AttachmentValidator, catalog: PromptCatalog) -> "ContextSanitizer":
        history_cfg = cfg.get("history") or {}
        return cls(
            validator=validator,
            catalog=catalog,
            replay_categories=history_cfg.get("replay_categories", ["image"]),
        )

    def normalize(self, raw) -> ConversationTurn | None:
        """One raw history entry to a ConversationTurn, or None to drop it."""
        if isinstance(raw, ConversationTurn):
            return raw
        if not isinstance(raw, dict):
            logger.warning("Dropping history entry of type %s", type(raw).__name__)
            return None

        role = _ROLE_MAP.get(str(raw.get("role", "")).strip().lower())
        if role is None:
            logger.warning("Dropping history entry with role %r", raw.get("role"))
            return None

        original = raw.get("content")
        if original is None and "parts" in raw:
            original = raw.get("parts")
        if not isinstance(original, str) and original is not None:
            logger.warning("History content is %s, coercing to text", type(original).__name__)
        text = strip_corrupted(coerce_content(original), original)

        attachments = tuple(
            AttachmentRef.from_dict(a)
            for a in (raw.get("attachments") or [])
            if isinstance(a, dict)
        )
        return ConversationTurn(
            role=role,
            content=text,
            attachments=attachments,
            timestamp=_timestamp(raw.get("timestamp")),
        )

    async def render_turn(self, turn: ConversationTurn) -> dict | None:
        result = None
        if turn.attachments:
            result = await self.validator.validate(turn.attachments, categories=self.replay_categories)
            for warning in result.warnings:
                logger.info("History attachment skipped: %s", warning)
        parts = render_message(turn.content, result, include_rejections=False)
        if not parts:
            return None
        return {"role": _MODEL_ROLE[turn.role], "parts": parts}

    async def build_context(self, raw_history, enabled_tools: list[str] | None = None) -> list[dict]:
        """Instruction turns followed by the sanitized history."""
        contents = self.catalog.instruction_turns(enabled_tools)
        kept = dropped = 0
        for raw in raw_history or []:
            turn = self.normalize(raw)
            rendered = await self.render_turn(turn) if turn is not None else None
            if rendered is None:
                dropped += 1
                continue
            contents.append(rendered)
            kept += 1
        if dropped:
            logger.info("History sanitized: kept %d turns, dropped %d", kept, dropped)
        return contents
