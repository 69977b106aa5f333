"""
Data model shared across the pipeline stages.

Everything here is plain dataclasses. ConversationTurn and EmbeddingRecord
are frozen: once built they are only re-serialized, never edited.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field


def now_ms() -> int:
    """Wall-clock time in milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

@dataclass
class TokenBucket:
    capacity: int
    refill_rate: int                 # tokens added per elapsed interval
    interval_ms: int
    tokens: int = 0
    last_refill: int = 0             # ms timestamp of the last refill tick


@dataclass
class UserRateState:
    user_id: str
    minute: TokenBucket
    hour: TokenBucket
    first_request: int = 0
    last_request: int = 0
    total_requests: int = 0


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_ms: int = 0
    remaining: dict = field(default_factory=lambda: {"minute": 0, "hour": 0})
    limit: dict = field(default_factory=lambda: {"minute": 0, "hour": 0})
    reset_at: dict = field(default_factory=lambda: {"minute": 0, "hour": 0})
    limit_type: str | None = None    # "minute" | "hour" | "error" | None

    def info_payload(self) -> dict:
        """Wire shape for the rate-limit-info event."""
        return {
            "remaining": dict(self.remaining),
            "limit": dict(self.limit),
            "resetAt": dict(self.reset_at),
        }


# ---------------------------------------------------------------------------
# Conversation + attachments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttachmentRef:
    encoded_payload: str             # base64, optionally a data: URL
    declared_mime_type: str
    file_name: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "AttachmentRef":
        """Accept the camelCase wire shape as well as snake_case."""
        return cls(
            encoded_payload=str(
                raw.get("encoded_payload")
                or raw.get("url")
                or raw.get("data")
                or ""
            ),
            declared_mime_type=str(
                raw.get("declared_mime_type")
                or raw.get("mimeType")
                or raw.get("mime_type")
                or ""
            ),
            file_name=str(raw.get("file_name") or raw.get("fileName") or raw.get("name") or ""),
        )


@dataclass(frozen=True)
class ConversationTurn:
    role: str                        # "user" | "assistant"
    content: str
    attachments: tuple[AttachmentRef, ...] = ()
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ValidatedPart:
    kind: str                        # "inline" | "text"
    mime_type: str
    data: str = ""                   # base64 payload for inline parts
    text: str = ""                   # extracted text for text parts
    file_name: str = ""

    def to_part(self) -> dict:
        """Canonical content part (inlineData or text)."""
        if self.kind == "inline":
            return {"inlineData": {"mimeType": self.mime_type, "data": self.data}}
        return {"text": self.text}


@dataclass
class SendMessage:
    """Inbound send-message request."""
    conversation_id: str
    message: str
    user_id: str
    history: list = field(default_factory=list)
    attachments: list[AttachmentRef] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: dict) -> "SendMessage":
        return cls(
            conversation_id=str(data.get("conversationId") or data.get("conversation_id") or ""),
            message=data.get("message") if isinstance(data.get("message"), str) else "",
            user_id=str(data.get("userId") or data.get("user_id") or ""),
            history=list(data.get("history") or []),
            attachments=[
                AttachmentRef.from_dict(a)
                for a in (data.get("attachments") or [])
                if isinstance(a, dict)
            ],
        )


# ---------------------------------------------------------------------------
# Vector memory
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddingRecord:
    user_id: str
    conversation_id: str
    content: str
    role: str
    vector: tuple[float, ...] = ()
    conversation_title: str = ""
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=now_ms)

    def metadata(self) -> dict:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "role": self.role,
            "timestamp": self.timestamp,
            "conversation_title": self.conversation_title,
        }


@dataclass
class SearchHit:
    message_id: str
    user_id: str
    conversation_id: str
    content: str
    role: str
    conversation_title: str
    timestamp: int
    distance: float

    @property
    def score(self) -> float:
        return max(0.0, round(1.0 - self.distance, 4))

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "conversation_title": self.conversation_title,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "distance": self.distance,
            "score": self.score,
        }


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    name: str
    arguments: dict = field(default_factory=dict)
    id: str = ""                     # provider call id (OpenAI-style), may be empty


@dataclass
class ToolResult:
    name: str
    result_text: str
    ok: bool = True
    call_id: str = ""
