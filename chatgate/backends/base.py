"""
Base generation backend abstraction.

Every backend streams a reply for the canonical contents format
({"role": "user"|"model", "parts": [...]}) and normalises whatever its
API sends into ModelChunks, so ModelGateway treats them uniformly.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from chatgate.models import ToolCall

logger = logging.getLogger(__name__)


@dataclass
class ModelChunk:
    """One normalised streaming event from a generation API."""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    block_reason: str = ""           # non-empty when the provider withheld content
    finish_reason: str = ""


def parse_sse_data(line: str) -> dict | None:
    """JSON payload of an SSE ``data:`` line, None for anything else."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed SSE payload: %s", payload[:200])
        return None
    return data if isinstance(data, dict) else None


class GenerationBackend(abc.ABC):
    """
    Abstract base for streaming generation APIs.
    """

    def __init__(self, name: str, url: str, model: str, timeout: float = 60, api_key: str = ""):
        self.name = name
        self.url = url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    @abc.abstractmethod
    def stream(self, contents: list[dict], tools: list[dict] | None = None) -> AsyncIterator[ModelChunk]:
        """
        Stream a reply. ``tools`` are declarations ({name, description,
        parameters}). Yields ModelChunks; raises on transport errors.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} model={self.model!r}>"
