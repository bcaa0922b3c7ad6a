"""
Subagent wire protocol — newline-delimited JSON frames on the child's stdout.

Each line is one JSON object with a ``type`` discriminator.  Three frame types
carry meaning; anything else (unknown types, malformed JSON, payloads that do
not validate) decodes to ``UnrecognizedFrame`` and is ignored by consumers.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = structlog.get_logger(__name__)


class _Frame(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ToolCallStartFrame(_Frame):
    type: Literal["tool_call_start"]
    tool_name: Optional[str] = Field(None, alias="toolName")
    tool_call_id: Optional[str] = Field(None, alias="toolCallId")


class MessageEndFrame(_Frame):
    type: Literal["message_end"]
    message: dict[str, Any]


class ToolResultEndFrame(_Frame):
    type: Literal["tool_result_end"]
    message: dict[str, Any]


class UnrecognizedFrame(BaseModel):
    type: Literal["unrecognized"] = "unrecognized"
    raw: str = ""
    reason: str = ""


Frame = Union[ToolCallStartFrame, MessageEndFrame, ToolResultEndFrame, UnrecognizedFrame]

_KNOWN_FRAMES = TypeAdapter(
    Union[ToolCallStartFrame, MessageEndFrame, ToolResultEndFrame]
)
_KNOWN_TYPES = {"tool_call_start", "message_end", "tool_result_end"}


def parse_frame(line: str) -> Frame:
    """Decode one protocol line.  Never raises."""
    text = line.strip()
    if not text:
        return UnrecognizedFrame(raw=line, reason="empty")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return UnrecognizedFrame(raw=text, reason="invalid json")
    if not isinstance(payload, dict) or payload.get("type") not in _KNOWN_TYPES:
        return UnrecognizedFrame(raw=text, reason="unknown type")
    try:
        return _KNOWN_FRAMES.validate_python(payload)
    except ValidationError as exc:
        logger.debug("protocol.invalid_frame", frame_type=payload.get("type"), errors=exc.error_count())
        return UnrecognizedFrame(raw=text, reason="invalid payload")


class FrameDecoder:
    """Incremental decoder for a chunked stdout stream.

    Chunks may split lines (and multi-byte UTF-8 sequences) anywhere; only
    complete lines are parsed until ``flush()`` handles the trailing remainder
    at end of stream.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [parse_frame(line) for line in lines if line.strip()]

    def flush(self) -> list[Frame]:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return [parse_frame(remainder)]


# ---------------------------------------------------------------------------
# Message payload helpers
# ---------------------------------------------------------------------------


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def message_usage(message: dict[str, Any]) -> dict[str, Any]:
    """Normalise an assistant message's ``usage`` block.

    Missing fields read as zero; ``cost`` may be ``{"total": n}`` or a bare number.
    """
    usage = message.get("usage") or {}
    if not isinstance(usage, dict):
        usage = {}
    cost = usage.get("cost")
    if isinstance(cost, dict):
        cost_total = _as_float(cost.get("total"))
    else:
        cost_total = _as_float(cost)
    return {
        "input": _as_int(usage.get("input")),
        "output": _as_int(usage.get("output")),
        "cache_read": _as_int(usage.get("cacheRead")),
        "cache_write": _as_int(usage.get("cacheWrite")),
        "cost": cost_total,
        "total_tokens": _as_int(usage.get("totalTokens")),
    }


def message_text(message: dict[str, Any]) -> str:
    """Concatenate the text parts of a message's content."""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "\n".join(parts)


def is_tool_denial(message: dict[str, Any], patterns: list[str]) -> bool:
    """A tool result is a denial if it errored and was denied (flag or wording)."""
    if not message.get("isError"):
        return False
    if message.get("isDenied") is True:
        return True
    text = message_text(message).lower()
    return any(pattern in text for pattern in patterns)
