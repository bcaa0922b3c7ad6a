"""Result formatting helpers — final output extraction, usage and duration text."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from delegate.orchestration.models import UsageStats


def _first_text(message: dict[str, Any]) -> Optional[str]:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            return str(part.get("text", ""))
    return None


def final_output_index(messages: list[dict[str, Any]]) -> Optional[int]:
    """Index of the latest assistant message that carries text."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.get("role") == "assistant" and _first_text(message) is not None:
            return index
    return None


def get_final_output(messages: list[dict[str, Any]]) -> str:
    """Return the first text part of the latest assistant message with text, or ""."""
    index = final_output_index(messages)
    if index is None:
        return ""
    return _first_text(messages[index]) or ""


def preview_lines(text: str, limit: int = 3) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[:limit])


def format_tokens(count: float) -> str:
    if count < 1000:
        return str(int(count))
    if count < 10000:
        return f"{count / 1000:.1f}k"
    if count < 1_000_000:
        return f"{round(count / 1000)}k"
    return f"{count / 1_000_000:.1f}M"


def format_usage_stats(usage: UsageStats, model: Optional[str] = None) -> str:
    """One-line usage summary, e.g. ``3 turns ↑1.2k ↓340 $0.0123 ctx:5.1k``."""
    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'' if usage.turns == 1 else 's'}")
    if usage.input:
        parts.append(f"↑{format_tokens(usage.input)}")
    if usage.output:
        parts.append(f"↓{format_tokens(usage.output)}")
    if usage.cache_read:
        parts.append(f"R{format_tokens(usage.cache_read)}")
    if usage.cache_write:
        parts.append(f"W{format_tokens(usage.cache_write)}")
    if usage.cost:
        parts.append(f"${usage.cost:.4f}")
    if usage.context_tokens:
        parts.append(f"ctx:{format_tokens(usage.context_tokens)}")
    if usage.denials:
        parts.append(f"denied:{usage.denials}")
    if model:
        parts.append(model)
    return " ".join(parts)


def aggregate_usage(usages: Iterable[UsageStats]) -> UsageStats:
    """Sum usage across results.  Context size is not additive and is left at 0."""
    total = UsageStats()
    for usage in usages:
        total.input += usage.input
        total.output += usage.output
        total.cache_read += usage.cache_read
        total.cache_write += usage.cache_write
        total.cost += usage.cost
        total.turns += usage.turns
        total.denials += usage.denials
    return total


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"
