"""
Event Bus — progress and lifecycle notifications for subagent runs.

Typed events are Pydantic models; subscribers register fnmatch-style patterns
against the dotted ``event_type`` derived from the class name.

Concurrency model:
  - publish() dispatches synchronously, in subscription order
  - Coroutine handlers are scheduled on the running loop
  - Handler exceptions are logged but do not propagate
"""

from __future__ import annotations

import asyncio
import fnmatch as _fnmatch_mod
import re
import time
import uuid
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

from delegate.orchestration.models import SingleResult

logger = structlog.get_logger(__name__)

EventHandler = Callable[["DelegateEvent"], Any] | Callable[["DelegateEvent"], Coroutine[Any, Any, Any]]

# Regex that correctly splits CamelCase including consecutive capitals (acronyms).
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


class DelegateEvent(BaseModel):
    """Base class for all typed engine events."""

    event_type: str = ""
    timestamp: float = Field(default_factory=time.time)

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()


class _Subscription:
    """Internal subscription record."""

    __slots__ = ("sub_id", "pattern", "handler", "_compiled")

    def __init__(self, sub_id: str, pattern: str, handler: EventHandler) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.handler = handler
        self._compiled: re.Pattern[str] = re.compile(_fnmatch_mod.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._compiled.match(event_type) is not None


class EventBus:
    """Synchronous fan-out bus with wildcard subscriptions.

    Pattern matching uses fnmatch-style wildcards:
      "subagent.*"   matches "subagent.start", "subagent.tool.call"
      "*"            matches everything
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, _Subscription] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern.  Returns a subscription ID."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, handler)
        logger.debug("event_bus.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug("event_bus.unsubscribed", sub_id=subscription_id)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: DelegateEvent) -> None:
        """Deliver an event to every matching subscriber."""
        for sub in list(self._subscriptions.values()):
            if not sub.matches(event.event_type):
                continue
            try:
                outcome = sub.handler(event)
            except Exception:
                logger.error(
                    "event_bus.handler_error",
                    event_type=event.event_type,
                    pattern=sub.pattern,
                    exc_info=True,
                )
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(outcome, event, sub)

    def _schedule(self, coro: Coroutine[Any, Any, Any], event: DelegateEvent, sub: _Subscription) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("event_bus.no_running_loop", event_type=event.event_type)
            return
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "event_bus.async_handler_error",
                    event_type=event.event_type,
                    pattern=sub.pattern,
                    error=str(t.exception()),
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers (used by tests and shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# ---------------------------------------------------------------------------
# Event definitions
# ---------------------------------------------------------------------------


class SubagentStartEvent(DelegateEvent):
    """A subagent process is being launched."""

    run_id: str
    agent: str
    model: Optional[str] = None
    background: bool = False


class SubagentToolCallEvent(DelegateEvent):
    """The subagent began a tool call."""

    run_id: str
    agent: str
    tool_name: Optional[str] = None
    tool_calls: int = 0


class SubagentToolResultEvent(DelegateEvent):
    """The subagent finished a tool call."""

    run_id: str
    agent: str
    tool_name: str = "unknown"
    is_error: bool = False
    denied: bool = False


class SubagentProgressEvent(DelegateEvent):
    """Snapshot of an in-flight result, for streaming displays."""

    run_id: str
    result: SingleResult
    force: bool = False


class SubagentStopEvent(DelegateEvent):
    """The subagent process exited (or was abandoned)."""

    run_id: str
    agent: str
    exit_code: int
    stop_reason: Optional[str] = None


class SubagentCompleteEvent(DelegateEvent):
    """A background subagent finished; carries a short notification."""

    task_id: str
    agent: str
    status: str
    summary: str
    preview: str = ""


class SubagentsSnapshotEvent(DelegateEvent):
    """Registry state after a change, for status widgets."""

    foreground: list[dict[str, Any]] = Field(default_factory=list)
    background: list[dict[str, Any]] = Field(default_factory=list)


def create_event_bus() -> EventBus:
    return EventBus()
