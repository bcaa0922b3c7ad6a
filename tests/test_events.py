"""Tests for delegate.events — EventBus and typed event definitions."""

from __future__ import annotations

import asyncio

import pytest

from delegate.events import (
    DelegateEvent,
    EventBus,
    SubagentCompleteEvent,
    SubagentProgressEvent,
    SubagentsSnapshotEvent,
    SubagentStartEvent,
    SubagentStopEvent,
    SubagentToolCallEvent,
    SubagentToolResultEvent,
    create_event_bus,
)
from delegate.orchestration.models import SingleResult


# ---------------------------------------------------------------------------
# DelegateEvent auto-derivation
# ---------------------------------------------------------------------------


class TestEventType:
    """Tests for automatic event_type derivation from class names."""

    def test_start(self) -> None:
        assert SubagentStartEvent(run_id="r", agent="a").event_type == "subagent.start"

    def test_tool_call(self) -> None:
        assert SubagentToolCallEvent(run_id="r", agent="a").event_type == "subagent.tool.call"

    def test_tool_result(self) -> None:
        assert SubagentToolResultEvent(run_id="r", agent="a").event_type == "subagent.tool.result"

    def test_progress(self) -> None:
        event = SubagentProgressEvent(run_id="r", result=SingleResult(agent="a", task="t"))
        assert event.event_type == "subagent.progress"

    def test_stop(self) -> None:
        assert SubagentStopEvent(run_id="r", agent="a", exit_code=0).event_type == "subagent.stop"

    def test_complete(self) -> None:
        event = SubagentCompleteEvent(task_id="bg-1", agent="a", status="completed", summary="s")
        assert event.event_type == "subagent.complete"

    def test_snapshot(self) -> None:
        assert SubagentsSnapshotEvent().event_type == "subagents.snapshot"

    def test_explicit_event_type_preserved(self) -> None:
        assert DelegateEvent(event_type="custom.type").event_type == "custom.type"

    def test_base_event(self) -> None:
        assert DelegateEvent().event_type == "delegate"

    def test_acronym_class_name(self) -> None:
        class MCPServerReadyEvent(DelegateEvent):
            pass

        assert MCPServerReadyEvent().event_type == "mcp.server.ready"


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestSubscriptions:
    def test_subscribe_returns_id(self) -> None:
        bus = create_event_bus()
        sub_id = bus.subscribe("*", lambda e: None)
        assert isinstance(sub_id, str) and sub_id
        assert bus.subscription_count == 1

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        sub_id = bus.subscribe("*", lambda e: None)
        bus.unsubscribe(sub_id)
        bus.unsubscribe("missing")
        assert bus.subscription_count == 0

    def test_wildcards_filter(self) -> None:
        bus = EventBus()
        everything: list = []
        tools: list = []
        bus.subscribe("*", everything.append)
        bus.subscribe("subagent.tool.*", tools.append)

        bus.publish(SubagentStartEvent(run_id="r", agent="a"))
        bus.publish(SubagentToolCallEvent(run_id="r", agent="a", tool_name="bash"))
        bus.publish(SubagentToolResultEvent(run_id="r", agent="a"))

        assert len(everything) == 3
        assert [e.event_type for e in tools] == ["subagent.tool.call", "subagent.tool.result"]

    def test_delivery_in_subscription_order(self) -> None:
        bus = EventBus()
        order: list[str] = []
        bus.subscribe("*", lambda e: order.append("first"))
        bus.subscribe("*", lambda e: order.append("second"))
        bus.publish(SubagentsSnapshotEvent())
        assert order == ["first", "second"]

    def test_handler_exception_does_not_propagate(self) -> None:
        bus = EventBus()
        seen: list = []

        def broken(event) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        bus.publish(SubagentsSnapshotEvent())
        assert len(seen) == 1

    def test_unsubscribe_during_dispatch(self) -> None:
        bus = EventBus()
        seen: list = []
        ids: dict[str, str] = {}

        def once(event) -> None:
            seen.append(event)
            bus.unsubscribe(ids["once"])

        ids["once"] = bus.subscribe("*", once)
        bus.publish(SubagentsSnapshotEvent())
        bus.publish(SubagentsSnapshotEvent())
        assert len(seen) == 1


class TestAsyncHandlers:
    @pytest.mark.asyncio
    async def test_coroutine_handler_scheduled(self) -> None:
        bus = EventBus()
        seen: list = []

        async def handler(event) -> None:
            await asyncio.sleep(0)
            seen.append(event.event_type)

        bus.subscribe("subagent.*", handler)
        bus.publish(SubagentStopEvent(run_id="r", agent="a", exit_code=0))
        assert seen == []
        await bus.drain()
        assert seen == ["subagent.stop"]

    @pytest.mark.asyncio
    async def test_async_handler_exception_isolated(self) -> None:
        bus = EventBus()
        seen: list = []

        async def broken(event) -> None:
            raise ValueError("async bug")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        bus.publish(SubagentsSnapshotEvent())
        await bus.drain()
        assert len(seen) == 1

    def test_coroutine_without_loop_is_dropped(self) -> None:
        bus = EventBus()
        calls: list = []

        async def handler(event) -> None:
            calls.append(event)

        bus.subscribe("*", handler)
        bus.publish(SubagentsSnapshotEvent())
        assert calls == []


def test_event_serialization() -> None:
    event = SubagentCompleteEvent(
        task_id="bg-1", agent="writer", status="failed", summary="Agent writer failed (3s)",
    )
    data = event.model_dump()
    assert data["event_type"] == "subagent.complete"
    assert data["summary"] == "Agent writer failed (3s)"
    assert isinstance(data["timestamp"], float)
