"""Tests for delegate.orchestration.registry — background task tracking."""

from __future__ import annotations

import asyncio

import pytest
from conftest import assistant_frame, emit, make_invocation, tool_result_frame

from delegate.events import EventBus, SubagentCompleteEvent, SubagentsSnapshotEvent
from delegate.orchestration.models import BackgroundTask, SingleResult
from delegate.orchestration.registry import (
    BackgroundTaskRegistry,
    apply_background_result_retention,
    compact_background_messages,
)
from delegate.orchestration.runners import SubprocessRunner


def _registry(config, events=None) -> BackgroundTaskRegistry:
    return BackgroundTaskRegistry(config, SubprocessRunner(config), events)


async def _until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def _collect(bus: EventBus, pattern: str) -> list:
    seen: list = []
    bus.subscribe(pattern, seen.append)
    return seen


class TestCompaction:
    def test_short_history_untouched(self):
        messages = [assistant_frame("a")["message"]]
        compacted = compact_background_messages(messages, 5)
        assert compacted.messages == messages
        assert compacted.original_message_count == compacted.retained_message_count == 1
        assert compacted.final_output == "a"

    def test_tail_kept(self):
        messages = [assistant_frame(str(i))["message"] for i in range(6)]
        compacted = compact_background_messages(messages, 2)
        assert [m["content"][0]["text"] for m in compacted.messages] == ["4", "5"]
        assert compacted.final_output == "5"

    def test_final_output_appended_when_outside_tail(self):
        messages = [assistant_frame("answer")["message"]] + [
            tool_result_frame("read", f"r{i}")["message"] for i in range(3)
        ]
        compacted = compact_background_messages(messages, 2)
        assert compacted.retained_message_count == 3
        assert compacted.messages[-1]["content"][0]["text"] == "answer"
        assert compacted.final_output == "answer"

    def test_retention_respects_keep_full_history(self, config):
        config.keep_full_history = True
        result = SingleResult(agent="w", task="t", messages=[assistant_frame(str(i))["message"] for i in range(5)])
        task = BackgroundTask(agent="w", task="t", result=result)
        apply_background_result_retention(task, config)
        assert not task.history_compacted
        assert len(task.result.messages) == 5
        assert task.retained_final_output == "4"


class TestStatusText:
    def test_unknown_id_does_not_mutate(self, config):
        registry = _registry(config)
        assert registry.status("bg-missing") == "Task not found: bg-missing"
        assert registry.tasks() == []

    def test_empty_listing(self, config):
        assert _registry(config).status() == "No background subagents running."


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_spawn_returns_immediately_then_completes(self, fake_agent):
        config = fake_agent({"default": [{"sleep": 0.3}, emit(assistant_frame("all done"))]})
        bus = EventBus()
        completions = _collect(bus, "subagent.complete")
        registry = _registry(config, bus)

        task_id = await registry.spawn(make_invocation())
        assert task_id.startswith("bg-")
        assert registry.get(task_id).status == "running"
        assert registry.running_count == 1

        task = await registry.wait(task_id)
        assert task.status == "completed"
        assert task.completed_at is not None
        assert registry.output(task) == "all done"
        assert registry.running_count == 0

        assert len(completions) == 1
        event = completions[0]
        assert isinstance(event, SubagentCompleteEvent)
        assert event.summary.startswith("Agent writer completed (")
        assert event.preview == "all done"

        detail = registry.status(task_id)
        assert f"**Task:** {task_id}" in detail
        assert "**Status:** completed" in detail
        assert detail.endswith("**Output:**\nall done")

        listing = registry.status()
        assert listing.startswith("**Background Subagents (1):**")
        assert f"`{task_id}` writer [completed]" in listing

    @pytest.mark.asyncio
    async def test_failed_run_shows_error(self, fake_agent):
        config = fake_agent({"default": [
            emit(assistant_frame("", stop_reason="error", error_message="model refused")),
            {"exit": 2},
        ]})
        registry = _registry(config)
        task_id = await registry.spawn(make_invocation())
        task = await registry.wait(task_id)
        assert task.status == "failed"
        assert task.result.exit_code == 2
        assert "**Error:** model refused" in registry.status(task_id)

    @pytest.mark.asyncio
    async def test_partial_output_visible_while_running(self, fake_agent):
        config = fake_agent({"default": [emit(assistant_frame("halfway")), {"sleep": 30}]})
        registry = _registry(config)
        task_id = await registry.spawn(make_invocation())
        task = registry.get(task_id)

        await _until(lambda: task.result.messages)
        assert task.status == "running"
        detail = registry.status(task_id)
        assert "**Status:** running" in detail
        assert detail.endswith("halfway")

        await registry.clear()

    @pytest.mark.asyncio
    async def test_no_output_yet(self, fake_agent):
        config = fake_agent({"default": [{"sleep": 30}]})
        registry = _registry(config)
        task_id = await registry.spawn(make_invocation())
        assert registry.status(task_id).endswith("(no output yet)")
        await registry.clear()

    @pytest.mark.asyncio
    async def test_long_history_compacted_on_completion(self, fake_agent):
        frames = [emit(assistant_frame("answer"))] + [
            emit(tool_result_frame("read", f"chunk {i}")) for i in range(5)
        ]
        config = fake_agent({"default": frames}, history_tail_messages=2)
        registry = _registry(config)
        task = await registry.wait(await registry.spawn(make_invocation()))

        assert task.history_compacted
        assert task.history_original_message_count == 6
        assert task.history_retained_message_count == 3
        assert registry.output(task) == "answer"
        assert "**History:** compacted (3/6 messages retained)" in registry.status(task.id)

    @pytest.mark.asyncio
    async def test_finished_status_never_reverts(self, fake_agent):
        config = fake_agent({"default": [emit(assistant_frame("ok"))]})
        bus = EventBus()
        completions = _collect(bus, "subagent.complete")
        registry = _registry(config, bus)
        task = await registry.wait(await registry.spawn(make_invocation()))

        assert task.status == "completed"
        assert task.mark_finished("failed") is False
        assert await registry.interrupt_all() == 0
        assert task.status == "completed"
        assert len(completions) == 1


class TestTeardown:
    @pytest.mark.asyncio
    async def test_interrupt_all_fails_running_tasks(self, fake_agent):
        config = fake_agent({"default": [emit(assistant_frame("started")), {"sleep": 30}]})
        bus = EventBus()
        completions = _collect(bus, "subagent.complete")
        registry = _registry(config, bus)
        task_id = await registry.spawn(make_invocation())
        task = registry.get(task_id)
        await _until(lambda: task.result.messages)

        assert await registry.interrupt_all() == 1
        assert task.status == "failed"
        assert task.result.stop_reason == "interrupted"
        assert task.result.error_message == "Subagent was interrupted"

        await registry.wait(task_id)
        assert task.status == "failed"
        assert task.result.exit_code != 0
        assert completions == []

    @pytest.mark.asyncio
    async def test_clear_forgets_everything(self, fake_agent):
        config = fake_agent({"default": [{"sleep": 30}]})
        registry = _registry(config)
        await registry.spawn(make_invocation())
        await registry.spawn(make_invocation(name="reviewer"))
        assert registry.running_count == 2

        await asyncio.wait_for(registry.clear(), timeout=10)
        assert registry.tasks() == []
        assert registry.status() == "No background subagents running."

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_finished_entries(self, fake_agent):
        config = fake_agent({"default": [emit(assistant_frame("ok"))]})
        registry = _registry(config)
        done = await registry.wait(await registry.spawn(make_invocation()))

        assert registry.cleanup_completed(now=done.completed_at + 10, max_age=60) == 0
        assert registry.get(done.id) is not None
        assert registry.cleanup_completed(now=done.completed_at + 61, max_age=60) == 1
        assert registry.get(done.id) is None

    @pytest.mark.asyncio
    async def test_cleanup_keeps_running_entries(self, fake_agent):
        config = fake_agent({"default": [{"sleep": 30}]})
        registry = _registry(config)
        task_id = await registry.spawn(make_invocation())
        assert registry.cleanup_completed(now=10**12, max_age=0) == 0
        assert registry.get(task_id) is not None
        await registry.clear()


class TestForeground:
    def test_tracking_and_snapshot_events(self, config):
        bus = EventBus()
        snapshots = _collect(bus, "subagents.snapshot")
        registry = _registry(config, bus)

        entry_id = registry.track_foreground("writer", "summarize X")
        assert entry_id.startswith("fg-")
        snap = registry.snapshot()
        assert [e["agent"] for e in snap["foreground"]] == ["writer"]
        assert snap["background"] == []

        registry.complete_foreground(entry_id)
        registry.complete_foreground(entry_id)
        assert registry.snapshot()["foreground"] == []
        assert len(snapshots) == 2
        assert all(isinstance(e, SubagentsSnapshotEvent) for e in snapshots)
