"""
Background Task Registry — detached subagent runs and their status.

The registry owns every background run from spawn to completion.  Each entry
transitions ``running → completed | failed`` exactly once, inside a done
callback that does not suspend, so readers never observe a half-updated
entry.  Finished entries are compacted to a bounded message tail and dropped
by explicit cleanup once they are old enough.

Foreground runs are tracked here too while they are in flight, so a status
widget can show everything that is currently working.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from delegate.config import EngineConfig
from delegate.events import EventBus, SubagentCompleteEvent, SubagentsSnapshotEvent
from delegate.formatting import final_output_index, format_duration, get_final_output, preview_lines
from delegate.orchestration.models import BackgroundTask, ForegroundEntry, SubagentInvocation
from delegate.orchestration.runners import SubprocessRunner

logger = structlog.get_logger(__name__)


class HistoryCompaction(BaseModel):
    original_message_count: int
    retained_message_count: int
    final_output: str = ""
    messages: list[dict[str, Any]] = Field(default_factory=list)


def compact_background_messages(messages: list[dict[str, Any]], tail: int) -> HistoryCompaction:
    """Keep the last *tail* messages plus the message holding the final output.

    When the final-output assistant message falls outside the tail it is
    appended after it, so the retained history always ends with the answer.
    """
    tail = max(1, tail)
    final_output = get_final_output(messages)
    start = max(0, len(messages) - tail)
    retained = list(messages[start:])
    index = final_output_index(messages)
    if index is not None and index < start:
        retained.append(messages[index])
    return HistoryCompaction(
        original_message_count=len(messages),
        retained_message_count=len(retained),
        final_output=final_output,
        messages=retained,
    )


def apply_background_result_retention(task: BackgroundTask, config: EngineConfig) -> None:
    messages = task.result.messages
    if config.keep_full_history:
        task.history_compacted = False
        task.history_original_message_count = len(messages)
        task.history_retained_message_count = len(messages)
        task.retained_final_output = get_final_output(messages)
        return

    compacted = compact_background_messages(messages, config.history_tail_messages)
    task.result.messages = compacted.messages
    task.history_compacted = compacted.retained_message_count < compacted.original_message_count
    task.history_original_message_count = compacted.original_message_count
    task.history_retained_message_count = compacted.retained_message_count
    task.retained_final_output = compacted.final_output


class BackgroundTaskRegistry:
    """Session-scoped table of background (and in-flight foreground) subagents."""

    def __init__(
        self,
        config: EngineConfig,
        runner: SubprocessRunner,
        events: Optional[EventBus] = None,
    ):
        self._config = config
        self._runner = runner
        self._events = events
        self._tasks: dict[str, BackgroundTask] = {}
        self._handles: dict[str, asyncio.Task] = {}
        self._foreground: dict[str, ForegroundEntry] = {}

    @property
    def running_count(self) -> int:
        return sum(1 for t in self._tasks.values() if t.status == "running")

    def get(self, task_id: str) -> Optional[BackgroundTask]:
        return self._tasks.get(task_id)

    def tasks(self) -> list[BackgroundTask]:
        return list(self._tasks.values())

    # ------------------------------------------------------------------
    # Spawn / completion
    # ------------------------------------------------------------------

    async def spawn(self, invocation: SubagentInvocation) -> str:
        """Start a detached run and return its task id immediately."""
        observer = self._events.publish if self._events is not None else None
        run = await self._runner.prepare(invocation, observer=observer, background=True)
        task = BackgroundTask(
            agent=invocation.agent.name,
            task=invocation.task,
            result=run.result,
            run=run,
        )
        self._tasks[task.id] = task

        handle = asyncio.create_task(run.execute(), name=f"subagent-{task.id}")
        self._handles[task.id] = handle
        handle.add_done_callback(lambda h, task_id=task.id: self._on_done(task_id, h))

        logger.info(
            "registry.spawn",
            task_id=task.id,
            agent=task.agent,
            model=invocation.model_id,
        )
        self._publish_snapshot()
        return task.id

    def _on_done(self, task_id: str, handle: asyncio.Task) -> None:
        self._handles.pop(task_id, None)
        task = self._tasks.get(task_id)
        if task is None:
            return

        result = task.result
        if handle.cancelled():
            result.stop_reason = result.stop_reason or "aborted"
            result.error_message = result.error_message or "Subagent was cancelled"
            result.finalize(1)
        elif handle.exception() is not None:
            exc = handle.exception()
            logger.error("registry.run_error", task_id=task_id, error=str(exc))
            result.error_message = result.error_message or str(exc)
            result.stop_reason = result.stop_reason or "error"
            result.finalize(1)

        transitioned = task.mark_finished("completed" if result.exit_code == 0 else "failed")
        apply_background_result_retention(task, self._config)

        logger.info(
            "registry.complete",
            task_id=task_id,
            agent=task.agent,
            status=task.status,
            exit_code=result.exit_code,
            compacted=task.history_compacted,
        )
        self._publish_snapshot()
        if transitioned and self._events is not None:
            self._events.publish(SubagentCompleteEvent(
                task_id=task_id,
                agent=task.agent,
                status=task.status,
                summary=f"Agent {task.agent} {task.status} ({format_duration(task.elapsed())})",
                preview=preview_lines(self.output(task)),
            ))

    async def wait(self, task_id: str) -> Optional[BackgroundTask]:
        """Wait for a background run to finish and return its entry."""
        handle = self._handles.get(task_id)
        if handle is not None:
            try:
                await asyncio.shield(handle)
            except (Exception, asyncio.CancelledError):
                pass
            # Yield so the done-callback can run
            await asyncio.sleep(0)
        return self._tasks.get(task_id)

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    @staticmethod
    def output(task: BackgroundTask) -> str:
        if task.retained_final_output:
            return task.retained_final_output
        return get_final_output(task.result.messages)

    def status(self, task_id: Optional[str] = None) -> str:
        """Human-readable status: one task in detail, or every task in brief."""
        if task_id is not None:
            task = self._tasks.get(task_id)
            if task is None:
                return f"Task not found: {task_id}"
            return self._format_detail(task)

        if not self._tasks:
            return "No background subagents running."
        lines = [f"**Background Subagents ({len(self._tasks)}):**", ""]
        for task in self._tasks.values():
            lines.append(
                f"- `{task.id}` {task.agent} [{task.status}] "
                f"{format_duration(task.elapsed())}: {task.task[:60]}"
            )
        return "\n".join(lines)

    def _format_detail(self, task: BackgroundTask) -> str:
        output = self.output(task) or "(no output yet)"
        lines = [
            f"**Task:** {task.id}",
            f"**Agent:** {task.agent}",
            f"**Status:** {task.status}",
            f"**Duration:** {format_duration(task.elapsed())}",
        ]
        if task.history_compacted:
            lines.append(
                f"**History:** compacted ({task.history_retained_message_count}/"
                f"{task.history_original_message_count} messages retained)"
            )
        if task.result.error_message and task.status == "failed":
            lines.append(f"**Error:** {task.result.error_message}")
        lines += ["", f"**Task:** {task.task}", "", "**Output:**", output]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Foreground tracking
    # ------------------------------------------------------------------

    def track_foreground(self, agent: str, task: str) -> str:
        entry = ForegroundEntry(agent=agent, task=task)
        self._foreground[entry.id] = entry
        self._publish_snapshot()
        return entry.id

    def complete_foreground(self, entry_id: str) -> None:
        if self._foreground.pop(entry_id, None) is not None:
            self._publish_snapshot()

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "foreground": [entry.model_dump() for entry in self._foreground.values()],
            "background": [
                task.model_dump(include={"id", "agent", "task", "status", "started_at", "completed_at"})
                for task in self._tasks.values()
            ],
        }

    def _publish_snapshot(self) -> None:
        if self._events is None:
            return
        self._events.publish(SubagentsSnapshotEvent(**self.snapshot()))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def interrupt_all(self) -> int:
        """Fail every running task and terminate its process.  Returns how many."""
        running = [t for t in self._tasks.values() if t.status == "running"]
        for task in running:
            if task.run is not None:
                task.run.interrupt()
            task.mark_finished("failed")
            logger.info("registry.interrupt", task_id=task.id, agent=task.agent)

        grace = self._config.interrupt_grace_seconds
        await asyncio.gather(
            *(t.run.terminate(grace) for t in running if t.run is not None),
            return_exceptions=True,
        )
        if running:
            self._publish_snapshot()
        return len(running)

    def cleanup_completed(self, now: Optional[float] = None, max_age: Optional[float] = None) -> int:
        """Drop finished entries older than *max_age* seconds.  Running ones stay."""
        now = time.time() if now is None else now
        max_age = self._config.completed_retention_seconds if max_age is None else max_age
        stale = [
            task_id
            for task_id, task in self._tasks.items()
            if task.status != "running"
            and task.completed_at is not None
            and now - task.completed_at > max_age
        ]
        for task_id in stale:
            del self._tasks[task_id]
        if stale:
            logger.debug("registry.cleanup", removed=len(stale))
            self._publish_snapshot()
        return len(stale)

    async def clear(self) -> None:
        """Session teardown: interrupt running work and forget everything."""
        await self.interrupt_all()
        for handle in list(self._handles.values()):
            handle.cancel()
        if self._handles:
            await asyncio.gather(*self._handles.values(), return_exceptions=True)
        self._tasks.clear()
        self._handles.clear()
        self._foreground.clear()
        self._publish_snapshot()
