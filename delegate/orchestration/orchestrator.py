"""
Orchestrator — The Mode Controller.

Single entry point for delegating work to subagents.  A dispatch request
selects exactly one of three shapes:

  - single     one agent, one task (optionally detached into the registry)
  - parallel   independent tasks, chunked and run through the worker pool,
               followed by one stall-rescue pass
  - centipede  a strictly sequential pipeline where each step may consume
               the previous step's output via ``{previous}``

One cancellation event is threaded into every in-flight run.  Streaming
progress is funnelled through a throttle so callers see at most a couple of
updates per second, and a slot whose item has finished is never overwritten
by a stale snapshot.
"""

from __future__ import annotations

import asyncio
import os
import time
from typing import Callable, Optional

import structlog

from delegate.config import EngineConfig
from delegate.events import DelegateEvent, EventBus, SubagentProgressEvent
from delegate.formatting import aggregate_usage, format_usage_stats
from delegate.orchestration.collaborators import (
    AgentResolver,
    FileReferenceExpander,
    ModelRouter,
)
from delegate.orchestration.fallback import ModelFallbackRunner, routing_failure_result
from delegate.orchestration.models import (
    DispatchRequest,
    DispatchResult,
    RoutingHints,
    SingleResult,
    SubagentInvocation,
    WorkItem,
)
from delegate.orchestration.pool import map_with_concurrency_limit
from delegate.orchestration.registry import BackgroundTaskRegistry
from delegate.orchestration.runners import (
    ENV_ALLOWED_AGENT_TYPES,
    ENV_IS_SUBAGENT,
    SubagentRunnerBase,
    SubprocessRunner,
)
from delegate.orchestration.stall import (
    compile_stall_patterns,
    format_batch_report,
    rescue_stalled,
    summarize_batch,
)

logger = structlog.get_logger(__name__)

PREVIOUS_PLACEHOLDER = "{previous}"

UpdateCallback = Callable[[list[SingleResult]], None]


class DelegateError(RuntimeError):
    """Base class for caller-facing dispatch errors."""


class DispatchRejected(DelegateError):
    """The request is not allowed from this process."""


class UpdateThrottle:
    """Rate-limit progress callbacks; the first and forced updates always pass."""

    def __init__(
        self,
        interval: float,
        emit: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._interval = interval
        self._emit = emit
        self._clock = clock
        self._last: Optional[float] = None

    def offer(self, force: bool = False) -> bool:
        now = self._clock()
        if not force and self._last is not None and now - self._last < self._interval:
            return False
        self._last = now
        try:
            self._emit()
        except Exception:
            logger.debug("orchestrator.update_callback_failed", exc_info=True)
        return True


class _ProgressBoard:
    """Per-dispatch view of every slot, fed by run observers."""

    def __init__(
        self,
        slots: list[SingleResult],
        interval: float,
        on_update: Optional[UpdateCallback],
        events: Optional[EventBus],
    ):
        self.slots = slots
        self._finished: set[int] = set()
        self._events = events
        self._on_update = on_update
        self._throttle = UpdateThrottle(interval, self._emit)

    def _emit(self) -> None:
        if self._on_update is not None:
            self._on_update([slot.model_copy(deep=True) for slot in self.slots])

    def observer(self, index: int) -> Callable[[DelegateEvent], None]:
        def observe(event: DelegateEvent) -> None:
            if self._events is not None:
                self._events.publish(event)
            if isinstance(event, SubagentProgressEvent) and index not in self._finished:
                self.slots[index] = event.result
                self._throttle.offer(force=event.force)

        return observe

    def finish(self, index: int, result: SingleResult) -> None:
        self._finished.add(index)
        self.slots[index] = result
        self._throttle.offer(force=True)


def _placeholder(item: WorkItem, step: Optional[int] = None) -> SingleResult:
    return SingleResult(agent=item.agent, task=item.task, step=step)


def _preview(text: str, limit: int = 100) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


class Orchestrator:
    """Composes routing, fallback, pooling, stall rescue and the registry."""

    def __init__(
        self,
        config: EngineConfig,
        resolver: AgentResolver,
        router: ModelRouter,
        expander: Optional[FileReferenceExpander] = None,
        runner: Optional[SubagentRunnerBase] = None,
        registry: Optional[BackgroundTaskRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._config = config
        self._resolver = resolver
        self._event_bus = event_bus
        subprocess_runner = SubprocessRunner(config, expander)
        self._runner = runner or subprocess_runner
        self._fallback = ModelFallbackRunner(config, self._runner, resolver, router)
        self._registry = registry or BackgroundTaskRegistry(config, subprocess_runner, event_bus)
        self._stall_patterns = compile_stall_patterns(config.stall_patterns)

        logger.info(
            "orchestrator.initialized",
            max_parallel=config.max_parallel_tasks,
            max_concurrency=config.max_concurrency,
        )

    @property
    def registry(self) -> BackgroundTaskRegistry:
        return self._registry

    @property
    def fallback(self) -> ModelFallbackRunner:
        return self._fallback

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        request: DispatchRequest,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> DispatchResult:
        """Validate the request, pick the mode and run it."""
        try:
            self._check_allowed(request)
        except DispatchRejected as exc:
            logger.warning("orchestrator.rejected", reason=str(exc))
            return DispatchResult(mode="none", text=str(exc), is_error=True)

        has_single = bool(request.agent and request.task)
        has_parallel = bool(request.tasks)
        has_centipede = bool(request.centipede)
        if int(has_single) + int(has_parallel) + int(has_centipede) != 1:
            known = ", ".join(self._resolver.known_agents()) or "none"
            return DispatchResult(
                mode="none",
                text=(
                    "Invalid parameters. Provide exactly one mode: agent+task, tasks, "
                    f"or centipede.\nAvailable agents: {known}"
                ),
                is_error=True,
            )

        cancel_event = cancel_event or asyncio.Event()
        if has_single:
            item = WorkItem(agent=request.agent, task=request.task, cwd=request.cwd, model=request.model)
            return await self.run_single(
                item,
                background=request.background,
                session_file=request.session_file,
                parent_model_id=request.parent_model_id,
                hints=request.hints,
                cancel_event=cancel_event,
                on_update=on_update,
            )
        if has_parallel:
            items = [self._with_defaults(item, request) for item in request.tasks]
            return await self.run_parallel(
                items,
                background=request.background,
                session_file=request.session_file,
                parent_model_id=request.parent_model_id,
                hints=request.hints,
                cancel_event=cancel_event,
                on_update=on_update,
            )
        items = [self._with_defaults(item, request) for item in request.centipede]
        return await self.run_centipede(
            items,
            session_file=request.session_file,
            parent_model_id=request.parent_model_id,
            hints=request.hints,
            cancel_event=cancel_event,
            on_update=on_update,
        )

    @staticmethod
    def _with_defaults(item: WorkItem, request: DispatchRequest) -> WorkItem:
        return WorkItem(
            agent=item.agent,
            task=item.task,
            cwd=item.cwd or request.cwd,
            model=item.model or request.model,
        )

    def _check_allowed(self, request: DispatchRequest) -> None:
        allowed = [a for a in os.environ.get(ENV_ALLOWED_AGENT_TYPES, "").split(",") if a]
        if os.environ.get(ENV_IS_SUBAGENT) == "1" and not allowed:
            raise DispatchRejected("Subagents cannot spawn further subagents.")
        if not allowed:
            return

        requested: list[str] = []
        if request.agent:
            requested.append(request.agent)
        requested += [item.agent for item in request.tasks or []]
        requested += [item.agent for item in request.centipede or []]
        blocked = [name for name in requested if name not in allowed]
        if blocked:
            raise DispatchRejected(
                f"Agent type restriction: cannot spawn {', '.join(blocked)}. "
                f"Allowed: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # Single
    # ------------------------------------------------------------------

    async def run_single(
        self,
        item: WorkItem,
        *,
        background: bool = False,
        session_file: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> DispatchResult:
        if background:
            task_id, failure = await self._spawn_background(
                item, session_file=session_file, parent_model_id=parent_model_id, hints=hints
            )
            if failure is not None:
                return DispatchResult(
                    mode="single",
                    text=f"Agent failed: {failure.error_text()}",
                    results=[failure],
                    is_error=True,
                )
            return DispatchResult(
                mode="single",
                text=(
                    f"Started background subagent {item.agent} ({task_id}). "
                    "Use the status query to check on it."
                ),
                background_ids=[task_id],
            )

        board = _ProgressBoard(
            [_placeholder(item)], self._config.update_throttle_seconds, on_update, self._event_bus
        )
        result = await self._run_tracked(
            item,
            observer=board.observer(0),
            session_file=session_file,
            parent_model_id=parent_model_id,
            hints=hints,
            cancel_event=cancel_event,
        )
        board.finish(0, result)

        if result.is_error:
            reason = result.stop_reason or "failed"
            return DispatchResult(
                mode="single",
                text=f"Agent {reason}: {result.error_text()}",
                results=[result],
                is_error=True,
            )
        return DispatchResult(
            mode="single",
            text=result.final_output or "(no output)",
            results=[result],
        )

    # ------------------------------------------------------------------
    # Parallel
    # ------------------------------------------------------------------

    async def run_parallel(
        self,
        items: list[WorkItem],
        *,
        background: bool = False,
        session_file: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> DispatchResult:
        if background:
            return await self._run_parallel_background(
                items, session_file=session_file, parent_model_id=parent_model_id, hints=hints
            )

        cancel_event = cancel_event or asyncio.Event()
        board = _ProgressBoard(
            [_placeholder(item) for item in items],
            self._config.update_throttle_seconds,
            on_update,
            self._event_bus,
        )
        chunk_size = self._config.max_parallel_tasks

        async def run_item(index: int, _: int) -> SingleResult:
            result = await self._run_tracked(
                items[index],
                observer=board.observer(index),
                session_file=session_file,
                parent_model_id=parent_model_id,
                hints=hints,
                cancel_event=cancel_event,
            )
            board.finish(index, result)
            return result

        results: list[SingleResult] = []
        for start in range(0, len(items), chunk_size):
            indices = list(range(start, min(start + chunk_size, len(items))))
            logger.info(
                "orchestrator.parallel_chunk",
                start=start,
                size=len(indices),
                concurrency=self._config.max_concurrency,
            )
            results += await map_with_concurrency_limit(indices, self._config.max_concurrency, run_item)

        rescued: list[int] = []
        if not cancel_event.is_set():
            results, rescued = await rescue_stalled(
                items,
                results,
                self._fallback,
                patterns=self._stall_patterns,
                concurrency=self._config.max_concurrency,
                parent_model_id=parent_model_id,
                session_file=session_file,
                hints=hints,
                cancel_event=cancel_event,
            )
            for index in rescued:
                board.finish(index, results[index])

        report = summarize_batch(results, self._stall_patterns, rescued)
        succeeded = sum(1 for r in results if not r.is_error)
        lines = [f"Parallel: {succeeded}/{len(results)} succeeded"]
        for result in results:
            status = "failed" if result.is_error else "completed"
            body = result.error_text() if result.is_error else result.final_output
            lines.append(f"[{result.agent}] {status}: {_preview(body or '(no output)')}")
        usage = format_usage_stats(aggregate_usage(r.usage for r in results))
        if usage:
            lines.append(f"Total: {usage}")
        lines.append(format_batch_report(report))

        logger.info(
            "orchestrator.parallel_done",
            total=report.total,
            completed=report.completed,
            failed=report.failed,
            stalled=report.stalled,
            recovered=report.recovered,
        )
        return DispatchResult(
            mode="parallel",
            text="\n".join(lines),
            results=results,
            is_error=report.is_error,
            report=report,
        )

    async def _run_parallel_background(
        self,
        items: list[WorkItem],
        *,
        session_file: Optional[str],
        parent_model_id: Optional[str],
        hints: Optional[RoutingHints],
    ) -> DispatchResult:
        task_ids: list[str] = []
        failures: list[SingleResult] = []
        lines: list[str] = []
        for item in items:
            task_id, failure = await self._spawn_background(
                item, session_file=session_file, parent_model_id=parent_model_id, hints=hints
            )
            if failure is not None:
                failures.append(failure)
                lines.append(f"[{item.agent}] routing failed: {failure.error_text()}")
            else:
                task_ids.append(task_id)
                lines.append(f"[{item.agent}] started: {task_id}")
        header = f"Started {len(task_ids)}/{len(items)} background subagents."
        return DispatchResult(
            mode="parallel",
            text="\n".join([header, *lines]),
            results=failures,
            is_error=not task_ids,
            background_ids=task_ids,
        )

    # ------------------------------------------------------------------
    # Centipede
    # ------------------------------------------------------------------

    async def run_centipede(
        self,
        items: list[WorkItem],
        *,
        session_file: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> DispatchResult:
        board = _ProgressBoard(
            [_placeholder(item, step=i + 1) for i, item in enumerate(items)],
            self._config.update_throttle_seconds,
            on_update,
            self._event_bus,
        )
        results: list[SingleResult] = []
        previous = ""

        for index, item in enumerate(items):
            step_item = WorkItem(
                agent=item.agent,
                task=item.task.replace(PREVIOUS_PLACEHOLDER, previous),
                cwd=item.cwd,
                model=item.model,
            )
            result = await self._run_tracked(
                step_item,
                observer=board.observer(index),
                session_file=session_file,
                parent_model_id=parent_model_id,
                hints=hints,
                step=index + 1,
                cancel_event=cancel_event,
            )
            board.finish(index, result)
            results.append(result)

            if result.is_error:
                logger.warning(
                    "orchestrator.centipede_stopped",
                    step=index + 1,
                    agent=item.agent,
                    exit_code=result.exit_code,
                )
                return DispatchResult(
                    mode="centipede",
                    text=(
                        f"Centipede stopped at step {index + 1} ({item.agent}): "
                        f"{result.error_text()}"
                    ),
                    results=results,
                    is_error=True,
                )
            previous = result.final_output

        return DispatchResult(
            mode="centipede",
            text=previous or "(no output)",
            results=results,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run_tracked(
        self,
        item: WorkItem,
        *,
        observer: Callable[[DelegateEvent], None],
        session_file: Optional[str],
        parent_model_id: Optional[str],
        hints: Optional[RoutingHints],
        cancel_event: Optional[asyncio.Event],
        step: Optional[int] = None,
    ) -> SingleResult:
        entry_id = self._registry.track_foreground(item.agent, item.task)
        try:
            return await self._fallback.run(
                item,
                session_file=session_file,
                parent_model_id=parent_model_id,
                hints=hints,
                step=step,
                cancel_event=cancel_event,
                observer=observer,
            )
        finally:
            self._registry.complete_foreground(entry_id)

    async def _spawn_background(
        self,
        item: WorkItem,
        *,
        session_file: Optional[str],
        parent_model_id: Optional[str],
        hints: Optional[RoutingHints],
    ) -> tuple[Optional[str], Optional[SingleResult]]:
        resolved, decision = await self._fallback.route(
            item, parent_model_id=parent_model_id, hints=hints
        )
        if not decision.ok:
            return None, routing_failure_result(item, resolved, decision)
        invocation = SubagentInvocation(
            agent=resolved.agent,
            agent_source=resolved.resolution,
            task=item.task,
            model_id=decision.model_id,
            cwd=item.cwd,
            session_file=session_file,
        )
        return await self._registry.spawn(invocation), None

    async def shutdown(self) -> None:
        """Interrupt background work and clear the registry."""
        logger.info("orchestrator.shutting_down", running=self._registry.running_count)
        await self._registry.clear()
        if self._event_bus is not None:
            await self._event_bus.drain()
        logger.info("orchestrator.shutdown_complete")
