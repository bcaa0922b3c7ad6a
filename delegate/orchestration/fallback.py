"""
Model Fallback Controller — retry a work item on alternative models.

Routing happens once per item.  The primary model is tried first; if the
attempt fails for a *model-level* reason (quota, rate limit, auth, capacity)
the next unused fallback is tried.  Task-level failures and aborts are
returned as-is.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from delegate.config import EngineConfig
from delegate.orchestration.collaborators import AgentResolver, ModelRouter
from delegate.orchestration.models import (
    ResolvedAgent,
    RoutingFailure,
    RoutingHints,
    RoutingSuccess,
    SingleResult,
    SubagentInvocation,
    WorkItem,
)
from delegate.orchestration.runners import Observer, SubagentRunnerBase

logger = structlog.get_logger(__name__)


def is_model_level_error(result: SingleResult, patterns: list[str]) -> bool:
    """True when a failed result's text names a provider/model problem."""
    failed = result.exit_code != 0 or result.stop_reason == "error"
    if not failed:
        return False
    haystack = f"{result.stderr}\n{result.error_message or ''}".lower()
    return any(pattern in haystack for pattern in patterns)


def routing_failure_result(
    item: WorkItem,
    resolved: ResolvedAgent,
    decision: RoutingFailure,
    step: Optional[int] = None,
) -> SingleResult:
    result = SingleResult(
        agent=resolved.agent.name,
        agent_source=resolved.resolution,
        task=item.task,
        stderr=decision.error,
        error_message=decision.error,
        stop_reason="error",
        step=step,
    )
    result.finalize(1)
    return result


class ModelFallbackRunner:
    """Resolve, route and run a work item, walking the fallback chain as needed."""

    def __init__(
        self,
        config: EngineConfig,
        runner: SubagentRunnerBase,
        resolver: AgentResolver,
        router: ModelRouter,
    ):
        self._config = config
        self._runner = runner
        self._resolver = resolver
        self._router = router

    @property
    def resolver(self) -> AgentResolver:
        return self._resolver

    async def route(
        self,
        item: WorkItem,
        *,
        parent_model_id: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
    ) -> tuple[ResolvedAgent, RoutingSuccess | RoutingFailure]:
        resolved = self._resolver.resolve(item.agent)
        decision = await self._router.route(
            item.task,
            model_override=item.model,
            agent_model=resolved.agent.model,
            parent_model_id=parent_model_id,
            agent_description=resolved.agent.description,
            hints=hints,
        )
        if decision.ok:
            logger.debug(
                "fallback.routed",
                agent=resolved.agent.name,
                model=decision.model_id,
                fallbacks=decision.fallbacks,
                reason=decision.reason,
            )
        else:
            logger.warning("fallback.routing_failed", agent=resolved.agent.name, error=decision.error)
        return resolved, decision

    async def run(
        self,
        item: WorkItem,
        *,
        session_file: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
        step: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[Observer] = None,
    ) -> SingleResult:
        resolved, decision = await self.route(item, parent_model_id=parent_model_id, hints=hints)
        if not decision.ok:
            return routing_failure_result(item, resolved, decision, step)

        attempted: set[str] = set()
        result: Optional[SingleResult] = None
        previous: Optional[str] = None

        for model_id in [decision.model_id, *decision.fallbacks]:
            if model_id in attempted:
                continue
            attempted.add(model_id)
            if previous is not None:
                logger.warning(
                    "fallback.retry",
                    agent=resolved.agent.name,
                    from_model=previous,
                    to_model=model_id,
                )

            invocation = SubagentInvocation(
                agent=resolved.agent,
                agent_source=resolved.resolution,
                task=item.task,
                model_id=model_id,
                cwd=item.cwd,
                session_file=session_file,
                step=step,
            )
            result = await self._runner.run(invocation, cancel_event=cancel_event, observer=observer)

            if result.stop_reason == "aborted":
                break
            if not is_model_level_error(result, self._config.model_error_patterns):
                break
            previous = model_id

        assert result is not None
        return result
