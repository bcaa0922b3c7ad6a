"""
Stall Detector & Rescue Retry.

After a parallel batch finishes, each result is classified.  Results that
stalled get exactly one rescue attempt with a narrowed directive and a model
chosen by preference; whatever the rescue produces replaces the original slot.
"""

from __future__ import annotations

import asyncio
import re
from typing import Literal, Optional

import structlog

from delegate.orchestration.fallback import ModelFallbackRunner
from delegate.orchestration.models import BatchReport, RoutingHints, SingleResult, WorkItem
from delegate.orchestration.pool import map_with_concurrency_limit

logger = structlog.get_logger(__name__)

Classification = Literal["running", "completed", "failed", "stalled"]
RescueStrategy = Literal["explicit", "previous-attempt", "parent-inherited", "auto-routed"]

RESCUE_DIRECTIVE = (
    "\n\n[Rescue retry] A previous attempt at this task stalled without making "
    "progress. Work non-interactively: do not wait for confirmations or user "
    "input, narrow the scope to the essential deliverable, and return your best "
    "result as soon as you have one."
)

STALL_GUIDANCE = (
    "Automatic recovery was attempted once and did not succeed. "
    "Suggested next steps: narrow the task scope further, avoid steps that "
    "require interactive confirmation, or pin a different model for the "
    "stalled agents."
)


def compile_stall_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error:
            logger.warning("stall.bad_pattern", pattern=pattern)
            compiled.append(re.compile(re.escape(pattern), re.IGNORECASE))
    return compiled


def classify_result(result: SingleResult, patterns: list[re.Pattern[str]]) -> Classification:
    if result.is_running:
        return "running"
    if result.stop_reason == "stalled":
        return "stalled"
    if not result.is_error:
        return "completed"
    text = f"{result.error_message or ''}\n{result.stderr}"
    if any(pattern.search(text) for pattern in patterns):
        return "stalled"
    return "failed"


def choose_rescue_model(
    item: WorkItem,
    previous: SingleResult,
    parent_model_id: Optional[str],
) -> tuple[Optional[str], RescueStrategy]:
    if item.model:
        return item.model, "explicit"
    if previous.model:
        return previous.model, "previous-attempt"
    if parent_model_id:
        return parent_model_id, "parent-inherited"
    return None, "auto-routed"


async def rescue_stalled(
    items: list[WorkItem],
    results: list[SingleResult],
    fallback: ModelFallbackRunner,
    *,
    patterns: list[re.Pattern[str]],
    concurrency: int,
    parent_model_id: Optional[str] = None,
    session_file: Optional[str] = None,
    hints: Optional[RoutingHints] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> tuple[list[SingleResult], list[int]]:
    """Retry every stalled slot once.  Returns the updated results and rescued indices."""
    stalled = [i for i, r in enumerate(results) if classify_result(r, patterns) == "stalled"]
    if not stalled:
        return results, []

    logger.info("stall.rescue_start", count=len(stalled), indices=stalled)
    updated = list(results)

    async def rescue(index: int, _: int) -> SingleResult:
        item = items[index]
        model, strategy = choose_rescue_model(item, results[index], parent_model_id)
        retry_item = WorkItem(
            agent=item.agent,
            task=item.task + RESCUE_DIRECTIVE,
            cwd=item.cwd,
            model=model,
        )
        result = await fallback.run(
            retry_item,
            session_file=session_file,
            parent_model_id=parent_model_id,
            hints=hints,
            cancel_event=cancel_event,
        )
        # Report the original task, not the rescue wording.
        result.task = item.task
        note = f"[rescue retry: strategy={strategy} model={model or 'auto'}]\n"
        result.stderr = note + result.stderr
        logger.info(
            "stall.rescue_done",
            index=index,
            agent=item.agent,
            strategy=strategy,
            exit_code=result.exit_code,
        )
        return result

    rescued = await map_with_concurrency_limit(stalled, concurrency, rescue)
    for index, result in zip(stalled, rescued):
        updated[index] = result
    return updated, stalled


def summarize_batch(
    results: list[SingleResult],
    patterns: list[re.Pattern[str]],
    rescued: Optional[list[int]] = None,
) -> BatchReport:
    rescued = rescued or []
    report = BatchReport(total=len(results), rescued=len(rescued))
    for index, result in enumerate(results):
        status = classify_result(result, patterns)
        setattr(report, status, getattr(report, status) + 1)
        if status == "completed" and index in rescued:
            report.recovered += 1
    return report


def format_batch_report(report: BatchReport) -> str:
    line = (
        f"completed {report.completed}, failed {report.failed}, "
        f"stalled {report.stalled}"
    )
    if report.running:
        line += f", running {report.running}"
    if report.rescued:
        line += f" (rescue retries: {report.rescued}, recovered: {report.recovered})"
    if report.stalled:
        line += "\n" + STALL_GUIDANCE
    return line
