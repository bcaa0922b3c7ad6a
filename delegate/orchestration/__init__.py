"""
Subagent Orchestration — dispatch, supervision and recovery of worker processes.

Each subagent is a separate agent CLI process speaking newline-delimited JSON
on stdout.  The orchestrator picks a dispatch shape, the fallback runner
walks alternative models when a provider refuses, and the stall detector
gives stuck parallel workers one more chance.
"""

from __future__ import annotations

from delegate.orchestration.models import (
    AgentSpec,
    BackgroundTask,
    DispatchRequest,
    DispatchResult,
    SingleResult,
    UsageStats,
    WorkItem,
)

__all__ = [
    "AgentSpec",
    "BackgroundTask",
    "DispatchRequest",
    "DispatchResult",
    "SingleResult",
    "UsageStats",
    "WorkItem",
]
