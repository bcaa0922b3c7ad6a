"""
Liveness watchdog for foreground subagent runs.

A worker that never emits a frame after launch, or goes quiet mid-run, is
usually blocked on an interactive prompt it cannot answer in JSON mode.  The
watchdog tracks heartbeats (any recognised protocol frame), classifies the run
as stalled once a phase threshold is exceeded, and terminates the process.
"""

from __future__ import annotations

import asyncio
import time
from typing import Literal, Optional

import structlog
from pydantic import BaseModel

from delegate.orchestration.models import SingleResult

logger = structlog.get_logger(__name__)

StallPhase = Literal["startup", "inactivity"]

STALL_HINT = (
    "the worker is likely waiting on an interactive confirmation path "
    "unavailable in subagent JSON mode"
)


class HeartbeatState(BaseModel):
    started_at: float
    last_heartbeat_at: Optional[float] = None
    heartbeats: int = 0


class WatchdogStatus(BaseModel):
    stalled: bool = False
    phase: Optional[StallPhase] = None
    idle_seconds: float = 0.0
    timeout_seconds: float = 0.0


def create_heartbeat_state(now: Optional[float] = None) -> HeartbeatState:
    return HeartbeatState(started_at=time.monotonic() if now is None else now)


def record_heartbeat(state: HeartbeatState, now: Optional[float] = None) -> None:
    state.last_heartbeat_at = time.monotonic() if now is None else now
    state.heartbeats += 1


def evaluate_watchdog(
    state: HeartbeatState,
    now: float,
    startup_timeout: float,
    inactivity_timeout: float,
) -> WatchdogStatus:
    """Classify liveness.  A timeout of 0 disables that phase."""
    if state.last_heartbeat_at is None:
        idle = now - state.started_at
        if startup_timeout > 0 and idle > startup_timeout:
            return WatchdogStatus(
                stalled=True, phase="startup", idle_seconds=idle, timeout_seconds=startup_timeout
            )
        return WatchdogStatus(idle_seconds=idle)

    idle = now - state.last_heartbeat_at
    if inactivity_timeout > 0 and idle > inactivity_timeout:
        return WatchdogStatus(
            stalled=True, phase="inactivity", idle_seconds=idle, timeout_seconds=inactivity_timeout
        )
    return WatchdogStatus(idle_seconds=idle)


def apply_stalled_classification(result: SingleResult, status: WatchdogStatus) -> None:
    """Mark a result as stalled, keeping anything already said in stderr."""
    if status.phase == "startup":
        detail = f"no output within {status.timeout_seconds:.0f}s of launch"
    else:
        detail = f"no activity for {status.idle_seconds:.0f}s"
    result.stop_reason = "stalled"
    result.error_message = f"Subagent stalled during {status.phase} ({detail}); {STALL_HINT}."


async def terminate_process_with_grace(
    proc: asyncio.subprocess.Process,
    grace_seconds: float,
) -> int:
    """SIGTERM, then SIGKILL after *grace_seconds*.  Returns the final return code."""
    if proc.returncode is not None:
        return proc.returncode
    try:
        proc.terminate()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("subagent.kill_escalated", pid=proc.pid, grace=grace_seconds)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
    return proc.returncode if proc.returncode is not None else 1
