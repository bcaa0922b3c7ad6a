"""
Orchestration Data Models — The Language of Delegation.

These Pydantic models define the contract between the dispatcher and the
subagent processes it launches.  A WorkItem describes *what* to do, a
SingleResult describes *what happened*, and a BackgroundTask tracks a detached
run until it finishes.

SingleResult is the single shape every failure collapses into: routing
errors, launch errors, model-level errors, aborts and stalls all surface as a
finished result rather than an exception.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Exit code carried by a result whose process has not finished yet.
RUNNING_EXIT_CODE = -1

AgentSource = Literal["exact", "match", "ephemeral", "unknown"]
TaskStatus = Literal["running", "completed", "failed"]


class WorkItem(BaseModel):
    """One requested unit of delegated work."""

    model_config = ConfigDict(frozen=True)

    agent: str
    task: str
    cwd: Optional[str] = None
    model: Optional[str] = None


class UsageStats(BaseModel):
    """Token and cost accounting accumulated from assistant messages."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    context_tokens: int = 0
    turns: int = 0
    denials: int = 0


class SingleResult(BaseModel):
    """Outcome of one subagent attempt (or of the last attempt of a retry chain)."""

    agent: str
    agent_source: AgentSource = "unknown"
    task: str
    exit_code: int = RUNNING_EXIT_CODE
    messages: list[dict[str, Any]] = Field(default_factory=list)
    stderr: str = ""
    usage: UsageStats = Field(default_factory=UsageStats)
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    denied_tools: list[str] = Field(default_factory=list)
    step: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.exit_code == RUNNING_EXIT_CODE

    @property
    def is_error(self) -> bool:
        return self.exit_code != 0 or self.stop_reason in ("error", "aborted")

    @property
    def final_output(self) -> str:
        from delegate.formatting import get_final_output

        return get_final_output(self.messages)

    def finalize(self, exit_code: int) -> bool:
        """Write the final exit code.

        Only the first call takes effect; returns whether this call wrote it.
        """
        if self.exit_code != RUNNING_EXIT_CODE:
            return False
        if exit_code == RUNNING_EXIT_CODE:
            exit_code = 1
        self.exit_code = exit_code
        return True

    def error_text(self) -> str:
        """Best available description of what went wrong."""
        return (
            self.error_message
            or self.stderr.strip()
            or self.final_output
            or "(no output)"
        )


class AgentSpec(BaseModel):
    """A named agent definition: prompt, tool policy and defaults."""

    name: str
    description: str = ""
    system_prompt: str = ""
    tools: Optional[list[str]] = None
    disallowed_tools: Optional[list[str]] = None
    skills: list[str] = Field(default_factory=list)
    max_turns: Optional[int] = None
    model: Optional[str] = None
    mcp_servers: list[str] = Field(default_factory=list)
    allowed_agent_types: Optional[list[str]] = None
    source: str = "user"


class AgentDefaults(BaseModel):
    """Settings applied to ephemeral agents that have no definition of their own."""

    tools: Optional[list[str]] = None
    disallowed_tools: Optional[list[str]] = None
    max_turns: Optional[int] = None
    mcp_servers: list[str] = Field(default_factory=list)


class ResolvedAgent(BaseModel):
    """Result of looking an agent name up in the catalog."""

    agent: AgentSpec
    resolution: Literal["exact", "match", "ephemeral"]
    requested_name: str


class RoutingHints(BaseModel):
    """Optional steering for the model router."""

    cost_preference: Optional[Literal["eco", "balanced", "premium"]] = None
    task_type: Optional[Literal["code", "vision", "text"]] = None
    complexity: Optional[int] = None

    @field_validator("complexity")
    @classmethod
    def _clamp_complexity(cls, value: Optional[int]) -> Optional[int]:
        if value is None:
            return None
        return max(1, min(5, int(value)))


class RoutingSuccess(BaseModel):
    ok: Literal[True] = True
    model_id: str
    fallbacks: list[str] = Field(default_factory=list)
    reason: str = "auto-routed"


class RoutingFailure(BaseModel):
    ok: Literal[False] = False
    query: str = ""
    error: str


RoutingDecision = Union[RoutingSuccess, RoutingFailure]


class SubagentInvocation(BaseModel):
    """Everything the subprocess runner needs for one attempt."""

    agent: AgentSpec
    agent_source: AgentSource = "unknown"
    task: str
    model_id: Optional[str] = None
    cwd: Optional[str] = None
    session_file: Optional[str] = None
    step: Optional[int] = None


class BackgroundTask(BaseModel):
    """A detached subagent run tracked by the registry."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: f"bg-{uuid.uuid4().hex[:12]}")
    agent: str
    task: str
    started_at: float = Field(default_factory=time.time)
    status: TaskStatus = "running"
    completed_at: Optional[float] = None
    result: SingleResult
    # Owned run handle (SubagentRun); excluded from dumps.
    run: Any = Field(default=None, exclude=True)
    history_compacted: bool = False
    history_original_message_count: Optional[int] = None
    history_retained_message_count: Optional[int] = None
    retained_final_output: Optional[str] = None

    def mark_finished(self, status: Literal["completed", "failed"]) -> bool:
        """Transition out of ``running``.  Never reverts a finished task."""
        if self.status != "running":
            return False
        self.status = status
        self.completed_at = time.time()
        return True

    def elapsed(self, now: Optional[float] = None) -> float:
        end = self.completed_at if self.completed_at is not None else (now or time.time())
        return max(0.0, end - self.started_at)


class ForegroundEntry(BaseModel):
    """A foreground run that is currently in flight."""

    id: str = Field(default_factory=lambda: f"fg-{uuid.uuid4().hex[:12]}")
    agent: str
    task: str
    started_at: float = Field(default_factory=time.time)


class BatchReport(BaseModel):
    """Per-classification counts for a finished parallel batch."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    stalled: int = 0
    running: int = 0
    rescued: int = 0
    recovered: int = 0

    @property
    def is_error(self) -> bool:
        return self.stalled > 0


class DispatchRequest(BaseModel):
    """Input to the mode controller.  Exactly one mode must be populated."""

    agent: Optional[str] = None
    task: Optional[str] = None
    tasks: Optional[list[WorkItem]] = None
    centipede: Optional[list[WorkItem]] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    session_file: Optional[str] = None
    background: bool = False
    hints: Optional[RoutingHints] = None
    parent_model_id: Optional[str] = None


class DispatchResult(BaseModel):
    """What a dispatch returns to its caller."""

    mode: Literal["single", "parallel", "centipede", "none"]
    text: str
    results: list[SingleResult] = Field(default_factory=list)
    is_error: bool = False
    background_ids: list[str] = Field(default_factory=list)
    report: Optional[BatchReport] = None
