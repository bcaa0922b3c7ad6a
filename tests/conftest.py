"""
Shared fixtures for the delegate test suite.

Provides protocol-frame builders, a scripted fake agent CLI and default
configs so individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from delegate.config import EngineConfig
from delegate.events import SubagentProgressEvent
from delegate.orchestration.models import AgentSpec, SingleResult, SubagentInvocation
from delegate.orchestration.runners import SubagentRunnerBase

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


# ---------------------------------------------------------------------------
# Frame builders
# ---------------------------------------------------------------------------

def assistant_frame(
    text: str = "done",
    *,
    model: Optional[str] = "fake-model",
    stop_reason: Optional[str] = "stop",
    error_message: Optional[str] = None,
    usage: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "usage": usage
        if usage is not None
        else {"input": 10, "output": 5, "cacheRead": 2, "cacheWrite": 1,
              "totalTokens": 18, "cost": {"total": 0.01}},
    }
    if model is not None:
        message["model"] = model
    if stop_reason is not None:
        message["stopReason"] = stop_reason
    if error_message is not None:
        message["errorMessage"] = error_message
    return {"type": "message_end", "message": message}


def user_frame(text: str) -> dict[str, Any]:
    return {"type": "message_end", "message": {"role": "user", "content": [{"type": "text", "text": text}]}}


def tool_call_frame(name: str = "bash") -> dict[str, Any]:
    return {"type": "tool_call_start", "toolName": name, "toolCallId": f"call-{name}"}


def tool_result_frame(
    name: str = "bash",
    text: str = "ok",
    *,
    is_error: bool = False,
    denied: Optional[bool] = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "role": "toolResult",
        "toolName": name,
        "isError": is_error,
        "content": [{"type": "text", "text": text}],
    }
    if denied is not None:
        message["isDenied"] = denied
    return {"type": "tool_result_end", "message": message}


def emit(frame: dict[str, Any]) -> dict[str, Any]:
    return {"emit": frame}


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_subagent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Never inherit subagent markers from the environment running the tests."""
    for key in ("DELEGATE_IS_SUBAGENT", "DELEGATE_ALLOWED_AGENT_TYPES", "DELEGATE_MCP_SERVERS"):
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Config / fake agent
# ---------------------------------------------------------------------------

@pytest.fixture()
def config() -> EngineConfig:
    return EngineConfig(
        agent_command="agent-cli-not-installed",
        kill_grace_seconds=1.0,
        update_throttle_seconds=0.0,
    )


@pytest.fixture()
def fake_agent(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Callable[..., EngineConfig]:
    """Install a script for the fake agent and return a config that launches it."""

    def configure(script: dict[str, list[dict[str, Any]]], **overrides: Any) -> EngineConfig:
        path = tmp_path / "fake_agent_script.json"
        path.write_text(json.dumps(script), encoding="utf-8")
        monkeypatch.setenv("FAKE_AGENT_SCRIPT", str(path))
        settings: dict[str, Any] = {
            "agent_command": shlex.join([sys.executable, str(FAKE_AGENT)]),
            "kill_grace_seconds": 1.0,
            "update_throttle_seconds": 0.0,
            "startup_timeout_seconds": 0.0,
            "inactivity_timeout_seconds": 0.0,
        }
        settings.update(overrides)
        return EngineConfig(**settings)

    return configure


class ScriptedRunner(SubagentRunnerBase):
    """In-process runner returning canned outcomes.

    *outcomes* is either a mapping of model id to SingleResult fields (plus an
    optional ``exit_code``), or a callable taking the invocation and returning
    such a mapping.  Tracks every invocation and the peak number in flight.
    """

    def __init__(
        self,
        outcomes: Union[dict[str, dict[str, Any]], Callable[[SubagentInvocation], dict[str, Any]]],
        *,
        delay: float = 0.0,
    ):
        self.outcomes = outcomes
        self.delay = delay
        self.invocations: list[SubagentInvocation] = []
        self.in_flight = 0
        self.peak = 0

    async def run(self, invocation, *, cancel_event=None, observer=None) -> SingleResult:
        self.invocations.append(invocation)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if callable(self.outcomes):
                outcome = dict(self.outcomes(invocation))
            else:
                outcome = dict(self.outcomes.get(invocation.model_id, {}))
        finally:
            self.in_flight -= 1
        exit_code = outcome.pop("exit_code", 0)
        output = outcome.pop("output", None)
        result = SingleResult(
            agent=invocation.agent.name,
            agent_source=invocation.agent_source,
            task=invocation.task,
            model=invocation.model_id,
            step=invocation.step,
            **outcome,
        )
        if output is not None:
            result.messages.append(assistant_frame(output)["message"])
            result.usage.turns += 1
        result.finalize(exit_code)
        if observer is not None:
            observer(SubagentProgressEvent(run_id="scripted", result=result, force=True))
        return result

    @property
    def models(self) -> list[Optional[str]]:
        return [inv.model_id for inv in self.invocations]

    @property
    def tasks(self) -> list[str]:
        return [inv.task for inv in self.invocations]


def make_invocation(
    name: str = "writer",
    task: str = "summarize X",
    *,
    model_id: Optional[str] = "fake-model",
    **agent_fields: Any,
) -> SubagentInvocation:
    return SubagentInvocation(
        agent=AgentSpec(name=name, **agent_fields),
        agent_source="exact",
        task=task,
        model_id=model_id,
    )
