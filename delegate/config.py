# delegate/config.py
"""
Configuration for the subagent execution engine.

All tunables are loaded from environment variables (and an optional project
``.env`` file) and validated with Pydantic.  The pattern lists are policy, not
code: operators can widen or narrow what counts as a model-level failure, a
tool denial or a stalled worker without touching the engine.
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Annotated

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above delegate/),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_MODEL_ERROR_PATTERNS = [
    "usage limit",
    "rate limit",
    "quota exceeded",
    "authentication",
    "unauthorized",
    "api key",
    "billing",
    "capacity",
    "overloaded",
    "503",
    "429",
]

DEFAULT_DENIAL_PATTERNS = [
    "permission denied",
    "tool denied",
    "user declined",
    "denied by user",
    "user rejected",
    "request denied",
]

# Regular expressions, matched case-insensitively.
DEFAULT_STALL_PATTERNS = [
    r"\bstall(ed|ing)?\b",
    r"no progress",
    r"inactivity timeout",
    r"unresponsive",
]


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - An existing list     → passthrough with str coercion
      - JSON array str       → ["a", "b"]
      - Comma-separated str  → ["a", "b"]
      - A single str         → ["value"]
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                logger.debug("config.list_not_json", value=stripped[:80])
            else:
                if isinstance(parsed, list):
                    return _coerce_str_list(parsed)
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


class EngineConfig(BaseSettings):
    """Configuration for subagent dispatch, supervision and background tracking."""

    # Launch target: the agent CLI, split with shell quoting rules.
    agent_command: str = Field("pi", alias="DELEGATE_AGENT_COMMAND")

    # Dispatch limits
    max_parallel_tasks: int = Field(8, alias="DELEGATE_MAX_PARALLEL_TASKS")
    max_concurrency: int = Field(4, alias="DELEGATE_MAX_CONCURRENCY")

    # Termination
    kill_grace_seconds: float = Field(5.0, alias="DELEGATE_KILL_GRACE_SECONDS")
    interrupt_grace_seconds: float = Field(3.0, alias="DELEGATE_INTERRUPT_GRACE_SECONDS")

    # Streaming progress
    update_throttle_seconds: float = Field(0.5, alias="DELEGATE_UPDATE_THROTTLE_SECONDS")

    # Liveness watchdog (0 disables a phase)
    startup_timeout_seconds: float = Field(180.0, alias="DELEGATE_STARTUP_TIMEOUT_SECONDS")
    inactivity_timeout_seconds: float = Field(600.0, alias="DELEGATE_INACTIVITY_TIMEOUT_SECONDS")
    watchdog_poll_seconds: float = Field(1.0, alias="DELEGATE_WATCHDOG_POLL_SECONDS")

    # Background history retention
    keep_full_history: bool = Field(False, alias="DELEGATE_SUBAGENT_KEEP_FULL_HISTORY")
    history_tail_messages: int = Field(40, alias="DELEGATE_SUBAGENT_HISTORY_TAIL_MESSAGES")
    completed_retention_seconds: float = Field(
        3600.0, alias="DELEGATE_COMPLETED_RETENTION_SECONDS"
    )

    # Failure classification policy
    model_error_patterns: StrList = Field(
        default_factory=lambda: list(DEFAULT_MODEL_ERROR_PATTERNS),
        alias="DELEGATE_MODEL_ERROR_PATTERNS",
    )
    denial_patterns: StrList = Field(
        default_factory=lambda: list(DEFAULT_DENIAL_PATTERNS),
        alias="DELEGATE_DENIAL_PATTERNS",
    )
    stall_patterns: StrList = Field(
        default_factory=lambda: list(DEFAULT_STALL_PATTERNS),
        alias="DELEGATE_STALL_PATTERNS",
    )

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "EngineConfig":
        self.max_parallel_tasks = max(1, int(self.max_parallel_tasks))
        self.max_concurrency = max(1, int(self.max_concurrency))
        self.kill_grace_seconds = max(0.05, float(self.kill_grace_seconds))
        self.interrupt_grace_seconds = max(0.05, float(self.interrupt_grace_seconds))
        self.update_throttle_seconds = max(0.0, float(self.update_throttle_seconds))
        self.startup_timeout_seconds = max(0.0, float(self.startup_timeout_seconds))
        self.inactivity_timeout_seconds = max(0.0, float(self.inactivity_timeout_seconds))
        self.watchdog_poll_seconds = max(0.01, float(self.watchdog_poll_seconds))
        self.history_tail_messages = max(1, int(self.history_tail_messages))
        self.completed_retention_seconds = max(0.0, float(self.completed_retention_seconds))
        self.model_error_patterns = [p.lower() for p in self.model_error_patterns]
        self.denial_patterns = [p.lower() for p in self.denial_patterns]
        return self

    def launch_command(self) -> list[str]:
        """Return the agent command as an argument vector.

        Raises ValueError when the command is empty, which is a wiring
        mistake rather than a runtime failure.
        """
        argv = shlex.split(self.agent_command)
        if not argv:
            raise ValueError("agent_command must not be empty")
        return argv
