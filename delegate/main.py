"""
Main — wiring for the delegate command.

Configures logging, assembles an Orchestrator from configuration and the
default collaborators, and hands control to the Click CLI.  All behaviour
lives in the orchestration package; this module only connects the pieces.
"""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from delegate.config import EngineConfig
from delegate.events import EventBus
from delegate.orchestration.collaborators import AgentCatalog, StaticModelRouter
from delegate.orchestration.models import AgentSpec
from delegate.orchestration.orchestrator import Orchestrator

# Free-text log fields that can carry whole prompts or child stderr.
_LONG_TEXT_KEYS = {"task", "stderr", "error", "output"}
_MAX_DISPLAY_LEN = 120


def _truncate_long_fields(logger, method_name, event_dict):
    """Structlog processor that keeps task text and stderr to one readable line."""
    for key in _LONG_TEXT_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once — subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if verbose else logging.WARNING,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            _truncate_long_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def build_orchestrator(
    config: Optional[EngineConfig] = None,
    *,
    agents: Optional[list[AgentSpec]] = None,
    default_model: Optional[str] = None,
    fallbacks: Optional[list[str]] = None,
    event_bus: Optional[EventBus] = None,
) -> Orchestrator:
    """Assemble an Orchestrator with the stand-alone collaborators."""
    config = config or EngineConfig()
    return Orchestrator(
        config=config,
        resolver=AgentCatalog(agents),
        router=StaticModelRouter(default_model, fallbacks),
        event_bus=event_bus,
    )


def main() -> None:
    """Entry point for ``python -m delegate.main``."""
    from delegate.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
