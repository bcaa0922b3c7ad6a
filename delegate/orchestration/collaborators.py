"""
Collaborator interfaces — agent lookup, model routing, file-reference expansion.

The engine consumes these through structural Protocols.  The defaults here are
deliberately minimal (exact-name catalog, static router, pass-through
expander) so the engine runs stand-alone; richer discovery and routing are
supplied by the host.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import structlog

from delegate.orchestration.models import (
    AgentDefaults,
    AgentSpec,
    ResolvedAgent,
    RoutingDecision,
    RoutingFailure,
    RoutingHints,
    RoutingSuccess,
)

logger = structlog.get_logger(__name__)

EPHEMERAL_PROMPT = (
    "You are {name}, a specialized subagent. "
    "Complete the delegated task thoroughly and return your results."
)


@runtime_checkable
class AgentResolver(Protocol):
    def resolve(self, name: str) -> ResolvedAgent:
        """Look up an agent by name.  Never fails: unknown names become ephemeral."""
        ...

    def known_agents(self) -> list[str]:
        ...


@runtime_checkable
class ModelRouter(Protocol):
    async def route(
        self,
        task: str,
        *,
        model_override: Optional[str] = None,
        agent_model: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        agent_description: str = "",
        hints: Optional[RoutingHints] = None,
    ) -> RoutingDecision:
        ...


@runtime_checkable
class FileReferenceExpander(Protocol):
    async def expand(self, text: str, cwd: str) -> str:
        ...


class AgentCatalog:
    """In-memory agent catalog with exact-name lookup."""

    def __init__(
        self,
        agents: Optional[list[AgentSpec]] = None,
        defaults: Optional[AgentDefaults] = None,
    ):
        self._agents = {agent.name: agent for agent in agents or []}
        self._defaults = defaults or AgentDefaults()

    def known_agents(self) -> list[str]:
        return sorted(self._agents)

    def resolve(self, name: str) -> ResolvedAgent:
        agent = self._agents.get(name)
        if agent is not None:
            return ResolvedAgent(agent=agent, resolution="exact", requested_name=name)

        logger.debug("agents.ephemeral", name=name)
        defaults = self._defaults
        ephemeral = AgentSpec(
            name=name,
            description=f"Ephemeral agent: {name}",
            system_prompt=EPHEMERAL_PROMPT.format(name=name),
            tools=list(defaults.tools) if defaults.tools is not None else None,
            disallowed_tools=(
                list(defaults.disallowed_tools) if defaults.disallowed_tools is not None else None
            ),
            max_turns=defaults.max_turns,
            mcp_servers=list(defaults.mcp_servers),
            source="ephemeral",
        )
        return ResolvedAgent(agent=ephemeral, resolution="ephemeral", requested_name=name)


class StaticModelRouter:
    """Pick the first explicit model in precedence order, else a configured default."""

    def __init__(self, default_model: Optional[str] = None, fallbacks: Optional[list[str]] = None):
        self._default_model = default_model
        self._fallbacks = list(fallbacks or [])

    async def route(
        self,
        task: str,
        *,
        model_override: Optional[str] = None,
        agent_model: Optional[str] = None,
        parent_model_id: Optional[str] = None,
        agent_description: str = "",
        hints: Optional[RoutingHints] = None,
    ) -> RoutingDecision:
        for model_id, reason in (
            (model_override, "explicit"),
            (agent_model, "agent-frontmatter"),
            (parent_model_id, "parent-inherited"),
            (self._default_model, "auto-routed"),
        ):
            if model_id:
                fallbacks = [m for m in self._fallbacks if m != model_id]
                return RoutingSuccess(model_id=model_id, fallbacks=fallbacks, reason=reason)
        return RoutingFailure(query=task[:200], error="No model available for this task")


class PassthroughExpander:
    async def expand(self, text: str, cwd: str) -> str:
        return text
