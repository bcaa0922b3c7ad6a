"""Tests for delegate.orchestration.fallback — model-level retry chain."""

from __future__ import annotations

import pytest
from conftest import ScriptedRunner, assistant_frame, emit

from delegate.config import EngineConfig
from delegate.orchestration.collaborators import AgentCatalog, StaticModelRouter
from delegate.orchestration.fallback import ModelFallbackRunner, is_model_level_error
from delegate.orchestration.models import AgentSpec, RoutingFailure, SingleResult, WorkItem
from delegate.orchestration.runners import SubprocessRunner


def _fallback(runner, *, default="m1", fallbacks=("m2", "m3"), agents=None) -> ModelFallbackRunner:
    return ModelFallbackRunner(
        EngineConfig(),
        runner,
        AgentCatalog(agents or [AgentSpec(name="writer")]),
        StaticModelRouter(default, list(fallbacks)),
    )


class TestModelLevelError:
    def test_success_is_never_model_level(self):
        result = SingleResult(agent="w", task="t", stderr="rate limit")
        result.finalize(0)
        assert not is_model_level_error(result, ["rate limit"])

    def test_matches_stderr_case_insensitively(self):
        result = SingleResult(agent="w", task="t", stderr="429 Too Many Requests: Rate Limit")
        result.finalize(1)
        assert is_model_level_error(result, ["rate limit"])

    def test_matches_error_message_with_error_stop(self):
        result = SingleResult(agent="w", task="t", stop_reason="error", error_message="Quota exceeded")
        result.finalize(0)
        assert is_model_level_error(result, ["quota exceeded"])

    def test_task_level_failure(self):
        result = SingleResult(agent="w", task="t", stderr="test suite failed")
        result.finalize(1)
        assert not is_model_level_error(result, EngineConfig().model_error_patterns)


class TestFallbackChain:
    @pytest.mark.asyncio
    async def test_first_model_success_makes_one_attempt(self):
        runner = ScriptedRunner({"m1": {}})
        result = await _fallback(runner).run(WorkItem(agent="writer", task="t"))
        assert result.exit_code == 0
        assert runner.models == ["m1"]

    @pytest.mark.asyncio
    async def test_quota_error_moves_to_next_model_then_stops_on_task_error(self):
        runner = ScriptedRunner({
            "m1": {"exit_code": 1, "stderr": "quota exceeded for this key"},
            "m2": {"exit_code": 1, "stderr": "assertion failed in tests"},
            "m3": {},
        })
        result = await _fallback(runner).run(WorkItem(agent="writer", task="t"))
        assert runner.models == ["m1", "m2"]
        assert result.model == "m2"
        assert result.exit_code == 1
        assert "assertion failed" in result.stderr

    @pytest.mark.asyncio
    async def test_exhausted_chain_returns_last_result(self):
        runner = ScriptedRunner({
            "m1": {"exit_code": 1, "stderr": "rate limit"},
            "m2": {"exit_code": 1, "stderr": "overloaded"},
            "m3": {"exit_code": 1, "stderr": "503 service unavailable"},
        })
        result = await _fallback(runner).run(WorkItem(agent="writer", task="t"))
        assert runner.models == ["m1", "m2", "m3"]
        assert result.model == "m3"
        assert "503" in result.stderr

    @pytest.mark.asyncio
    async def test_abort_stops_the_chain(self):
        runner = ScriptedRunner({
            "m1": {"exit_code": 1, "stderr": "rate limit", "stop_reason": "aborted"},
        })
        result = await _fallback(runner).run(WorkItem(agent="writer", task="t"))
        assert runner.models == ["m1"]
        assert result.stop_reason == "aborted"

    @pytest.mark.asyncio
    async def test_duplicate_models_attempted_once(self):
        runner = ScriptedRunner({
            "m1": {"exit_code": 1, "stderr": "rate limit"},
            "m2": {"exit_code": 1, "stderr": "rate limit"},
        })
        fallback = _fallback(runner, fallbacks=("m2", "m2", "m1"))
        await fallback.run(WorkItem(agent="writer", task="t"))
        assert runner.models == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_invocation_carries_item_context(self):
        runner = ScriptedRunner({"explicit-model": {}})
        item = WorkItem(agent="writer", task="t", cwd="/tmp", model="explicit-model")
        result = await _fallback(runner).run(item, session_file="s.jsonl", step=2)
        invocation = runner.invocations[0]
        assert invocation.model_id == "explicit-model"
        assert invocation.cwd == "/tmp"
        assert invocation.session_file == "s.jsonl"
        assert invocation.step == 2
        assert invocation.agent_source == "exact"
        assert result.step == 2

    @pytest.mark.asyncio
    async def test_unknown_agent_runs_ephemeral(self):
        runner = ScriptedRunner({"m1": {}})
        result = await _fallback(runner).run(WorkItem(agent="scout", task="t"))
        assert result.agent_source == "ephemeral"
        assert runner.invocations[0].agent.source == "ephemeral"
        assert "scout" in runner.invocations[0].agent.system_prompt


class TestRouting:
    @pytest.mark.asyncio
    async def test_routing_failure_becomes_result(self):
        runner = ScriptedRunner({})
        result = await _fallback(runner, default=None, fallbacks=()).run(
            WorkItem(agent="writer", task="t"), step=3,
        )
        assert runner.invocations == []
        assert result.exit_code == 1
        assert result.stop_reason == "error"
        assert result.error_message == "No model available for this task"
        assert result.stderr == "No model available for this task"
        assert result.step == 3

    @pytest.mark.asyncio
    async def test_precedence(self):
        router = StaticModelRouter("default", ["default", "fb"])
        decision = await router.route("t", agent_model="agent-m", parent_model_id="parent-m")
        assert decision.model_id == "agent-m"
        assert decision.reason == "agent-frontmatter"
        assert decision.fallbacks == ["default", "fb"]

        decision = await router.route("t", parent_model_id="parent-m")
        assert decision.reason == "parent-inherited"

        decision = await router.route("t")
        assert decision.model_id == "default"
        assert decision.fallbacks == ["fb"]

    @pytest.mark.asyncio
    async def test_agent_model_used_when_no_override(self):
        runner = ScriptedRunner({"agent-m": {}})
        fallback = _fallback(runner, agents=[AgentSpec(name="writer", model="agent-m")])
        await fallback.run(WorkItem(agent="writer", task="t"), parent_model_id="parent-m")
        assert runner.models == ["agent-m"]

    @pytest.mark.asyncio
    async def test_router_failure_type(self):
        decision = await StaticModelRouter().route("x" * 500)
        assert isinstance(decision, RoutingFailure)
        assert len(decision.query) == 200


class TestFallbackWithSubprocess:
    @pytest.mark.asyncio
    async def test_retry_starts_with_fresh_usage(self, fake_agent):
        config = fake_agent({
            "m1": [
                emit(assistant_frame("partial", usage={"input": 100, "output": 50, "totalTokens": 150})),
                {"stderr": "quota exceeded"},
                {"exit": 1},
            ],
            "m2": [emit(assistant_frame("done", usage={"input": 7, "output": 3, "totalTokens": 10}))],
        })
        fallback = ModelFallbackRunner(
            config,
            SubprocessRunner(config),
            AgentCatalog([AgentSpec(name="writer")]),
            StaticModelRouter("m1", ["m2"]),
        )
        result = await fallback.run(WorkItem(agent="writer", task="t"))
        assert result.exit_code == 0
        assert result.model == "m2"
        assert result.final_output == "done"
        assert (result.usage.turns, result.usage.input, result.usage.output) == (1, 7, 3)
        assert result.stderr == ""
