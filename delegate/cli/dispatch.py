"""Dispatch commands — run, parallel, centipede."""

from __future__ import annotations

import asyncio
import json as json_mod
import signal
from typing import Any, Callable

import click

from delegate.cli.app import async_cmd
from delegate.cli.formatters import get_console, render_dispatch
from delegate.config import EngineConfig
from delegate.main import build_orchestrator
from delegate.orchestration.models import AgentSpec, DispatchRequest, DispatchResult, WorkItem


def _dispatch_options(func: Callable) -> Callable:
    """Options shared by every dispatch command."""
    options = [
        click.option("--model", default=None, help="Explicit model for every item"),
        click.option(
            "--default-model",
            envvar="DELEGATE_DEFAULT_MODEL",
            default=None,
            help="Model used when nothing more specific applies",
        ),
        click.option("--fallback", "fallbacks", multiple=True, help="Fallback model (repeatable)"),
        click.option("--parent-model", default=None, help="Model of the calling agent"),
        click.option("--cwd", default=None, type=click.Path(file_okay=False), help="Working directory"),
        click.option("--session", "session_file", default=None, help="Session file for the child"),
        click.option("--system-prompt", default=None, help="System prompt for the named agents"),
        click.option("--max-turns", default=None, type=int, help="Tool-use turn budget"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _parse_pairs(values: tuple[str, ...], flag: str) -> list[WorkItem]:
    items = []
    for value in values:
        agent, sep, task = value.partition("=")
        if not sep or not agent.strip() or not task.strip():
            raise click.BadParameter(f"expected AGENT=TASK, got {value!r}", param_hint=flag)
        items.append(WorkItem(agent=agent.strip(), task=task.strip()))
    return items


def _agent_specs(names: list[str], opts: dict[str, Any]) -> list[AgentSpec]:
    if not opts["system_prompt"] and not opts["max_turns"]:
        return []
    return [
        AgentSpec(
            name=name,
            system_prompt=opts["system_prompt"] or "",
            max_turns=opts["max_turns"],
            source="cli",
        )
        for name in dict.fromkeys(names)
    ]


def _install_interrupt(cancel_event: asyncio.Event) -> None:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass


async def _execute(
    ctx: click.Context,
    request: DispatchRequest,
    agent_names: list[str],
    opts: dict[str, Any],
) -> None:
    orchestrator = build_orchestrator(
        EngineConfig(),
        agents=_agent_specs(agent_names, opts),
        default_model=opts["default_model"],
        fallbacks=list(opts["fallbacks"]),
    )
    cancel_event = asyncio.Event()
    _install_interrupt(cancel_event)

    try:
        dispatch = await orchestrator.dispatch(request, cancel_event=cancel_event)
        statuses: list[str] = []
        if dispatch.background_ids:
            for task_id in dispatch.background_ids:
                await orchestrator.registry.wait(task_id)
                statuses.append(orchestrator.registry.status(task_id))
    finally:
        await orchestrator.shutdown()

    _report(ctx, dispatch, statuses)
    if dispatch.is_error:
        ctx.exit(1)


def _report(ctx: click.Context, dispatch: DispatchResult, statuses: list[str]) -> None:
    if ctx.obj.get("json"):
        payload = dispatch.model_dump(mode="json")
        if statuses:
            payload["background_status"] = statuses
        click.echo(json_mod.dumps(payload, indent=2))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    render_dispatch(console, dispatch, verbose=ctx.obj.get("verbose", False))
    for status in statuses:
        console.print()
        console.print(status)


def _request(opts: dict[str, Any], **fields: Any) -> DispatchRequest:
    return DispatchRequest(
        cwd=opts["cwd"],
        model=opts["model"],
        session_file=opts["session_file"],
        parent_model_id=opts["parent_model"],
        **fields,
    )


@click.command("run")
@click.argument("agent")
@click.argument("task")
@click.option("--background", is_flag=True, help="Detach and report through the registry")
@_dispatch_options
@click.pass_context
@async_cmd
async def run_cmd(ctx: click.Context, agent: str, task: str, background: bool, **opts: Any) -> None:
    """Run TASK on a single AGENT."""
    request = _request(opts, agent=agent, task=task, background=background)
    await _execute(ctx, request, [agent], opts)


@click.command("parallel")
@click.option("--task", "-t", "pairs", multiple=True, required=True, help="AGENT=TASK (repeatable)")
@click.option("--background", is_flag=True, help="Detach and report through the registry")
@_dispatch_options
@click.pass_context
@async_cmd
async def parallel_cmd(
    ctx: click.Context, pairs: tuple[str, ...], background: bool, **opts: Any
) -> None:
    """Run independent tasks concurrently."""
    items = _parse_pairs(pairs, "--task")
    request = _request(opts, tasks=items, background=background)
    await _execute(ctx, request, [item.agent for item in items], opts)


@click.command("centipede")
@click.option("--step", "-s", "pairs", multiple=True, required=True, help="AGENT=TASK (repeatable)")
@_dispatch_options
@click.pass_context
@async_cmd
async def centipede_cmd(ctx: click.Context, pairs: tuple[str, ...], **opts: Any) -> None:
    """Run steps in sequence; {previous} is replaced by the prior step's output."""
    items = _parse_pairs(pairs, "--step")
    request = _request(opts, centipede=items)
    await _execute(ctx, request, [item.agent for item in items], opts)
