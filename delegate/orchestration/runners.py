"""
Subagent Runners — The Execution Backends.

A runner takes a resolved SubagentInvocation, launches the agent CLI as a
child process in JSON mode, and folds its NDJSON stdout into a SingleResult:

  SubagentRun        — one attempt; owns the process, the temp prompt file
                       and the in-flight result
  SubprocessRunner   — builds runs (file-reference expansion, prompt text)
                       and executes them to completion

Failures never escape as exceptions: launch errors, aborts, stalls and
non-zero exits all finish the result with an exit code and an error message.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import shutil
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterator, Optional

import structlog

from delegate.config import EngineConfig
from delegate.events import (
    DelegateEvent,
    SubagentProgressEvent,
    SubagentStartEvent,
    SubagentStopEvent,
    SubagentToolCallEvent,
    SubagentToolResultEvent,
)
from delegate.orchestration.collaborators import FileReferenceExpander, PassthroughExpander
from delegate.orchestration.models import AgentSpec, SingleResult, SubagentInvocation
from delegate.orchestration.protocol import (
    Frame,
    FrameDecoder,
    MessageEndFrame,
    ToolCallStartFrame,
    ToolResultEndFrame,
    UnrecognizedFrame,
    is_tool_denial,
    message_usage,
)
from delegate.orchestration.watchdog import (
    WatchdogStatus,
    apply_stalled_classification,
    create_heartbeat_state,
    evaluate_watchdog,
    record_heartbeat,
    terminate_process_with_grace,
)

logger = structlog.get_logger(__name__)

Observer = Callable[[DelegateEvent], None]

BUILTIN_TOOLS = ["read", "bash", "edit", "write", "grep", "find", "ls"]

TURN_BUDGET_TEMPLATE = (
    "You have a maximum of {max_turns} tool-use turns for this task. "
    "Plan your approach to complete within this budget. "
    "If you are running low, output your best result immediately.\n\n"
)

ENV_IS_SUBAGENT = "DELEGATE_IS_SUBAGENT"
ENV_ALLOWED_AGENT_TYPES = "DELEGATE_ALLOWED_AGENT_TYPES"
ENV_MCP_SERVERS = "DELEGATE_MCP_SERVERS"

_UNSAFE_NAME_RE = re.compile(r"[^\w.-]+")
_STDOUT_CHUNK = 64 * 1024

# Stop reasons set by the supervisor; later assistant messages do not replace them.
_STICKY_STOP_REASONS = ("aborted", "stalled", "interrupted")


# ---------------------------------------------------------------------------
# Launch helpers
# ---------------------------------------------------------------------------


def compute_effective_tools(
    tools: Optional[list[str]],
    disallowed: Optional[list[str]],
) -> Optional[list[str]]:
    """Resolve the allow/deny lists into the tool set passed to the child.

    ``None`` means "no restriction" and the ``--tools`` flag is omitted.
    """
    if not tools and not disallowed:
        return None
    if not disallowed:
        return list(tools or [])
    denied = set(disallowed)
    return [tool for tool in (tools or BUILTIN_TOOLS) if tool not in denied]


def build_system_prompt(agent: AgentSpec) -> str:
    prompt = agent.system_prompt
    if agent.max_turns:
        prompt = TURN_BUDGET_TEMPLATE.format(max_turns=agent.max_turns) + prompt
    return prompt


@contextlib.contextmanager
def prompt_file(agent_name: str, prompt: str) -> Iterator[Optional[Path]]:
    """Write *prompt* to an owner-only temp file for the duration of the block.

    Yields ``None`` (and writes nothing) for a blank prompt.  The file and its
    directory are removed on every exit path; removal errors are ignored.
    """
    if not prompt.strip():
        yield None
        return

    tmp_dir = Path(tempfile.mkdtemp(prefix="delegate-subagent-"))
    safe_name = _UNSAFE_NAME_RE.sub("_", agent_name) or "agent"
    path = tmp_dir / f"prompt-{safe_name}.md"
    try:
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(prompt)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.debug("subagent.prompt_unlink_failed", path=str(path))
        shutil.rmtree(tmp_dir, ignore_errors=True)


def build_args(
    invocation: SubagentInvocation,
    expanded_task: str,
    prompt_path: Optional[Path] = None,
) -> list[str]:
    agent = invocation.agent
    args = ["--mode", "json", "-p"]
    if invocation.session_file:
        args += ["--session", invocation.session_file]
    else:
        args.append("--no-session")
    if invocation.model_id:
        args += ["--models", invocation.model_id]
    tools = compute_effective_tools(agent.tools, agent.disallowed_tools)
    if tools:
        args += ["--tools", ",".join(tools)]
    for skill in agent.skills:
        args += ["--skill", skill]
    if prompt_path is not None:
        args += ["--append-system-prompt", str(prompt_path)]
    args.append(f"Task: {expanded_task}")
    return args


def build_child_env(agent: AgentSpec, base: Optional[dict[str, str]] = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env[ENV_IS_SUBAGENT] = "1"
    if agent.allowed_agent_types is not None:
        env[ENV_ALLOWED_AGENT_TYPES] = ",".join(agent.allowed_agent_types)
    if agent.mcp_servers:
        env[ENV_MCP_SERVERS] = ",".join(agent.mcp_servers)
    return env


def normalize_returncode(returncode: Optional[int]) -> int:
    """Map a process return code onto the result's exit code.

    ``None`` reads as 0; death by signal N becomes 128 + N so it can never
    collide with the running sentinel.
    """
    if returncode is None:
        return 0
    if returncode < 0:
        return 128 - returncode
    return returncode


# ---------------------------------------------------------------------------
# A single attempt
# ---------------------------------------------------------------------------


class SubagentRun:
    """One launch of the agent CLI, from spawn to finalized result."""

    def __init__(
        self,
        config: EngineConfig,
        invocation: SubagentInvocation,
        expanded_task: str,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[Observer] = None,
        background: bool = False,
    ):
        self._config = config
        self.invocation = invocation
        self.expanded_task = expanded_task
        self._cancel_event = cancel_event
        self._observer = observer
        self.background = background
        # Liveness watchdog applies to foreground runs only.
        self._watchdog_enabled = not background

        self.run_id = uuid.uuid4().hex[:12]
        self.process: Optional[asyncio.subprocess.Process] = None
        self.result = SingleResult(
            agent=invocation.agent.name,
            agent_source=invocation.agent_source,
            task=invocation.task,
            model=invocation.model_id,
            step=invocation.step,
        )

        self._decoder = FrameDecoder()
        self._heartbeat = create_heartbeat_state()
        self._tool_calls = 0
        self._turn_limit_hit = asyncio.Event()

    @property
    def agent(self) -> AgentSpec:
        return self.invocation.agent

    # -- observer --------------------------------------------------------

    def _notify(self, event: DelegateEvent) -> None:
        if self._observer is None:
            return
        try:
            self._observer(event)
        except Exception:
            logger.debug("subagent.observer_failed", run_id=self.run_id, exc_info=True)

    def _progress(self, force: bool = False) -> None:
        self._notify(SubagentProgressEvent(
            run_id=self.run_id,
            result=self.result.model_copy(deep=True),
            force=force,
        ))

    # -- lifecycle -------------------------------------------------------

    async def execute(self) -> SingleResult:
        """Run the process to completion and return the finalized result."""
        if self._cancel_event is not None and self._cancel_event.is_set():
            self._mark_aborted()
            self.result.finalize(1)
            self._notify_stop()
            return self.result

        command = self._config.launch_command()
        system_prompt = build_system_prompt(self.agent)

        with prompt_file(self.agent.name, system_prompt) as prompt_path:
            args = build_args(self.invocation, self.expanded_task, prompt_path)
            try:
                self.process = await asyncio.create_subprocess_exec(
                    *command,
                    *args,
                    cwd=self.invocation.cwd or None,
                    env=build_child_env(self.agent),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                logger.error(
                    "subagent.launch_failed",
                    agent=self.agent.name,
                    command=command[0],
                    error=str(exc),
                )
                message = f"Failed to launch subagent: {exc}"
                self.result.stderr += message
                self.result.error_message = message
                self.result.stop_reason = "error"
                self.result.finalize(1)
                self._notify_stop()
                return self.result

            logger.info(
                "subagent.launch",
                run_id=self.run_id,
                agent=self.agent.name,
                model=self.invocation.model_id,
                pid=self.process.pid,
            )
            self._notify(SubagentStartEvent(
                run_id=self.run_id,
                agent=self.agent.name,
                model=self.invocation.model_id,
                background=self.background,
            ))

            try:
                returncode = await self._supervise()
            except asyncio.CancelledError:
                logger.info("subagent.cancelled", run_id=self.run_id, agent=self.agent.name)
                await asyncio.shield(
                    terminate_process_with_grace(self.process, self._config.kill_grace_seconds)
                )
                self._mark_aborted()
                self.result.finalize(normalize_returncode(self.process.returncode) or 1)
                raise

        self._finish(returncode)
        return self.result

    async def _supervise(self) -> int:
        """Pump the pipes and wait for exit while watching for abort, stall and turn-budget triggers.

        The monitors stay armed until the process has exited, so a child that
        closes its pipes but keeps running can still be aborted or reaped.
        """
        assert self.process is not None
        pump = asyncio.create_task(self._pump())
        exited = asyncio.create_task(self.process.wait())
        monitors: dict[asyncio.Task, str] = {
            asyncio.create_task(self._turn_limit_hit.wait()): "turn_limit",
        }
        if self._cancel_event is not None:
            monitors[asyncio.create_task(self._cancel_event.wait())] = "abort"
        if self._watchdog_enabled and (
            self._config.startup_timeout_seconds > 0 or self._config.inactivity_timeout_seconds > 0
        ):
            monitors[asyncio.create_task(self._watch())] = "stall"

        try:
            while not (pump.done() and exited.done()):
                waiting = [t for t in (pump, exited) if not t.done()]
                pending = [t for t in monitors if not t.done()]
                done, _ = await asyncio.wait(
                    [*waiting, *pending], return_when=asyncio.FIRST_COMPLETED
                )
                fired = [t for t in done if t in monitors]
                if not fired:
                    continue
                self._on_trigger(monitors[fired[0]], fired[0])
                await terminate_process_with_grace(self.process, self._config.kill_grace_seconds)
                # Output already written to the pipes is still consumed.
                try:
                    await asyncio.wait_for(asyncio.shield(pump), timeout=self._config.kill_grace_seconds)
                except asyncio.TimeoutError:
                    logger.warning("subagent.pipes_left_open", run_id=self.run_id)
                    pump.cancel()
                    try:
                        await pump
                    except asyncio.CancelledError:
                        pass
                break
            if pump.done() and not pump.cancelled():
                pump.result()
        finally:
            for task in monitors:
                task.cancel()
            if not pump.done():
                pump.cancel()
            if not exited.done():
                exited.cancel()

        await self.process.wait()
        return normalize_returncode(self.process.returncode)

    def _on_trigger(self, reason: str, task: asyncio.Task) -> None:
        if reason == "abort":
            logger.info("subagent.abort_requested", run_id=self.run_id, agent=self.agent.name)
            self._mark_aborted()
        elif reason == "stall":
            status: WatchdogStatus = task.result()
            logger.warning(
                "subagent.stalled",
                run_id=self.run_id,
                agent=self.agent.name,
                phase=status.phase,
                idle=round(status.idle_seconds, 1),
            )
            apply_stalled_classification(self.result, status)
        else:
            logger.info(
                "subagent.turn_limit",
                run_id=self.run_id,
                agent=self.agent.name,
                max_turns=self.agent.max_turns,
            )

    async def _pump(self) -> None:
        assert self.process is not None
        await asyncio.gather(self._read_stdout(), self._read_stderr())

    async def _read_stdout(self) -> None:
        stream = self.process.stdout
        while True:
            chunk = await stream.read(_STDOUT_CHUNK)
            if not chunk:
                break
            for frame in self._decoder.feed(chunk):
                self.handle_frame(frame)
        for frame in self._decoder.flush():
            self.handle_frame(frame)

    async def _read_stderr(self) -> None:
        stream = self.process.stderr
        while True:
            chunk = await stream.read(_STDOUT_CHUNK)
            if not chunk:
                break
            self.result.stderr += chunk.decode("utf-8", errors="replace")

    async def _watch(self) -> WatchdogStatus:
        poll = self._config.watchdog_poll_seconds
        while True:
            await asyncio.sleep(poll)
            status = evaluate_watchdog(
                self._heartbeat,
                time.monotonic(),
                self._config.startup_timeout_seconds,
                self._config.inactivity_timeout_seconds,
            )
            if status.stalled:
                return status

    # -- frame handling --------------------------------------------------

    def handle_frame(self, frame: Frame) -> None:
        if isinstance(frame, UnrecognizedFrame):
            return
        record_heartbeat(self._heartbeat)
        if isinstance(frame, ToolCallStartFrame):
            self._on_tool_call(frame)
        elif isinstance(frame, MessageEndFrame):
            self._on_message_end(frame)
        elif isinstance(frame, ToolResultEndFrame):
            self._on_tool_result(frame)

    def _on_tool_call(self, frame: ToolCallStartFrame) -> None:
        self._tool_calls += 1
        self._notify(SubagentToolCallEvent(
            run_id=self.run_id,
            agent=self.agent.name,
            tool_name=frame.tool_name,
            tool_calls=self._tool_calls,
        ))
        max_turns = self.agent.max_turns
        if max_turns and self._tool_calls >= max_turns and not self._turn_limit_hit.is_set():
            self._turn_limit_hit.set()

    def _on_message_end(self, frame: MessageEndFrame) -> None:
        message = frame.message
        result = self.result
        result.messages.append(message)
        if message.get("role") == "assistant":
            usage = message_usage(message)
            result.usage.turns += 1
            result.usage.input += usage["input"]
            result.usage.output += usage["output"]
            result.usage.cache_read += usage["cache_read"]
            result.usage.cache_write += usage["cache_write"]
            result.usage.cost += usage["cost"]
            result.usage.context_tokens = usage["total_tokens"]
            if not result.model and message.get("model"):
                result.model = str(message["model"])
            if result.stop_reason not in _STICKY_STOP_REASONS:
                result.stop_reason = message.get("stopReason")
                result.error_message = message.get("errorMessage")
        self._progress()

    def _on_tool_result(self, frame: ToolResultEndFrame) -> None:
        message = frame.message
        self.result.messages.append(message)
        tool_name = str(message.get("toolName") or "unknown")
        denied = is_tool_denial(message, self._config.denial_patterns)
        if denied:
            self.result.denied_tools.append(tool_name)
            self.result.usage.denials += 1
            logger.info("subagent.tool_denied", run_id=self.run_id, agent=self.agent.name, tool=tool_name)
        self._notify(SubagentToolResultEvent(
            run_id=self.run_id,
            agent=self.agent.name,
            tool_name=tool_name,
            is_error=bool(message.get("isError")),
            denied=denied,
        ))
        self._progress(force=denied)

    # -- completion ------------------------------------------------------

    def _mark_aborted(self) -> None:
        if self.result.stop_reason == "interrupted":
            return
        self.result.stop_reason = "aborted"
        self.result.error_message = "Subagent was aborted"

    def interrupt(self) -> None:
        """Record an external interruption (session teardown) on the result."""
        self.result.stop_reason = "interrupted"
        self.result.error_message = "Subagent was interrupted"

    async def terminate(self, grace_seconds: float) -> None:
        if self.process is not None:
            await terminate_process_with_grace(self.process, grace_seconds)

    def _finish(self, exit_code: int) -> None:
        result = self.result
        if self._turn_limit_hit.is_set():
            result.stderr += f"\n[Terminated: reached max_turns limit of {self.agent.max_turns}]"
        if result.stop_reason in _STICKY_STOP_REASONS and exit_code == 0:
            exit_code = 1
        result.finalize(exit_code)
        logger.info(
            "subagent.exit",
            run_id=self.run_id,
            agent=self.agent.name,
            exit_code=result.exit_code,
            stop_reason=result.stop_reason,
            turns=result.usage.turns,
        )
        self._notify_stop()

    def _notify_stop(self) -> None:
        self._notify(SubagentStopEvent(
            run_id=self.run_id,
            agent=self.agent.name,
            exit_code=self.result.exit_code,
            stop_reason=self.result.stop_reason,
        ))
        self._progress(force=True)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


class SubagentRunnerBase(ABC):
    """Abstract base for subagent execution backends."""

    @abstractmethod
    async def run(
        self,
        invocation: SubagentInvocation,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[Observer] = None,
    ) -> SingleResult:
        """Execute one attempt and return its finalized result."""


class SubprocessRunner(SubagentRunnerBase):
    """Launch the agent CLI as a child process for each invocation."""

    def __init__(
        self,
        config: EngineConfig,
        expander: Optional[FileReferenceExpander] = None,
    ):
        self._config = config
        self._expander = expander or PassthroughExpander()

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def expand_task(self, task: str, cwd: Optional[str]) -> str:
        try:
            return await self._expander.expand(task, cwd or os.getcwd())
        except Exception as exc:
            logger.warning("subagent.expand_failed", error=str(exc))
            return task

    async def prepare(
        self,
        invocation: SubagentInvocation,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[Observer] = None,
        background: bool = False,
    ) -> SubagentRun:
        """Build a run without starting it (the registry schedules it itself)."""
        expanded = await self.expand_task(invocation.task, invocation.cwd)
        return SubagentRun(
            self._config,
            invocation,
            expanded,
            cancel_event=cancel_event,
            observer=observer,
            background=background,
        )

    async def run(
        self,
        invocation: SubagentInvocation,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[Observer] = None,
    ) -> SingleResult:
        run = await self.prepare(invocation, cancel_event=cancel_event, observer=observer)
        return await run.execute()

