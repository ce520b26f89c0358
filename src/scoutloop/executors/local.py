"""Run each session as its own Claude agent process on this machine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
)

from scoutloop.executors.base import Decision, PendingInput, PollResult, StartResult
from scoutloop.permissions import SessionOptions

# Suppress the chatty "Using bundled Claude Code CLI: ..." INFO line that
# fires on every subprocess spawn.
logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    logging.WARNING
)

log = logging.getLogger(__name__)

_DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "mcp__*",
]

# With an approval callback in place, only these skip it.
_READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]


def describe_tool_call(tool_name: str, tool_input: dict[str, Any]) -> str:
    """The string approval rules are matched against, also shown to the user."""
    if tool_name == "Bash":
        return str(tool_input.get("command", ""))
    for field_name in ("file_path", "path", "url", "pattern"):
        if field_name in tool_input:
            return str(tool_input[field_name])
    return ""


@dataclass
class _Run:
    session_id: str
    task: asyncio.Task[None] | None = None
    result: ResultMessage | None = None
    error: str | None = None
    finished: bool = False
    pending: PendingInput | None = None
    decision: asyncio.Future[tuple[Decision, str | None]] | None = None


class LocalExecutor:
    """One ``ClaudeSDKClient`` subprocess per session, tracked in memory.

    Resuming is refused while the previous process for the same session id is
    still alive, which gives per-session mutual exclusion without any lock.
    """

    name = "local"

    def __init__(
        self,
        cwd: Path,
        model: str | None = None,
        cli_path: Path | None = None,
    ) -> None:
        self._cwd = cwd
        self._model = model
        self._cli_path = cli_path
        self._runs: dict[str, _Run] = {}

    @property
    def supports_input_response(self) -> bool:
        return True

    def _options(
        self, run: _Run, options: SessionOptions, *, resume: bool
    ) -> ClaudeAgentOptions:
        needs_callback = (
            options.approval_mode == "default"
            or bool(options.rules)
            or bool(options.denied_tools)
        )
        permission_mode = options.approval_mode
        if needs_callback and permission_mode == "bypassPermissions":
            # bypassPermissions never consults can_use_tool
            permission_mode = "default"

        cwd = Path(options.cwd) if options.cwd else self._cwd
        cwd.mkdir(parents=True, exist_ok=True)

        return ClaudeAgentOptions(
            cwd=str(cwd),
            permission_mode=permission_mode,
            model=self._model,
            cli_path=self._cli_path,
            allowed_tools=[
                tool
                for tool in (_READ_ONLY_TOOLS if needs_callback else _DEFAULT_ALLOWED_TOOLS)
                if tool not in options.denied_tools
            ],
            disallowed_tools=list(options.denied_tools),
            setting_sources=["project", "user"],
            resume=run.session_id if resume else None,
            extra_args={} if resume else {"session-id": run.session_id},
            can_use_tool=(
                partial(self._can_use_tool, run, options) if needs_callback else None
            ),
            env={"SHELL": "/bin/bash"},
        )

    async def _can_use_tool(
        self,
        run: _Run,
        options: SessionOptions,
        tool_name: str,
        tool_input: dict[str, Any],
        context: Any,
    ) -> PermissionResultAllow | PermissionResultDeny:
        if tool_name in options.denied_tools:
            log.info("Session %s: denied tool %s", run.session_id, tool_name)
            return PermissionResultDeny(message=f"{tool_name} blocked by execution profile")
        target = describe_tool_call(tool_name, tool_input)
        verdict = options.rules.decide(target)
        if verdict == "deny":
            log.info("Session %s: denied %s %r by rule", run.session_id, tool_name, target)
            return PermissionResultDeny(message=f"{tool_name} blocked by execution profile")
        if verdict == "allow" or options.approval_mode == "bypassPermissions":
            return PermissionResultAllow()
        if options.approval_mode == "plan":
            return PermissionResultDeny(message="Session is read-only")

        future: asyncio.Future[tuple[Decision, str | None]] = (
            asyncio.get_running_loop().create_future()
        )
        run.pending = PendingInput(
            kind="tool-approval",
            target=tool_name,
            request_id=uuid.uuid4().hex[:12],
            prompt=target or None,
        )
        run.decision = future
        try:
            decision, feedback = await future
        finally:
            run.pending = None
            run.decision = None

        if decision == "approve":
            return PermissionResultAllow()
        return PermissionResultDeny(message=feedback or "Denied by user")

    async def _drive(
        self, run: _Run, message: str, options: SessionOptions, *, resume: bool
    ) -> None:
        try:
            async with ClaudeSDKClient(self._options(run, options, resume=resume)) as client:
                await client.query(message)
                async for msg in client.receive_response():
                    if isinstance(msg, ResultMessage):
                        run.result = msg
        except asyncio.CancelledError:
            run.error = "cancelled"
            raise
        except Exception as exc:
            log.warning("Session %s failed: %s", run.session_id, exc)
            run.error = str(exc) or type(exc).__name__
        finally:
            run.finished = True

    def _spawn(
        self, session_id: str, message: str, options: SessionOptions, *, resume: bool
    ) -> None:
        run = _Run(session_id=session_id)
        self._runs[session_id] = run
        run.task = asyncio.create_task(
            self._drive(run, message, options, resume=resume),
            name=f"session-{session_id}",
        )

    async def start(self, message: str, options: SessionOptions) -> StartResult:
        session_id = str(uuid.uuid4())
        self._spawn(session_id, message, options, resume=False)
        log.debug("Spawned session %s", session_id)
        return StartResult(session_id=session_id, status="started")

    async def resume(
        self, session_id: str, message: str, options: SessionOptions
    ) -> bool:
        existing = self._runs.get(session_id)
        if existing and not existing.finished:
            log.info("Session %s still running, refusing resume", session_id)
            return False
        self._spawn(session_id, message, options, resume=True)
        return True

    async def poll(self, session_id: str) -> PollResult:
        run = self._runs.get(session_id)
        if run is None:
            return PollResult(status="error")
        if not run.finished:
            return PollResult(status="running", pending_input=run.pending)
        if run.error or run.result is None or run.result.is_error:
            return PollResult(status="error")
        return PollResult(status="done")

    async def respond_to_input(
        self,
        session_id: str,
        request_id: str,
        decision: Decision,
        feedback: str | None = None,
    ) -> bool:
        run = self._runs.get(session_id)
        if run is None or run.pending is None or run.decision is None:
            return False
        if run.pending.request_id != request_id or run.decision.done():
            return False
        run.decision.set_result((decision, feedback))
        return True

    async def cleanup(self, session_id: str) -> None:
        run = self._runs.pop(session_id, None)
        if run is None or run.task is None or run.task.done():
            return
        run.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await run.task
