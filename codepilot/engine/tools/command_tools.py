"""Command capability: shell execution through the ProcessSupervisor.

``execute_command`` waits at most the in-progress threshold. A process
still running after that is handed back as a managed process id; its
output keeps flowing to the call's sink and it can be polled, fed
input or terminated by later calls.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from ..models import ProcessSnapshot, ProcessState, RiskClass
from ..process_supervisor import ProcessSupervisor
from .base import (
    ToolContext,
    ToolDescriptor,
    _text,
    dumps,
    no_lock,
    object_schema,
)

logger = logging.getLogger(__name__)

DESTRUCTIVE_COMMAND_PATTERNS = [
    r"\brm\s+(-[a-z]*r[a-z]*|-[a-z]*f[a-z]*r[a-z]*|--recursive)\b",
    r"\brm\s+-[a-z]*\s+-[a-z]*r",
    r"\bsudo\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bchgrp\b",
    r"\bdd\s+(if|of)=",
    r"\bmkfs(\.| )",
    r"\bfdisk\b",
    r"\bparted\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bpoweroff\b",
    r"\bhalt\b",
    r"\bkillall\b",
    r"\bkill\s+-9\b",
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+clean\s+-[a-z]*f",
    r"\bgit\s+push\s+[^\n]*(--force\b|-f\b)",
    r"\bdocker\s+volume\s+(rm|prune)\b",
    r"\bdocker\s+system\s+prune\b",
    r"(curl|wget)[^\n|]*\|\s*(sudo\s+)?(sh|bash|zsh)\b",
    r"/dev/sd[a-z]",
    r":\(\)\s*\{",
    r">\s*/dev/(sd|nvme|hd)",
]
_DESTRUCTIVE_RE = [re.compile(p) for p in DESTRUCTIVE_COMMAND_PATTERNS]


def classify_command(command: str) -> RiskClass:
    """Destructive for recursive deletes, privilege and disk operations."""
    lowered = command.lower()
    if any(p.search(lowered) for p in _DESTRUCTIVE_RE):
        return RiskClass.DESTRUCTIVE
    return RiskClass.MUTATING


def _classify_arguments(arguments: dict[str, Any]) -> RiskClass:
    return classify_command(str(arguments.get("command", "")))


def _command_result(snap: ProcessSnapshot) -> dict[str, Any]:
    result = snap.to_command_result()
    payload = result.to_dict()
    if result.in_progress:
        summary = (
            f"Command is still running as managed process {snap.id}. "
            "Use get_command_result to poll, send_command_input to write to "
            "it, or terminate_command to stop it."
        )
    elif snap.state == ProcessState.COMPLETED:
        summary = f"Command exited with code {snap.exit_code}."
    else:
        summary = f"Command was stopped ({snap.state.value})."
    is_error = snap.state in (ProcessState.KILLED, ProcessState.TIMED_OUT) or (
        snap.state == ProcessState.COMPLETED and snap.exit_code != 0
    )
    out: dict[str, Any] = {
        "content": [
            {"type": "text", "text": summary},
            {"type": "json", "data": payload},
        ],
    }
    if is_error:
        out["is_error"] = True
    return out


class CommandTools:
    """Command handlers bound to one ProcessSupervisor."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        in_progress_seconds: float = 30.0,
    ) -> None:
        self._supervisor = supervisor
        self._in_progress_seconds = in_progress_seconds

    def descriptors(self) -> list[ToolDescriptor]:
        pid_schema = {"process_id": {"type": "string", "minLength": 1}}
        return [
            ToolDescriptor(
                name="execute_command",
                description=(
                    "Run a shell command in the workspace root. Returns "
                    "exit_code, stdout_tail, stderr_tail and "
                    "managed_process_id. Long-running commands return early "
                    "with exit_code null while they keep running. Set "
                    "interactive=true to be able to send input later."
                ),
                parameters=object_schema(
                    {
                        "command": {"type": "string", "minLength": 1},
                        "interactive": {"type": "boolean"},
                        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                    },
                    ["command"],
                ),
                risk_class=RiskClass.MUTATING,
                handler=self.execute_command,
                risk_classifier=_classify_arguments,
            ),
            ToolDescriptor(
                name="get_command_result",
                description=(
                    "Current output tails and state of a managed process. "
                    "wait_seconds waits for it to finish first."
                ),
                parameters=object_schema(
                    {
                        **pid_schema,
                        "wait_seconds": {"type": "number", "minimum": 0},
                    },
                    ["process_id"],
                ),
                risk_class=RiskClass.SAFE,
                handler=self.get_command_result,
            ),
            ToolDescriptor(
                name="send_command_input",
                description="Write a line of input to an interactive managed process.",
                parameters=object_schema(
                    {
                        **pid_schema,
                        "input": {"type": "string"},
                        "append_newline": {"type": "boolean"},
                    },
                    ["process_id", "input"],
                ),
                risk_class=RiskClass.MUTATING,
                handler=self.send_command_input,
                lock_scope=no_lock,
            ),
            ToolDescriptor(
                name="terminate_command",
                description="Stop a managed process and everything it spawned.",
                parameters=object_schema(pid_schema, ["process_id"]),
                risk_class=RiskClass.MUTATING,
                handler=self.terminate_command,
                lock_scope=no_lock,
            ),
            ToolDescriptor(
                name="list_commands",
                description="List running and recently finished managed processes.",
                parameters=object_schema({}),
                risk_class=RiskClass.SAFE,
                handler=self.list_commands,
            ),
        ]

    async def execute_command(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        command = str(args["command"])
        interactive = bool(args.get("interactive", False))
        await ctx.emit(f"RUN: {command}\n")
        process_id = await self._supervisor.spawn(
            command,
            cwd=str(ctx.root),
            interactive=interactive,
            owner=ctx.call.id,
            sink=ctx.sink,
        )
        timeout_seconds = args.get("timeout_seconds")
        if timeout_seconds:
            self._supervisor.timeout(process_id, float(timeout_seconds))
        try:
            snap = await self._supervisor.wait(
                process_id, timeout=self._in_progress_seconds,
            )
        except asyncio.CancelledError:
            logger.warning(
                "execute_command cancelled; killing %s (call_id=%s)",
                process_id, ctx.call.id[:12],
            )
            await self._supervisor.kill(process_id)
            raise
        if not snap.state.is_terminal:
            logger.info(
                "Command still running after %.1fs; returning handle %s",
                self._in_progress_seconds, process_id,
            )
        return _command_result(snap)

    async def get_command_result(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        wait_seconds = float(args.get("wait_seconds", 0) or 0)
        if wait_seconds > 0:
            snap = await self._supervisor.wait(
                args["process_id"],
                timeout=min(wait_seconds, self._in_progress_seconds),
            )
        else:
            snap = self._supervisor.get(args["process_id"])
        return _command_result(snap)

    async def send_command_input(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        text = str(args["input"])
        if args.get("append_newline", True):
            text += "\n"
        data = text.encode("utf-8")
        await self._supervisor.send_input(args["process_id"], data)
        return _text(f"Sent {len(data)} bytes to {args['process_id']}")

    async def terminate_command(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        snap = await self._supervisor.kill(args["process_id"])
        result = _command_result(snap)
        # Stopping on request is the expected outcome, not a tool failure.
        if snap.state == ProcessState.KILLED:
            result.pop("is_error", None)
        return result

    async def list_commands(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        snaps = self._supervisor.list_processes()
        if not snaps:
            return _text("No managed processes.")
        rows = [
            {
                "managed_process_id": s.id,
                "command": s.command,
                "state": s.state.value,
                "exit_code": s.exit_code,
                "pid": s.pid,
                "interactive": s.interactive,
            }
            for s in snaps
        ]
        return _text(dumps(rows))

