"""Core data models for the task engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class TaskState(str, Enum):
    """Task lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PermissionMode(str, Enum):
    """Operator-configured authorization policy."""
    FULL_AUTONOMOUS = "full_autonomous"
    MANUAL_APPROVAL = "manual_approval"
    DENY_ALL = "deny_all"


class RiskClass(str, Enum):
    """Static impact classification of a tool."""
    SAFE = "safe"
    NETWORK = "network"
    MUTATING = "mutating"
    DESTRUCTIVE = "destructive"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]

    @classmethod
    def highest(cls, *classes: RiskClass) -> RiskClass:
        return max(classes, key=lambda c: c.severity)


_RISK_SEVERITY = {
    RiskClass.SAFE: 0,
    RiskClass.NETWORK: 1,
    RiskClass.MUTATING: 2,
    RiskClass.DESTRUCTIVE: 3,
}


class DecisionKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK_OPERATOR = "ask_operator"


class ProcessState(str, Enum):
    """ManagedProcess lifecycle states."""
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    KILLED = "killed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessState.COMPLETED,
            ProcessState.KILLED,
            ProcessState.TIMED_OUT,
        )


def make_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of PermissionGate.authorize()."""
    kind: DecisionKind
    reason: str | None = None

    @classmethod
    def allow(cls) -> PermissionDecision:
        return cls(DecisionKind.ALLOW)

    @classmethod
    def deny(cls, reason: str) -> PermissionDecision:
        return cls(DecisionKind.DENY, reason)

    @classmethod
    def ask_operator(cls) -> PermissionDecision:
        return cls(DecisionKind.ASK_OPERATOR)


@dataclass(frozen=True)
class ToolCall:
    """One effectful action requested by the model.

    ``parse_error`` is set by the stream accumulator when the argument
    block could not be decoded into a JSON object.
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
        }
        if self.parse_error:
            d["parse_error"] = self.parse_error
        return d


# ── Conversation turns ─────────────────────────────────────────


@dataclass(frozen=True)
class UserMessage:
    text: str
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="user", init=False)


@dataclass(frozen=True)
class AssistantMessage:
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="assistant", init=False)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one ToolCall.

    ``content`` is a list of blocks: ``{"type": "text", "text": ...}``,
    ``{"type": "json", "data": ...}`` or
    ``{"type": "image", "data": <base64>, "mime_type": ...}``.
    """
    call_id: str
    content: tuple[dict[str, Any], ...] = ()
    is_error: bool = False
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="tool", init=False)

    @classmethod
    def from_text(
        cls, call_id: str, text: str, *, is_error: bool = False,
    ) -> ToolResult:
        return cls(call_id, ({"type": "text", "text": text},), is_error)

    @property
    def text(self) -> str:
        """Plain-text rendering of all blocks."""
        parts: list[str] = []
        for block in self.content:
            kind = block.get("type")
            if kind == "text":
                parts.append(str(block.get("text", "")))
            elif kind == "json":
                parts.append(json.dumps(block.get("data"), indent=2))
            elif kind == "image":
                parts.append(f"[image {block.get('mime_type', '')}]")
        return "\n".join(parts)


@dataclass(frozen=True)
class ErrorNotice:
    """Typed error surfaced when a step fails (e.g. transport exhaustion)."""
    kind: str
    message: str
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="error", init=False)


Turn = Union[UserMessage, AssistantMessage, ToolResult, ErrorNotice]


# ── Tool execution surfaces ───────────────────────────────────


@dataclass(frozen=True)
class OutputChunk:
    """Incremental process/tool output tagged with its stream."""
    stream: str  # "stdout" | "stderr"
    text: str


@dataclass
class CommandResult:
    """Command execution result surfaced to the model."""
    exit_code: int | None
    stdout_tail: str
    stderr_tail: str
    managed_process_id: str
    state: ProcessState = ProcessState.RUNNING

    @property
    def in_progress(self) -> bool:
        return not self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
            "managed_process_id": self.managed_process_id,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class ProcessSnapshot:
    """Read-only view of a ManagedProcess, safe to hand out by id."""
    id: str
    command: str
    state: ProcessState
    exit_code: int | None
    interactive: bool
    stdout_tail: str
    stderr_tail: str
    owner: str | None = None
    pid: int | None = None

    def to_command_result(self) -> CommandResult:
        return CommandResult(
            exit_code=self.exit_code,
            stdout_tail=self.stdout_tail,
            stderr_tail=self.stderr_tail,
            managed_process_id=self.id,
            state=self.state,
        )


# ── Operator control commands ─────────────────────────────────


@dataclass(frozen=True)
class SendMessage:
    text: str


@dataclass(frozen=True)
class Approve:
    call_id: str


@dataclass(frozen=True)
class Reject:
    call_id: str
    reason: str = "Rejected by operator."


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class CancelTask:
    pass


@dataclass(frozen=True)
class NewTask:
    pass


@dataclass(frozen=True)
class SendProcessInput:
    process_id: str
    data: bytes


@dataclass(frozen=True)
class Shutdown:
    pass


ControlCommand = Union[
    SendMessage, Approve, Reject, Pause, Resume, CancelTask, NewTask,
    SendProcessInput, Shutdown,
]
