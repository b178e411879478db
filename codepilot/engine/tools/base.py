"""Handler contract shared by every tool capability.

A capability is an object exposing ``descriptors()``; each descriptor
binds a tool name to an async handler with the uniform
``(context, arguments) -> result dict`` contract. Result dicts use the
same shape everywhere: ``{"content": [blocks...], "is_error": bool}``.
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..models import OutputChunk, RiskClass, ToolCall

if TYPE_CHECKING:
    from ..process_supervisor import OutputSink, ProcessSupervisor
    from ..workspace import Workspace


def _text(text: str) -> dict[str, Any]:
    """Format a successful text response."""
    return {"content": [{"type": "text", "text": text}]}


def _json(data: Any) -> dict[str, Any]:
    """Format a successful structured response."""
    return {"content": [{"type": "json", "data": data}]}


def _error(text: str) -> dict[str, Any]:
    """Format an error response."""
    return {
        "content": [{"type": "text", "text": f"ERROR: {text}"}],
        "is_error": True,
    }


@dataclass
class ToolContext:
    """Bounded execution context handed to a handler.

    ``cancelled`` is set when the owning task is being cancelled;
    handlers that poll or loop should check it. ``sink`` receives
    incremental output before the handler formally returns.
    """
    call: ToolCall
    workspace: Workspace
    cancelled: asyncio.Event
    sink: OutputSink | None = None
    supervisor: ProcessSupervisor | None = None

    @property
    def root(self) -> Path:
        return self.workspace.root

    async def emit(self, text: str, stream: str = "stdout") -> None:
        if self.sink is not None and text:
            await self.sink(OutputChunk(stream, text))


ToolHandler = Callable[[ToolContext, dict[str, Any]], Awaitable[dict[str, Any]]]
RiskClassifier = Callable[[dict[str, Any]], RiskClass]
# Returns (path scope, "read" | "write") or None for no filesystem lock.
LockScope = Callable[["Workspace", dict[str, Any]], "tuple[Path, str] | None"]


def no_lock(workspace: Workspace, arguments: dict[str, Any]) -> None:
    """Lock scope for tools that never touch the workspace filesystem."""
    return None


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable binding of a tool name to its schema, risk and handler."""
    name: str
    description: str
    parameters: dict[str, Any]
    risk_class: RiskClass
    handler: ToolHandler = field(repr=False, compare=False)
    risk_classifier: RiskClassifier | None = field(
        default=None, repr=False, compare=False,
    )
    lock_scope: LockScope | None = field(default=None, repr=False, compare=False)
    terminal: bool = False
    source: str = "builtin"

    def effective_risk(self, arguments: dict[str, Any]) -> RiskClass:
        """Static class, escalated by the argument classifier if any."""
        if self.risk_classifier is None:
            return self.risk_class
        try:
            dynamic = self.risk_classifier(arguments)
        except Exception:
            return RiskClass.DESTRUCTIVE
        return RiskClass.highest(self.risk_class, dynamic)

    def to_schema(self) -> dict[str, Any]:
        """Model-facing tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


def object_schema(
    properties: dict[str, Any], required: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
        "additionalProperties": False,
    }


def dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)
