"""Event types emitted by the task engine.

Each event corresponds to an engine callback dict, parsed into
a typed dataclass for safe consumption by a UI.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the task engine."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class TaskStateChanged(EngineEvent):
    event_type: str = "task_state_changed"
    old_state: str = ""
    new_state: str = ""
    call_id: str | None = None
    error: str | None = None


@dataclass
class StreamChunk(EngineEvent):
    event_type: str = "stream_chunk"
    text: str = ""


@dataclass
class ToolCallStarted(EngineEvent):
    event_type: str = "tool_call_started"
    call_id: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    risk_class: str = ""


@dataclass
class ToolCallDelta(EngineEvent):
    event_type: str = "tool_call_delta"
    call_id: str = ""
    tool_name: str = ""
    delta: str = ""
    stream: str = "stdout"


@dataclass
class ToolCallCompleted(EngineEvent):
    event_type: str = "tool_call_completed"
    call_id: str = ""
    tool_name: str = ""
    result: str = ""
    is_error: bool = False


@dataclass
class PermissionRequest(EngineEvent):
    event_type: str = "permission_request"
    call_id: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    risk_class: str = ""


@dataclass
class ProcessStatus(EngineEvent):
    event_type: str = "process_status"
    process_id: str = ""
    state: str | None = None
    exit_code: int | None = None


@dataclass
class EngineErrorEvent(EngineEvent):
    event_type: str = "engine_error"
    kind: str = ""
    message: str = ""


@dataclass
class Usage(EngineEvent):
    event_type: str = "usage"
    usage: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "task_state_changed": TaskStateChanged,
    "stream_chunk": StreamChunk,
    "tool_call_started": ToolCallStarted,
    "tool_call_delta": ToolCallDelta,
    "tool_call_completed": ToolCallCompleted,
    "permission_request": PermissionRequest,
    "process_status": ProcessStatus,
    "engine_error": EngineErrorEvent,
    "usage": Usage,
}


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Flatten an event into the callback dict shape (``event`` key, no Nones)."""
    payload = {k: v for k, v in asdict(event).items() if v is not None}
    payload["event"] = payload.pop("event_type", event.event_type)
    return payload


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Parse a callback dict; unknown event names fall back to EngineEvent."""
    name = data.get("event", "")
    event_cls = _EVENT_MAP.get(name, EngineEvent)
    accepted = {f.name for f in fields(event_cls)}
    kwargs = {k: data[k] for k in accepted.intersection(data)}
    kwargs.setdefault("event_type", name)
    return event_cls(**kwargs)
