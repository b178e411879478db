"""Adapters package - bridge between the engine and UI frontends."""
from __future__ import annotations

__all__ = [
    "EventBus",
    "dict_to_event",
    "event_to_dict",
]


def __getattr__(name: str):
    if name == "EventBus":
        from .event_bus import EventBus
        return EventBus
    if name in ("dict_to_event", "event_to_dict"):
        from . import events
        return getattr(events, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
