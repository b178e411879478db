"""codepilot: an autonomous coding agent engine with sandboxed tools."""
from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "AgentRuntime",
    "TaskEngine",
    "setup_logging",
    "__version__",
]


def __getattr__(name: str):
    if name in ("AgentRuntime", "setup_logging"):
        from . import app
        return getattr(app, name)
    if name == "TaskEngine":
        from .engine.task_engine import TaskEngine
        return TaskEngine
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
