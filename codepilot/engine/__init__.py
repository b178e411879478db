"""Task engine: lifecycle, permission gate, tool dispatch and process supervision."""
from .models import (
    AssistantMessage,
    CommandResult,
    DecisionKind,
    ErrorNotice,
    PermissionDecision,
    PermissionMode,
    ProcessState,
    RiskClass,
    TaskState,
    ToolCall,
    ToolResult,
    UserMessage,
)
from .config import EngineConfig
from .errors import (
    ArgumentError,
    EngineError,
    ExecutionError,
    FatalEngineError,
    PermissionDenied,
    SandboxViolation,
    TransportError,
    ValidationError,
)

__all__ = [
    # Engine (lazy import to avoid circular deps)
    "TaskEngine",
    "Conversation",
    "PermissionGate",
    "ProcessSupervisor",
    "Workspace",
    # YAML config (lazy import)
    "CodepilotConfig",
    "load_layered_config",
    # Models
    "AssistantMessage",
    "CommandResult",
    "DecisionKind",
    "ErrorNotice",
    "PermissionDecision",
    "PermissionMode",
    "ProcessState",
    "RiskClass",
    "TaskState",
    "ToolCall",
    "ToolResult",
    "UserMessage",
    # Config
    "EngineConfig",
    # Errors
    "ArgumentError",
    "EngineError",
    "ExecutionError",
    "FatalEngineError",
    "PermissionDenied",
    "SandboxViolation",
    "TransportError",
    "ValidationError",
]


def __getattr__(name: str):
    if name == "TaskEngine":
        from .task_engine import TaskEngine
        return TaskEngine
    if name == "Conversation":
        from .conversation import Conversation
        return Conversation
    if name == "PermissionGate":
        from .permission import PermissionGate
        return PermissionGate
    if name == "ProcessSupervisor":
        from .process_supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "Workspace":
        from .workspace import Workspace
        return Workspace
    if name == "CodepilotConfig":
        from .yaml_config import CodepilotConfig
        return CodepilotConfig
    if name == "load_layered_config":
        from .yaml_config import load_layered_config
        return load_layered_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
