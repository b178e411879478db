"""Exception hierarchy for the task engine.

Specific exceptions for each failure mode. Tool-level errors are
recoverable within the conversation; only FatalEngineError aborts
startup.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""
    kind = "engine"


# ── Validation ────────────────────────────────────────────────


class ValidationError(EngineError):
    """A tool call's arguments or name could not be accepted."""
    kind = "validation"


class ArgumentError(ValidationError):
    """Arguments do not match the tool's schema."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Invalid arguments for '{tool_name}': {reason}")


class MalformedArgumentsError(ValidationError):
    """The model's argument block is not a JSON object."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Malformed arguments for '{tool_name}': {reason}"
        )


class UnknownToolError(ValidationError):
    """No descriptor is registered under the requested name."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


# ── Sandbox / permission ──────────────────────────────────────


class SandboxViolation(EngineError):
    """A path resolved outside the workspace root."""
    kind = "sandbox"

    def __init__(self, path: str, root: str):
        self.path = path
        self.root = root
        super().__init__(
            f"Path '{path}' resolves outside the workspace root {root}"
        )


class PermissionDenied(EngineError):
    """Policy refused the call."""
    kind = "permission"

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(reason)


# ── Execution ─────────────────────────────────────────────────


class ExecutionError(EngineError):
    """Tool or process internal failure."""
    kind = "execution"


class ProcessNotFoundError(ExecutionError):
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Managed process not found: {process_id}")


class ProcessNotInteractiveError(ExecutionError):
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(
            f"Managed process {process_id} was not started as interactive; "
            "it does not accept input"
        )


class ToolCallTimeoutError(ExecutionError):
    """A single tool call exceeded its time budget."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Tool call '{tool_name}' timed out after {timeout_seconds:.0f}s"
        )


class ProtocolToolError(ExecutionError):
    """An externally-hosted tool returned an error or could not be reached."""
    def __init__(self, host: str, code: int | str, message: str):
        self.host = host
        self.code = code
        self.message = message
        super().__init__(f"{host} error {code}: {message}")


# ── Transport ─────────────────────────────────────────────────


class TransportError(EngineError):
    """Model or network transport failure after bounded retries."""
    kind = "transport"

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message)


# ── Fatal ─────────────────────────────────────────────────────


class FatalEngineError(EngineError):
    """Startup or engine invariant violation. Not recoverable."""
    kind = "fatal"


class DuplicateToolError(FatalEngineError):
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool already registered: {tool_name}")


class RegistryFrozenError(FatalEngineError):
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(
            f"Cannot register '{tool_name}': tool registry is frozen"
        )


class ConversationError(FatalEngineError):
    """Append would break the conversation's ordering invariants."""
