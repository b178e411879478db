"""Tool capabilities and the default tool set."""
from __future__ import annotations

from collections.abc import Iterable

from ..process_supervisor import ProcessSupervisor
from ..workspace import Workspace
from .base import ToolContext, ToolDescriptor
from .command_tools import CommandTools, classify_command
from .dispatcher import Dispatcher
from .file_tools import FileTools
from .memory_tools import KnowledgeGraphStore, MemoryTools
from .protocol_proxy import HostedTool, McpHost, ProtocolHost, ProtocolProxy
from .registry import ToolRegistry
from .signal_tools import ASK_QUESTION, ATTEMPT_COMPLETION, signal_descriptors
from .web_tools import WebTools

__all__ = [
    "ASK_QUESTION",
    "ATTEMPT_COMPLETION",
    "CommandTools",
    "Dispatcher",
    "FileTools",
    "HostedTool",
    "KnowledgeGraphStore",
    "McpHost",
    "MemoryTools",
    "ProtocolHost",
    "ProtocolProxy",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "WebTools",
    "build_tool_registry",
    "classify_command",
]


def build_tool_registry(
    workspace: Workspace,
    supervisor: ProcessSupervisor,
    *,
    memory: KnowledgeGraphStore | None = None,
    web: WebTools | None = None,
    proxies: Iterable[ProtocolProxy] = (),
    in_progress_seconds: float = 30.0,
    freeze: bool = True,
) -> ToolRegistry:
    """Register the static tool set plus hosted tools, then freeze.

    A name collision anywhere raises DuplicateToolError.
    """
    registry = ToolRegistry()
    registry.register_all(FileTools(workspace).descriptors())
    registry.register_all(
        CommandTools(supervisor, in_progress_seconds=in_progress_seconds).descriptors()
    )
    if web is not None:
        registry.register_all(web.descriptors())
    registry.register_all(
        MemoryTools(memory or KnowledgeGraphStore(memory_only=True)).descriptors()
    )
    registry.register_all(signal_descriptors())
    for proxy in proxies:
        registry.register_all(proxy.descriptors())
    if freeze:
        registry.freeze()
    return registry
