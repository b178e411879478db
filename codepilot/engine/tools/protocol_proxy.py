"""Externally-hosted tools reached over a request/response protocol.

The engine only depends on ``ProtocolHost``: an initialization
handshake that returns hosted tool descriptors, and
``request(method, params)`` returning ``{"result": ...}`` or
``{"error": {"code", "message"}}``. ``McpHost`` implements it with the
``mcp`` client library over stdio or SSE.

Hosted tools are exposed to the model as ``<server>__<tool>``. Every
host-side failure, whether an error response, an McpError or a broken
transport, becomes the same ``ProtocolToolError`` message.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from ..errors import ProtocolToolError
from ..models import RiskClass
from .base import ToolContext, ToolDescriptor, no_lock

logger = logging.getLogger(__name__)

NAME_SEPARATOR = "__"
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass(frozen=True)
class HostedTool:
    """Descriptor returned by a host's initialization handshake."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )
    annotations: dict[str, Any] = field(default_factory=dict)


def hosted_tool_name(server: str, tool: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", f"{server}{NAME_SEPARATOR}{tool}")


def risk_from_annotations(annotations: dict[str, Any]) -> RiskClass:
    if annotations.get("readOnlyHint"):
        return RiskClass.SAFE
    if annotations.get("destructiveHint"):
        return RiskClass.DESTRUCTIVE
    if annotations.get("openWorldHint"):
        return RiskClass.NETWORK
    return RiskClass.MUTATING


class ProtocolHost(ABC):
    """Abstract request/response contract of an external tool host."""

    def __init__(
        self,
        name: str,
        *,
        risk_class: RiskClass | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.name = name
        self.risk_class = risk_class
        self.system_prompt = system_prompt

    @abstractmethod
    async def initialize(self) -> list[HostedTool]:
        """Handshake; returns the host's tool descriptors."""

    @abstractmethod
    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Invoke ``method``; returns ``{"result": ...}`` or ``{"error": ...}``."""

    async def close(self) -> None:
        return None


class ProtocolProxy:
    """Turns one host's tools into registry descriptors."""

    def __init__(self, host: ProtocolHost, tools: list[HostedTool]) -> None:
        self._host = host
        self._tools = tools

    @property
    def host(self) -> ProtocolHost:
        return self._host

    def descriptors(self) -> list[ToolDescriptor]:
        out: list[ToolDescriptor] = []
        for tool in self._tools:
            risk = self._host.risk_class or risk_from_annotations(tool.annotations)
            schema = dict(tool.input_schema or {})
            schema.setdefault("type", "object")
            out.append(ToolDescriptor(
                name=hosted_tool_name(self._host.name, tool.name),
                description=tool.description or f"{tool.name} on {self._host.name}",
                parameters=schema,
                risk_class=risk,
                handler=self._make_handler(tool.name),
                lock_scope=no_lock if risk in (RiskClass.SAFE, RiskClass.NETWORK) else None,
                source=self._host.name,
            ))
        return out

    def _make_handler(self, method: str):
        async def handler(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
            return await self.call(method, args)
        return handler

    async def call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._host.request(method, params)
        except asyncio.CancelledError:
            raise
        except ProtocolToolError:
            raise
        except Exception as exc:
            logger.warning(
                "Host %s request %s failed: %s", self._host.name, method, exc,
            )
            raise ProtocolToolError(self._host.name, "transport", str(exc)) from exc

        if "error" in response and response["error"] is not None:
            error = response["error"]
            if isinstance(error, dict):
                code = error.get("code", "unknown")
                message = str(error.get("message", ""))
            else:
                code, message = "unknown", str(error)
            raise ProtocolToolError(self._host.name, code, message)

        result = response.get("result") or {}
        content = result.get("content") if isinstance(result, dict) else None
        if content is None:
            content = [{"type": "json", "data": result}]
        return {"content": content, "is_error": False}


# ── MCP implementation ────────────────────────────────────────


def _content_block(item: Any) -> dict[str, Any]:
    kind = getattr(item, "type", None)
    if kind == "text":
        return {"type": "text", "text": item.text}
    if kind == "image":
        return {"type": "image", "data": item.data, "mime_type": item.mimeType}
    if kind == "resource":
        resource = item.resource
        text = getattr(resource, "text", None)
        if text is not None:
            return {"type": "text", "text": text}
        return {"type": "json", "data": {"uri": str(resource.uri), "blob": True}}
    if hasattr(item, "model_dump"):
        return {"type": "json", "data": item.model_dump(mode="json")}
    return {"type": "text", "text": str(item)}


class McpHost(ProtocolHost):
    """MCP server connection (stdio or SSE).

    The client contexts are owned by a dedicated runner task, so the
    host can be initialized and closed from different tasks.
    """

    def __init__(
        self,
        name: str,
        transport: dict[str, Any],
        *,
        risk_class: RiskClass | None = None,
        system_prompt: str | None = None,
        handshake_timeout_seconds: float = 30.0,
        close_timeout_seconds: float = 5.0,
    ) -> None:
        super().__init__(name, risk_class=risk_class, system_prompt=system_prompt)
        self._transport = transport
        self._handshake_timeout = handshake_timeout_seconds
        self._close_timeout = close_timeout_seconds
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._closing = asyncio.Event()

    async def initialize(self) -> list[HostedTool]:
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(ready))
        try:
            tools = await asyncio.wait_for(ready, timeout=self._handshake_timeout)
        except asyncio.TimeoutError:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
            raise ProtocolToolError(
                self.name, "handshake",
                f"no response within {self._handshake_timeout:.1f}s",
            ) from None
        logger.info("MCP host %s ready with %d tools", self.name, len(tools))
        return tools

    def _open_transport(self):
        kind = str(self._transport.get("type", "stdio")).lower()
        if kind == "stdio":
            params = StdioServerParameters(
                command=self._transport["command"],
                args=list(self._transport.get("args") or []),
                env={**os.environ, **(self._transport.get("env") or {})},
            )
            return stdio_client(params)
        if kind == "sse":
            return sse_client(
                self._transport["url"],
                headers=self._transport.get("headers") or None,
            )
        raise ValueError(f"Unsupported MCP transport type: {kind}")

    async def _run(self, ready: asyncio.Future) -> None:
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(self._open_transport())
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                listed = await session.list_tools()
                tools = [
                    HostedTool(
                        name=t.name,
                        description=t.description or "",
                        input_schema=dict(t.inputSchema or {}),
                        annotations=(
                            t.annotations.model_dump(exclude_none=True)
                            if t.annotations is not None else {}
                        ),
                    )
                    for t in listed.tools
                ]
                self._session = session
                ready.set_result(tools)
                await self._closing.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("MCP host %s connection ended: %s", self.name, exc)
        finally:
            self._session = None

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        session = self._session
        if session is None:
            return {"error": {"code": "unavailable", "message": "not connected"}}
        try:
            result = await session.call_tool(method, params)
        except McpError as exc:
            return {"error": {"code": exc.error.code, "message": exc.error.message}}
        blocks = [_content_block(item) for item in result.content]
        if result.isError:
            message = "\n".join(b.get("text", "") for b in blocks if b["type"] == "text")
            return {"error": {"code": "tool_error", "message": message or "tool failed"}}
        structured = getattr(result, "structuredContent", None)
        if structured and not blocks:
            blocks = [{"type": "json", "data": structured}]
        return {"result": {"content": blocks}}

    async def close(self) -> None:
        self._closing.set()
        if self._runner is None:
            return
        try:
            await asyncio.wait_for(self._runner, timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("MCP host %s did not close in time; cancelling", self.name)
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
        self._runner = None
