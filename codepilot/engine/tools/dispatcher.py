"""Validates tool calls and runs their handlers.

Every failure below the engine becomes an error ToolResult here:
validation problems, sandbox escapes, handler errors, timeouts and
unexpected crashes. Only cancellation propagates, so the engine can
account for the call itself.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

import jsonschema

from ..errors import (
    ArgumentError,
    EngineError,
    ExecutionError,
    MalformedArgumentsError,
    ToolCallTimeoutError,
    UnknownToolError,
)
from ..models import RiskClass, ToolCall, ToolResult
from ..process_supervisor import OutputSink, ProcessSupervisor
from ..workspace import WRITE, PathLocks, Workspace
from .base import ToolContext, ToolDescriptor, _error
from .registry import ToolRegistry

logger = logging.getLogger(__name__)


class Dispatcher:

    def __init__(
        self,
        registry: ToolRegistry,
        workspace: Workspace,
        *,
        supervisor: ProcessSupervisor | None = None,
        locks: PathLocks | None = None,
        tool_timeout_seconds: float = 600.0,
    ) -> None:
        self._registry = registry
        self._workspace = workspace
        self._supervisor = supervisor
        self._locks = locks or PathLocks()
        self._tool_timeout = tool_timeout_seconds
        self._call_seq = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def locks(self) -> PathLocks:
        return self._locks

    def validate(self, call: ToolCall) -> ToolDescriptor:
        """Resolve the descriptor and check arguments. Raises ValidationError."""
        if call.parse_error is not None:
            raise MalformedArgumentsError(call.name, call.parse_error)
        descriptor = self._registry.get(call.name)
        if descriptor is None:
            raise UnknownToolError(call.name)
        if not isinstance(call.arguments, dict):
            raise MalformedArgumentsError(call.name, "arguments must be an object")
        try:
            jsonschema.validate(call.arguments, descriptor.parameters)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(p) for p in exc.absolute_path)
            reason = f"{location}: {exc.message}" if location else exc.message
            raise ArgumentError(call.name, reason) from exc
        except jsonschema.SchemaError as exc:
            # Hosted tools occasionally ship schemas jsonschema rejects.
            logger.warning(
                "Skipping argument validation for %s: bad schema (%s)",
                call.name, exc.message,
            )
        return descriptor

    def risk_of(self, call: ToolCall) -> RiskClass:
        descriptor = self._registry.get(call.name)
        if descriptor is None:
            return RiskClass.DESTRUCTIVE
        return descriptor.effective_risk(call.arguments)

    def is_terminal(self, call: ToolCall) -> bool:
        descriptor = self._registry.get(call.name)
        return bool(descriptor and descriptor.terminal)

    def _lock_scope(
        self, descriptor: ToolDescriptor, arguments: dict[str, Any],
    ) -> tuple[Path, str] | None:
        if descriptor.lock_scope is not None:
            return descriptor.lock_scope(self._workspace, arguments)
        risk = descriptor.effective_risk(arguments)
        if risk in (RiskClass.MUTATING, RiskClass.DESTRUCTIVE):
            return (self._workspace.root, WRITE)
        return None

    async def dispatch(
        self,
        call: ToolCall,
        *,
        sink: OutputSink | None = None,
        cancelled: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute one call and return exactly one ToolResult for it."""
        try:
            descriptor = self.validate(call)
        except EngineError as exc:
            logger.info("Tool rejected call_id=%s: %s", call.id[:12], exc)
            return _to_result(call, _error(str(exc)))

        self._call_seq += 1
        seq = self._call_seq
        ctx = ToolContext(
            call=call,
            workspace=self._workspace,
            cancelled=cancelled or asyncio.Event(),
            sink=sink,
            supervisor=self._supervisor,
        )
        started = time.monotonic()
        logger.info(
            "Tool start seq=%s tool=%s call_id=%s timeout_s=%.1f",
            seq, call.name, call.id[:12], self._tool_timeout,
        )
        try:
            scope = self._lock_scope(descriptor, call.arguments)
            if scope is None:
                raw = await self._run(descriptor, ctx, call)
            else:
                async with self._locks.hold(*scope):
                    raw = await self._run(descriptor, ctx, call)
        except asyncio.CancelledError:
            logger.warning(
                "Tool cancelled seq=%s tool=%s call_id=%s",
                seq, call.name, call.id[:12],
            )
            raise
        except ToolCallTimeoutError as exc:
            logger.error(
                "Tool timeout seq=%s tool=%s call_id=%s timeout_s=%.1f",
                seq, call.name, call.id[:12], self._tool_timeout,
            )
            raw = _error(str(exc))
        except EngineError as exc:
            raw = _error(str(exc))
        except Exception as exc:
            logger.exception(
                "Tool crash seq=%s tool=%s call_id=%s",
                seq, call.name, call.id[:12],
            )
            raw = _error(str(ExecutionError(f"{call.name} failed: {exc}")))

        result = _to_result(call, raw)
        logger.info(
            "Tool end seq=%s tool=%s call_id=%s duration_s=%.2f is_error=%s",
            seq, call.name, call.id[:12],
            time.monotonic() - started, result.is_error,
        )
        return result

    async def _run(
        self, descriptor: ToolDescriptor, ctx: ToolContext, call: ToolCall,
    ) -> dict[str, Any]:
        if self._tool_timeout <= 0:
            return await descriptor.handler(ctx, call.arguments)
        try:
            return await asyncio.wait_for(
                descriptor.handler(ctx, call.arguments),
                timeout=self._tool_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ToolCallTimeoutError(call.name, self._tool_timeout) from exc


def _to_result(call: ToolCall, raw: dict[str, Any]) -> ToolResult:
    content = raw.get("content") or []
    return ToolResult(
        call_id=call.id,
        content=tuple(dict(block) for block in content),
        is_error=bool(raw.get("is_error", False)),
    )
