"""Shared fakes: a scripted model provider and an engine harness."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pytest
import pytest_asyncio

from codepilot.engine.config import EngineConfig
from codepilot.engine.models import PermissionMode, ToolCall, make_call_id
from codepilot.engine.permission import PermissionGate
from codepilot.engine.process_supervisor import ProcessSupervisor
from codepilot.engine.providers.base import (
    ModelProvider,
    ModelRequest,
    RetryingProvider,
    StreamEnd,
    TextDelta,
    ToolArgsDelta,
    ToolCallEnd,
    ToolCallStart,
)
from codepilot.engine.task_engine import TaskEngine
from codepilot.engine.tools import build_tool_registry
from codepilot.engine.tools.dispatcher import Dispatcher
from codepilot.engine.workspace import Workspace


def text_turn(text: str) -> list:
    return [TextDelta(text), StreamEnd({"input_tokens": 10, "output_tokens": 3})]


def tool_turn(*calls: tuple, text: str = "") -> list:
    """Chunks for one assistant turn. Each call is (name, args) or (name, args, id)."""
    chunks: list = []
    if text:
        chunks.append(TextDelta(text))
    for call in calls:
        name, args = call[0], call[1]
        call_id = call[2] if len(call) > 2 else make_call_id()
        raw = args if isinstance(args, str) else json.dumps(args)
        chunks.append(ToolCallStart(call_id, name))
        # Split the argument block to exercise fragment accumulation.
        mid = len(raw) // 2
        chunks.append(ToolArgsDelta(call_id, raw[:mid]))
        chunks.append(ToolArgsDelta(call_id, raw[mid:]))
        chunks.append(ToolCallEnd(call_id))
    chunks.append(StreamEnd({"input_tokens": 20, "output_tokens": 8}))
    return chunks


class ScriptedProvider(ModelProvider):
    """Replays one scripted turn per request. An exception entry is raised instead."""

    def __init__(self, turns: list) -> None:
        self.turns = list(turns)
        self.requests: list[ModelRequest] = []

    @property
    def name(self) -> str:
        return "scripted"

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        turn = self.turns.pop(0) if self.turns else text_turn("done")
        if isinstance(turn, BaseException):
            raise turn
        for chunk in turn:
            await asyncio.sleep(0)
            yield chunk


async def until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@dataclass
class Harness:
    engine: TaskEngine
    provider: ScriptedProvider
    gate: PermissionGate
    supervisor: ProcessSupervisor
    workspace: Workspace
    dispatcher: Dispatcher
    events: list[dict[str, Any]] = field(default_factory=list)

    def events_of(self, name: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("event") == name]

    async def close(self) -> None:
        await self.engine.shutdown()


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    root = tmp_path / "ws"
    root.mkdir()
    return Workspace(root)


@pytest.fixture
def make_engine(workspace: Workspace):
    def _make(
        turns: list,
        *,
        mode: PermissionMode = PermissionMode.MANUAL_APPROVAL,
        in_progress_seconds: float = 30.0,
        retry_attempts: int = 1,
        session_store: Any | None = None,
        extra_descriptors: list | None = None,
        conversation: Any | None = None,
    ) -> Harness:
        supervisor = ProcessSupervisor(kill_grace_seconds=0.5)
        registry = build_tool_registry(
            workspace, supervisor,
            in_progress_seconds=in_progress_seconds,
            freeze=False,
        )
        registry.register_all(extra_descriptors or [])
        registry.freeze()
        dispatcher = Dispatcher(registry, workspace, supervisor=supervisor)
        gate = PermissionGate(mode, dispatcher.risk_of)
        provider = ScriptedProvider(turns)
        events: list[dict[str, Any]] = []

        async def on_event(event: dict[str, Any]) -> None:
            events.append(event)

        engine = TaskEngine(
            RetryingProvider(
                provider, max_attempts=retry_attempts, base_delay=0.0, max_delay=0.0,
            ),
            dispatcher,
            gate,
            supervisor,
            system_prompt="test",
            config=EngineConfig(permission_mode=mode, cancel_grace_seconds=2.0),
            session_store=session_store,
            conversation=conversation,
            event_callback=on_event,
        )
        return Harness(engine, provider, gate, supervisor, workspace, dispatcher, events)

    return _make


@pytest_asyncio.fixture
async def tools(workspace: Workspace):
    """Dispatcher over the default tool set with a short in-progress window."""
    supervisor = ProcessSupervisor(kill_grace_seconds=0.5)
    registry = build_tool_registry(workspace, supervisor, in_progress_seconds=1.0)
    dispatcher = Dispatcher(registry, workspace, supervisor=supervisor)
    yield dispatcher
    await supervisor.shutdown()


async def call_tool(dispatcher: Dispatcher, name: str, **arguments: Any):
    return await dispatcher.dispatch(ToolCall(make_call_id(), name, arguments))
