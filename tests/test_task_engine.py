"""TaskEngine scenarios driven by a scripted model."""
from __future__ import annotations

import asyncio

import pytest

from codepilot.engine.models import (
    AssistantMessage,
    ErrorNotice,
    PermissionMode,
    ProcessState,
    RiskClass,
    SendMessage,
    Shutdown,
    TaskState,
    ToolResult,
)
from codepilot.engine.providers.base import StreamEnd, ToolArgsDelta, ToolCallEnd, ToolCallStart
from codepilot.engine.conversation import INTERRUPTED_RESULT_TEXT
from codepilot.engine.task_engine import CANCELLED_RESULT_TEXT
from codepilot.engine.tools.base import ToolDescriptor, _text, object_schema
from codepilot.shared.services.session_store import JsonSessionStore

from conftest import text_turn, tool_turn, until


def _results(engine) -> list[ToolResult]:
    return [t for t in engine.conversation.turns if isinstance(t, ToolResult)]


@pytest.mark.asyncio
async def test_safe_tool_runs_without_approval_under_manual_mode(make_engine):
    h = make_engine([
        tool_turn(("list_files", {"path": "."}, "call_list")),
        text_turn("All files listed."),
    ])
    (h.workspace.root / "main.py").write_text("print('hi')\n")
    try:
        task = await h.engine.submit("list the files")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE

        assert h.events_of("permission_request") == []
        states = [e["new_state"] for e in h.events_of("task_state_changed")]
        assert TaskState.WAITING_APPROVAL.value not in states
        [result] = _results(h.engine)
        assert result.call_id == "call_list"
        assert not result.is_error
        assert "main.py" in result.text
        # Tool results are sent back on the next model request.
        assert len(h.provider.requests) == 2
        assert h.provider.requests[1].messages[-1]["role"] == "tool"
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_rejected_destructive_command_never_spawns(make_engine):
    h = make_engine([
        tool_turn(("execute_command", {"command": "rm -rf ."}, "call_rm")),
        text_turn("Understood, not deleting."),
    ])
    keep = h.workspace.root / "keep.txt"
    keep.write_text("precious")
    try:
        task = await h.engine.submit("clean up")
        await until(lambda: h.gate.pending is not None)
        assert h.engine.state == TaskState.WAITING_APPROVAL
        assert h.engine.waiting_call.id == "call_rm"
        [request] = h.events_of("permission_request")
        assert request["risk_class"] == RiskClass.DESTRUCTIVE.value

        assert h.engine.reject("call_rm", "unsafe")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE

        [result] = _results(h.engine)
        assert result.is_error
        assert result.text == "unsafe"
        assert h.supervisor.list_processes() == []
        assert keep.read_text() == "precious"
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_at_most_one_approval_pending(make_engine):
    h = make_engine([
        tool_turn(
            ("write_to_file", {"path": "a.txt", "content": "A"}, "call_a"),
            ("write_to_file", {"path": "b.txt", "content": "B"}, "call_b"),
        ),
        text_turn("Wrote both."),
    ])
    pending_at_request: list = []

    original = h.engine._event_callback

    async def watch(event):
        if event.get("event") == "permission_request":
            pending_at_request.append(h.gate.pending)
        await original(event)

    h.engine._event_callback = watch
    try:
        task = await h.engine.submit("write two files")
        await until(lambda: h.gate.pending is not None)
        assert h.gate.pending.id == "call_a"
        assert h.engine.approve("call_a")

        await until(lambda: h.gate.pending is not None and h.gate.pending.id == "call_b")
        assert h.engine.approve("call_b")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE

        assert pending_at_request == [None, None]
        assert [r.call_id for r in _results(h.engine)] == ["call_a", "call_b"]
        assert (h.workspace.root / "a.txt").read_text() == "A"
        assert (h.workspace.root / "b.txt").read_text() == "B"
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_cancel_kills_running_command_and_resolves_calls(make_engine):
    h = make_engine(
        [tool_turn(("execute_command", {"command": "sleep 30"}, "call_sleep"))],
        mode=PermissionMode.FULL_AUTONOMOUS,
    )
    try:
        await h.engine.submit("wait a while")
        await until(lambda: bool(h.supervisor.live_ids()))

        assert await h.engine.cancel()
        assert h.engine.state == TaskState.CANCELLED
        assert h.supervisor.live_ids() == []
        assert h.engine.conversation.pending_calls == []
        [result] = _results(h.engine)
        assert result.is_error
        assert result.text == CANCELLED_RESULT_TEXT
        [snap] = h.supervisor.list_processes()
        assert snap.state == ProcessState.KILLED
        # Nothing left to cancel.
        assert not await h.engine.cancel()
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_approval(make_engine):
    h = make_engine([
        tool_turn(("write_to_file", {"path": "x.txt", "content": "x"}, "call_x")),
    ])
    try:
        await h.engine.submit("write")
        await until(lambda: h.gate.pending is not None)
        assert await h.engine.cancel()
        assert h.engine.state == TaskState.CANCELLED
        assert h.gate.pending is None
        assert h.engine.conversation.is_resolved("call_x")
        assert not (h.workspace.root / "x.txt").exists()

        await h.engine.new_task()
        assert h.engine.state == TaskState.IDLE
        assert len(h.engine.conversation) == 0
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_transport_failure_returns_to_idle(make_engine):
    h = make_engine(
        [ConnectionError("connection reset"), ConnectionError("connection reset")],
        retry_attempts=2,
    )
    try:
        task = await h.engine.submit("hello")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE

        notice = h.engine.conversation.last
        assert isinstance(notice, ErrorNotice)
        assert notice.kind == "transport"
        assert "after 2 attempt(s)" in notice.message
        assert len(h.provider.requests) == 2
        [error] = h.events_of("engine_error")
        assert error["kind"] == "transport"
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_attempt_completion_completes_task(make_engine):
    h = make_engine([
        tool_turn(("attempt_completion", {"result": "Added README."}, "call_done")),
    ])
    try:
        task = await h.engine.submit("add a readme")
        assert await asyncio.wait_for(task, 5) == TaskState.COMPLETED
        [result] = _results(h.engine)
        assert result.text == "Added README."
        assert len(h.provider.requests) == 1

        # A follow-up instruction restarts from Completed.
        h.provider.turns.append(text_turn("ok"))
        task = await h.engine.submit("thanks")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_malformed_arguments_skip_the_gate(make_engine):
    h = make_engine([
        [
            ToolCallStart("call_bad", "write_to_file"),
            ToolArgsDelta("call_bad", '{"path": "a.txt", "content": '),
            ToolCallEnd("call_bad"),
            StreamEnd(),
        ],
        text_turn("Sorry."),
    ])
    try:
        task = await h.engine.submit("write")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
        assert h.events_of("permission_request") == []
        [result] = _results(h.engine)
        assert result.is_error
        assert result.text.startswith("ERROR: Malformed arguments for 'write_to_file'")
        assert not (h.workspace.root / "a.txt").exists()
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_unknown_tool_and_sandbox_errors_become_results(make_engine):
    h = make_engine(
        [
            tool_turn(
                ("no_such_tool", {}, "call_unknown"),
                ("read_file", {"path": "../../etc/passwd"}, "call_escape"),
            ),
            text_turn("ok"),
        ],
        mode=PermissionMode.FULL_AUTONOMOUS,
    )
    try:
        task = await h.engine.submit("go")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
        unknown, escape = _results(h.engine)
        assert unknown.text == "ERROR: Unknown tool: no_such_tool"
        assert escape.is_error
        assert "outside the workspace root" in escape.text
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_pause_holds_next_model_turn_until_resume(make_engine):
    h = make_engine(
        [
            tool_turn(("execute_command", {"command": "sleep 0.3"}, "call_nap")),
            text_turn("Rested."),
        ],
        mode=PermissionMode.FULL_AUTONOMOUS,
    )
    try:
        task = await h.engine.submit("nap")
        await until(lambda: bool(h.supervisor.live_ids()))
        assert await h.engine.pause()
        assert h.engine.state == TaskState.PAUSED

        await until(lambda: h.engine.conversation.is_resolved("call_nap"))
        await asyncio.sleep(0.1)
        assert h.engine.state == TaskState.PAUSED
        assert len(h.provider.requests) == 1

        assert await h.engine.resume()
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
        assert len(h.provider.requests) == 2
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_session_saved_at_pause_can_be_resumed(make_engine, tmp_path):
    store = JsonSessionStore(tmp_path / "sessions")
    h = make_engine(
        [tool_turn(("execute_command", {"command": "sleep 30"}, "call_serve"))],
        mode=PermissionMode.FULL_AUTONOMOUS,
        session_store=store,
    )
    try:
        await h.engine.submit("serve")
        await until(lambda: bool(h.supervisor.live_ids()))
        assert await h.engine.pause()
        saved = store.load(h.engine.session_id)
        assert saved["state"] == TaskState.PAUSED.value
        assert saved["conversation"][-1]["role"] == "assistant"
        restored = store.load_conversation(h.engine.session_id)
    finally:
        await h.close()

    assert restored.pending_calls == []
    assert restored.last.call_id == "call_serve"
    assert restored.last.is_error
    assert restored.last.text == INTERRUPTED_RESULT_TEXT

    resumed = make_engine(
        [text_turn("Picking up where we left off.")],
        mode=PermissionMode.FULL_AUTONOMOUS,
        conversation=restored,
    )
    try:
        task = await resumed.engine.submit("continue")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
        assert isinstance(resumed.engine.conversation.last, AssistantMessage)
        assert resumed.engine.conversation.last.text == "Picking up where we left off."
    finally:
        await resumed.close()


@pytest.mark.asyncio
async def test_stream_events_and_session_snapshot(make_engine, tmp_path):
    store = JsonSessionStore(tmp_path / "sessions")
    h = make_engine([text_turn("Hello there.")], session_store=store)
    try:
        task = await h.engine.submit("hi")
        await asyncio.wait_for(task, 5)

        assert "".join(e["text"] for e in h.events_of("stream_chunk")) == "Hello there."
        assert h.events_of("usage")[0]["usage"]["output_tokens"] == 3
        snapshot = store.load(h.engine.session_id)
        assert snapshot["state"] == TaskState.IDLE.value
        roles = [t["role"] for t in snapshot["conversation"]]
        assert roles == ["user", "assistant"]
        restored = store.load_conversation(h.engine.session_id)
        assert isinstance(restored.last, AssistantMessage)
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_deny_all_never_invokes_handler(make_engine):
    calls = []

    async def handler(ctx, args):
        calls.append(args)
        return _text("touched")

    touch = ToolDescriptor(
        name="touch_thing",
        description="test tool",
        parameters=object_schema({"name": {"type": "string"}}, ["name"]),
        risk_class=RiskClass.MUTATING,
        handler=handler,
    )
    h = make_engine(
        [tool_turn(("touch_thing", {"name": "x"}, "call_touch")), text_turn("ok")],
        mode=PermissionMode.DENY_ALL,
        extra_descriptors=[touch],
    )
    try:
        task = await h.engine.submit("touch it")
        assert await asyncio.wait_for(task, 5) == TaskState.IDLE
        assert calls == []
        [result] = _results(h.engine)
        assert result.is_error
        assert "Permission denied" in result.text
    finally:
        await h.close()


@pytest.mark.asyncio
async def test_control_channel_drives_engine(make_engine):
    h = make_engine([text_turn("Done.")])
    commands: asyncio.Queue = asyncio.Queue()
    runner = asyncio.create_task(h.engine.run(commands))
    try:
        await commands.put(SendMessage("hello"))
        await until(lambda: len(h.engine.conversation) == 2 and not h.engine.is_busy)
        assert h.engine.state == TaskState.IDLE

        await commands.put(Shutdown())
        await asyncio.wait_for(runner, 5)
    finally:
        if not runner.done():
            runner.cancel()
        await h.close()


@pytest.mark.asyncio
async def test_start_task_rejected_while_running(make_engine):
    h = make_engine([tool_turn(("write_to_file", {"path": "a", "content": ""}, "call_w"))])
    try:
        await h.engine.submit("write")
        await until(lambda: h.gate.pending is not None)
        with pytest.raises(ValueError):
            await h.engine.start_task("another")
    finally:
        await h.close()
