import asyncio
import json

import pytest

from codepilot.adapters.event_bus import EventBus
from codepilot.adapters.events import (
    EngineEvent,
    PermissionRequest,
    StreamChunk,
    TaskStateChanged,
    dict_to_event,
    event_to_dict,
)
from codepilot.engine.conversation import Conversation
from codepilot.engine.models import UserMessage
from codepilot.shared.services.session_store import JsonSessionStore


def test_dict_to_event_maps_known_types():
    event = dict_to_event({
        "event": "task_state_changed",
        "old_state": "running",
        "new_state": "waiting_approval",
        "call_id": "call_1",
        "unexpected": True,
    })
    assert isinstance(event, TaskStateChanged)
    assert event.new_state == "waiting_approval"
    assert event.call_id == "call_1"

    unknown = dict_to_event({"event": "mystery", "x": 1})
    assert type(unknown) is EngineEvent
    assert unknown.event_type == "mystery"


def test_event_to_dict_uses_event_key():
    d = event_to_dict(PermissionRequest(
        call_id="c1", tool_name="execute_command", arguments={"command": "ls"},
        risk_class="mutating",
    ))
    assert d["event"] == "permission_request"
    assert "event_type" not in d
    assert "session_id" not in d
    assert json.loads(json.dumps(d))["arguments"] == {"command": "ls"}


@pytest.mark.asyncio
async def test_bus_delivers_in_order_and_stops_after_close():
    bus = EventBus()
    callback = bus.make_callback()
    for text in ("a", "b", "c"):
        await callback({"event": "stream_chunk", "text": text})
    assert bus.pending == 3
    bus.close()
    await callback({"event": "stream_chunk", "text": "dropped"})

    received = [e async for e in bus.consume()]
    assert [e.text for e in received] == ["a", "b", "c"]
    assert all(isinstance(e, StreamChunk) for e in received)


@pytest.mark.asyncio
async def test_full_bus_drops_after_timeout():
    bus = EventBus(maxsize=1, put_timeout=0.05)
    await bus.emit(StreamChunk(text="kept"))
    await bus.emit(StreamChunk(text="dropped"))
    assert bus.pending == 1

    bus.reset()
    assert bus.pending == 0
    await asyncio.wait_for(bus.emit(StreamChunk(text="again")), 1)
    assert bus.pending == 1


class TestJsonSessionStore:

    def test_save_load_and_list(self, tmp_path):
        store = JsonSessionStore(tmp_path / "sessions")
        conv = Conversation()
        conv.append(UserMessage("hello"))
        store.save("s1", {"session_id": "s1", "conversation": conv.to_dicts()})

        assert store.list_sessions() == ["s1"]
        assert store.load("s1")["session_id"] == "s1"
        restored = store.load_conversation("s1")
        assert restored.last.text == "hello"
        assert store.load("missing") is None
        assert store.load_conversation("missing") is None

    def test_corrupt_file_loads_as_none(self, tmp_path):
        store = JsonSessionStore(tmp_path)
        (tmp_path / "bad.json").write_text("{not json")
        assert store.load("bad") is None

    @pytest.mark.parametrize("session_id", ["../escape", "a/b", "", "x" * 200])
    def test_unsafe_ids_rejected(self, tmp_path, session_id):
        store = JsonSessionStore(tmp_path)
        with pytest.raises(ValueError, match="Invalid session id"):
            store.save(session_id, {})
