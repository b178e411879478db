import pytest

from codepilot.engine.accumulator import AccumulatorState, StreamAccumulator
from codepilot.engine.providers.base import (
    StreamEnd,
    TextDelta,
    ToolArgsDelta,
    ToolCallEnd,
    ToolCallStart,
)


def test_text_then_tool_call():
    acc = StreamAccumulator()
    assert acc.feed(TextDelta("Let me ")).text == "Let me "
    acc.feed(TextDelta("look."))
    assert acc.state == AccumulatorState.IN_TEXT

    started = acc.feed(ToolCallStart("c1", "read_file"))
    assert started.tool_call_started == ("c1", "read_file")
    assert acc.state == AccumulatorState.IN_TOOL_ARGS
    acc.feed(ToolArgsDelta("c1", '{"path":'))
    acc.feed(ToolArgsDelta("c1", ' "a.py"}'))
    done = acc.feed(ToolCallEnd("c1"))
    assert done.tool_call.arguments == {"path": "a.py"}
    assert done.tool_call.parse_error is None
    assert acc.state == AccumulatorState.IDLE

    end = acc.feed(StreamEnd({"output_tokens": 4}))
    assert end.finished
    message = acc.to_message()
    assert message.text == "Let me look."
    assert [c.id for c in message.tool_calls] == ["c1"]


def test_invalid_json_sets_parse_error():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "write_to_file"))
    acc.feed(ToolArgsDelta("c1", '{"path": '))
    call = acc.feed(ToolCallEnd("c1")).tool_call
    assert call.arguments == {}
    assert call.parse_error.startswith("invalid JSON")


def test_non_object_arguments_rejected():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "list_files"))
    acc.feed(ToolArgsDelta("c1", "[1, 2]"))
    call = acc.feed(ToolCallEnd("c1")).tool_call
    assert "expected a JSON object" in call.parse_error


def test_empty_arguments_mean_empty_object():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "list_commands"))
    call = acc.feed(ToolCallEnd("c1")).tool_call
    assert call.arguments == {}
    assert call.parse_error is None


def test_stream_end_closes_open_call():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "list_files"))
    acc.feed(ToolArgsDelta("c1", "{}"))
    out = acc.feed(StreamEnd())
    assert out.finished
    assert out.tool_call.id == "c1"
    with pytest.raises(ValueError):
        acc.feed(TextDelta("late"))


def test_new_start_closes_previous_call():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "list_files"))
    acc.feed(ToolArgsDelta("c1", "{}"))
    out = acc.feed(ToolCallStart("c2", "read_file"))
    assert out.tool_call.id == "c1"
    assert out.tool_call_started == ("c2", "read_file")


def test_duplicate_and_taken_ids_are_replaced():
    acc = StreamAccumulator(is_taken=lambda cid: cid == "old")
    acc.feed(ToolCallStart("old", "list_files"))
    first = acc.feed(ToolCallEnd("old")).tool_call
    acc.feed(ToolCallStart("", "list_files"))
    second = acc.feed(ToolCallEnd("")).tool_call
    acc.feed(ToolCallStart(second.id, "list_files"))
    third = acc.feed(ToolCallEnd(second.id)).tool_call

    ids = {first.id, second.id, third.id}
    assert len(ids) == 3
    assert "old" not in ids
    assert all(i.startswith("call_") for i in ids)


def test_text_inside_args_is_dropped():
    acc = StreamAccumulator()
    acc.feed(ToolCallStart("c1", "list_files"))
    assert acc.feed(TextDelta("noise")).text == ""
    acc.feed(ToolCallEnd("c1"))
    assert acc.text == ""
