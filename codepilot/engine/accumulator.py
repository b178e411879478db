"""Explicit state machine assembling model chunks into a turn.

States: IDLE (between blocks), IN_TEXT (plain text streaming) and
IN_TOOL_ARGS (collecting one tool call's JSON argument fragments).
Each ``feed()`` returns what the engine should forward: text deltas
for the UI and tool calls as soon as their argument block completes.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import AssistantMessage, ToolCall, make_call_id
from .providers.base import (
    ModelChunk,
    StreamEnd,
    TextDelta,
    ToolArgsDelta,
    ToolCallEnd,
    ToolCallStart,
)

logger = logging.getLogger(__name__)


class AccumulatorState(str, Enum):
    IDLE = "idle"
    IN_TEXT = "in_text"
    IN_TOOL_ARGS = "in_tool_args"


@dataclass
class FeedResult:
    text: str = ""
    tool_call: ToolCall | None = None
    tool_args_fragment: str = ""
    tool_call_started: tuple[str, str] | None = None  # (id, name)
    finished: bool = False
    usage: dict[str, Any] = field(default_factory=dict)


class StreamAccumulator:

    def __init__(self, is_taken: Callable[[str], bool] | None = None) -> None:
        # Ids already used elsewhere in the conversation.
        self._is_taken = is_taken or (lambda _id: False)
        self.state = AccumulatorState.IDLE
        self._text: list[str] = []
        self._calls: list[ToolCall] = []
        self._seen_ids: set[str] = set()
        self._current_id: str | None = None
        self._current_name = ""
        self._args: list[str] = []
        self.finished = False
        self.usage: dict[str, Any] = {}

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self._calls)

    def feed(self, chunk: ModelChunk) -> FeedResult:
        if self.finished:
            raise ValueError("Accumulator already finished")

        if isinstance(chunk, TextDelta):
            if self.state == AccumulatorState.IN_TOOL_ARGS:
                # Text interleaved into an open argument block is dropped.
                logger.debug("Ignoring text delta inside tool args")
                return FeedResult()
            self.state = AccumulatorState.IN_TEXT
            self._text.append(chunk.text)
            return FeedResult(text=chunk.text)

        if isinstance(chunk, ToolCallStart):
            out = FeedResult()
            if self.state == AccumulatorState.IN_TOOL_ARGS:
                # A new call without an end closes the previous one.
                out.tool_call = self._close_call()
            self.state = AccumulatorState.IN_TOOL_ARGS
            call_id = chunk.id or make_call_id()
            if call_id in self._seen_ids or self._is_taken(call_id):
                call_id = make_call_id()
            self._seen_ids.add(call_id)
            self._current_id = call_id
            self._current_name = chunk.name
            self._args = []
            out.tool_call_started = (call_id, chunk.name)
            return out

        if isinstance(chunk, ToolArgsDelta):
            if self.state != AccumulatorState.IN_TOOL_ARGS:
                logger.debug("Ignoring args fragment outside a tool call")
                return FeedResult()
            self._args.append(chunk.fragment)
            return FeedResult(tool_args_fragment=chunk.fragment)

        if isinstance(chunk, ToolCallEnd):
            if self.state != AccumulatorState.IN_TOOL_ARGS:
                return FeedResult()
            call = self._close_call()
            self.state = AccumulatorState.IDLE
            return FeedResult(tool_call=call)

        if isinstance(chunk, StreamEnd):
            out = FeedResult(finished=True, usage=dict(chunk.usage))
            if self.state == AccumulatorState.IN_TOOL_ARGS:
                out.tool_call = self._close_call()
            self.state = AccumulatorState.IDLE
            self.finished = True
            self.usage = dict(chunk.usage)
            return out

        raise TypeError(f"Unknown model chunk: {chunk!r}")

    def _close_call(self) -> ToolCall:
        assert self._current_id is not None
        raw = "".join(self._args).strip()
        arguments: dict[str, Any] = {}
        parse_error: str | None = None
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                parse_error = f"invalid JSON ({exc.msg} at position {exc.pos})"
            else:
                if isinstance(parsed, dict):
                    arguments = parsed
                else:
                    parse_error = f"expected a JSON object, got {type(parsed).__name__}"
        call = ToolCall(
            id=self._current_id,
            name=self._current_name,
            arguments=arguments,
            parse_error=parse_error,
        )
        self._calls.append(call)
        self._current_id = None
        self._current_name = ""
        self._args = []
        return call

    def to_message(self) -> AssistantMessage:
        """Snapshot the accumulated turn; any open call is closed first."""
        if self.state == AccumulatorState.IN_TOOL_ARGS:
            self._close_call()
            self.state = AccumulatorState.IDLE
        return AssistantMessage(text=self.text, tool_calls=tuple(self._calls))
