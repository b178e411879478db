"""Append-only conversation log owned by the TaskEngine.

Enforces the call/result pairing: every ToolResult references exactly
one prior tool call id, exactly once, and the log cannot advance past
an AssistantMessage until all of its calls are resolved.
"""
from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from .errors import ConversationError
from .models import (
    AssistantMessage,
    ErrorNotice,
    ToolCall,
    ToolResult,
    Turn,
    UserMessage,
)

INTERRUPTED_RESULT_TEXT = "ERROR: Tool call was interrupted and did not complete."


class Conversation:
    """Ordered sequence of turns.

    Readers (UI, session store) only get copies via ``turns`` or
    ``to_dicts()``; mutation goes through ``append``.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._calls: dict[str, ToolCall] = {}
        self._resolved: set[str] = set()
        # Insertion order of calls still awaiting a result.
        self._pending: dict[str, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def pending_calls(self) -> list[ToolCall]:
        """Calls of the last AssistantMessage without a ToolResult yet."""
        return list(self._pending.values())

    @property
    def last(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    def append(self, turn: Turn) -> None:
        if isinstance(turn, ToolResult):
            self._append_result(turn)
            return
        if self._pending:
            ids = ", ".join(self._pending)
            raise ConversationError(
                f"Cannot append {turn.role} turn: unresolved tool calls {ids}"
            )
        if isinstance(turn, AssistantMessage):
            seen: set[str] = set()
            for call in turn.tool_calls:
                if call.id in self._calls or call.id in seen:
                    raise ConversationError(
                        f"Duplicate tool call id: {call.id}"
                    )
                seen.add(call.id)
            for call in turn.tool_calls:
                self._calls[call.id] = call
                self._pending[call.id] = call
        elif not isinstance(turn, (UserMessage, ErrorNotice)):
            raise ConversationError(f"Unsupported turn type: {type(turn)!r}")
        self._turns.append(turn)

    def _append_result(self, result: ToolResult) -> None:
        if result.call_id not in self._calls:
            raise ConversationError(
                f"ToolResult references unknown call id: {result.call_id}"
            )
        if result.call_id in self._resolved:
            raise ConversationError(
                f"Tool call {result.call_id} already has a result"
            )
        self._resolved.add(result.call_id)
        self._pending.pop(result.call_id, None)
        self._turns.append(result)

    def resolve_pending(self, text: str = INTERRUPTED_RESULT_TEXT) -> list[ToolResult]:
        """Answer every unresolved call with an error result so the log can advance."""
        results = [
            ToolResult.from_text(call.id, text, is_error=True)
            for call in self.pending_calls
        ]
        for result in results:
            self._append_result(result)
        return results

    def get_call(self, call_id: str) -> ToolCall | None:
        return self._calls.get(call_id)

    def is_resolved(self, call_id: str) -> bool:
        return call_id in self._resolved

    # ── Serialization ──

    def to_dicts(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for turn in self._turns:
            if isinstance(turn, UserMessage):
                out.append({
                    "role": "user",
                    "text": turn.text,
                    "timestamp": turn.timestamp,
                })
            elif isinstance(turn, AssistantMessage):
                out.append({
                    "role": "assistant",
                    "text": turn.text,
                    "tool_calls": [c.to_dict() for c in turn.tool_calls],
                    "timestamp": turn.timestamp,
                })
            elif isinstance(turn, ToolResult):
                out.append({
                    "role": "tool",
                    "call_id": turn.call_id,
                    "content": [dict(b) for b in turn.content],
                    "is_error": turn.is_error,
                    "timestamp": turn.timestamp,
                })
            elif isinstance(turn, ErrorNotice):
                out.append({
                    "role": "error",
                    "kind": turn.kind,
                    "message": turn.message,
                    "timestamp": turn.timestamp,
                })
        return out

    @classmethod
    def from_dicts(cls, data: list[dict[str, Any]]) -> Conversation:
        """Rebuild a conversation, re-checking every invariant on the way."""
        conv = cls()
        for item in data:
            role = item.get("role")
            ts = float(item.get("timestamp", 0.0))
            if role == "user":
                conv.append(UserMessage(text=item["text"], timestamp=ts))
            elif role == "assistant":
                calls = tuple(
                    ToolCall(
                        id=c["id"],
                        name=c["name"],
                        arguments=dict(c.get("arguments") or {}),
                        parse_error=c.get("parse_error"),
                    )
                    for c in item.get("tool_calls", [])
                )
                conv.append(AssistantMessage(
                    text=item.get("text", ""), tool_calls=calls, timestamp=ts,
                ))
            elif role == "tool":
                conv.append(ToolResult(
                    call_id=item["call_id"],
                    content=tuple(item.get("content", [])),
                    is_error=bool(item.get("is_error", False)),
                    timestamp=ts,
                ))
            elif role == "error":
                conv.append(ErrorNotice(
                    kind=item.get("kind", "engine"),
                    message=item.get("message", ""),
                    timestamp=ts,
                ))
            else:
                raise ConversationError(f"Unknown turn role: {role!r}")
        return conv
