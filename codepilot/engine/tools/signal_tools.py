"""Terminal signal tools. A successful call ends the task as Completed."""
from __future__ import annotations

from typing import Any

from ..models import RiskClass
from .base import ToolContext, ToolDescriptor, _text, no_lock, object_schema

ATTEMPT_COMPLETION = "attempt_completion"
ASK_QUESTION = "ask_question"


async def _attempt_completion(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    text = str(args["result"])
    command = args.get("command")
    if command:
        text += f"\n\nDemo command: {command}"
    return _text(text)


async def _ask_question(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    text = str(args["question"])
    options = args.get("options") or []
    if options:
        text += "\n" + "\n".join(f"- {o}" for o in options)
    return _text(text)


def signal_descriptors() -> list[ToolDescriptor]:
    return [
        ToolDescriptor(
            name=ATTEMPT_COMPLETION,
            description=(
                "Present the final result once the task is done. "
                "Optionally include a command that demonstrates it."
            ),
            parameters=object_schema(
                {
                    "result": {"type": "string", "minLength": 1},
                    "command": {"type": "string"},
                },
                ["result"],
            ),
            risk_class=RiskClass.SAFE,
            handler=_attempt_completion,
            lock_scope=no_lock,
            terminal=True,
        ),
        ToolDescriptor(
            name=ASK_QUESTION,
            description=(
                "Ask the operator a question when you cannot proceed "
                "without more information. Ends the current task."
            ),
            parameters=object_schema(
                {
                    "question": {"type": "string", "minLength": 1},
                    "options": {"type": "array", "items": {"type": "string"}},
                },
                ["question"],
            ),
            risk_class=RiskClass.SAFE,
            handler=_ask_question,
            lock_scope=no_lock,
            terminal=True,
        ),
    ]
