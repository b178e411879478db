"""Task engine: drives one task from operator instruction to completion.

One step is one model turn:

1. Send the conversation to the model and consume its stream through
   the StreamAccumulator, forwarding text to the UI as it arrives.
2. Append the assistant turn, then authorize its tool calls one at a
   time in order. Allowed calls start executing immediately (the
   dispatcher's path locks serialize conflicting ones); denied and
   malformed calls get an error result without touching a handler;
   AskOperator suspends the step in WaitingApproval.
3. Once every call has a result, append the results in authorization
   order and decide: a successful terminal signal tool completes the
   task, a turn without tool calls returns to Idle, anything else
   loops to the next model turn.

Cancellation, transport failures and unexpected errors all leave the
conversation with every tool call resolved and no live processes.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

from .accumulator import AccumulatorState, StreamAccumulator
from .config import EngineConfig, EventCallback, fire_event
from .conversation import Conversation
from .errors import EngineError, TransportError, ValidationError
from .lifecycle import CANCELLABLE_STATES, validate_transition
from .models import (
    Approve,
    AssistantMessage,
    CancelTask,
    ControlCommand,
    DecisionKind,
    ErrorNotice,
    NewTask,
    OutputChunk,
    Pause,
    Reject,
    Resume,
    SendMessage,
    SendProcessInput,
    Shutdown,
    TaskState,
    ToolCall,
    ToolResult,
    UserMessage,
)
from .permission import PermissionGate
from .process_supervisor import ProcessSupervisor
from .providers.base import ModelProvider, ModelRequest
from .tools.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

CANCELLED_RESULT_TEXT = "ERROR: Tool call was cancelled before it completed."
_EVENT_TEXT_LIMIT = 4000


class TaskEngine:
    """Owns TaskState and the Conversation for one active task."""

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: Dispatcher,
        gate: PermissionGate,
        supervisor: ProcessSupervisor,
        *,
        system_prompt: str = "",
        config: EngineConfig | None = None,
        session_store: Any | None = None,
        session_id: str | None = None,
        conversation: Conversation | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._provider = provider
        self._dispatcher = dispatcher
        self._gate = gate
        self._supervisor = supervisor
        self._system_prompt = system_prompt
        self._config = config or EngineConfig()
        self._store = session_store
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._conversation = conversation or Conversation()
        interrupted = self._conversation.resolve_pending()
        if interrupted:
            logger.info(
                "Restored session %s: closed %d interrupted tool call(s)",
                self.session_id, len(interrupted),
            )
        self._event_callback = event_callback or self._config.event_callback

        self._state = TaskState.IDLE
        self._error: str | None = None
        self._waiting_call: ToolCall | None = None
        self._drive_task: asyncio.Task | None = None
        self._resume = asyncio.Event()
        self._resume.set()
        self._cancel_event = asyncio.Event()
        self._cancel_requested = False
        self._cancel_lock = asyncio.Lock()

    # ── Read-only views ──

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def waiting_call(self) -> ToolCall | None:
        """The call held in WaitingApproval, if any."""
        return self._waiting_call

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_busy(self) -> bool:
        return self._drive_task is not None and not self._drive_task.done()

    # ── State machine ──

    async def _transition(self, new_state: TaskState, **extra: Any) -> None:
        """Transition to a new state with validation."""
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.info(
            "Task %s: %s -> %s", self.session_id, old.value, new_state.value,
        )
        await fire_event(self._event_callback, {
            "event": "task_state_changed",
            "session_id": self.session_id,
            "old_state": old.value,
            "new_state": new_state.value,
            **extra,
        })

    async def _wait_if_paused(self) -> None:
        await self._resume.wait()

    async def _settle(self, new_state: TaskState) -> None:
        """Transition out of Running, honoring a pending pause first."""
        await self._wait_if_paused()
        await self._transition(new_state)

    # ── Operator operations ──

    async def start_task(self, instruction: str) -> None:
        """Append the instruction and move to Running. Requires Idle or Completed."""
        if self._state not in (TaskState.IDLE, TaskState.COMPLETED):
            raise ValueError(
                f"Cannot start a task while {self._state.value}; "
                "cancel it or call new_task() first"
            )
        if self.is_busy:
            raise ValueError("A step is still in flight")
        self._error = None
        self._cancel_event = asyncio.Event()
        self._cancel_requested = False
        self._resume.set()
        self._conversation.append(UserMessage(text=instruction))
        await self._transition(TaskState.RUNNING)

    async def submit(self, instruction: str) -> asyncio.Task:
        """start_task() and drive steps in a background task."""
        await self.start_task(instruction)
        self._drive_task = asyncio.create_task(self._drive())
        return self._drive_task

    async def _drive(self) -> TaskState:
        while self._state in (TaskState.RUNNING, TaskState.PAUSED):
            await self._wait_if_paused()
            if self._state != TaskState.RUNNING:
                break
            await self.step()
        return self._state

    async def run_until_settled(self) -> TaskState:
        """Drive steps in the current task until the state leaves Running."""
        return await self._drive()

    async def pause(self) -> bool:
        if self._state != TaskState.RUNNING:
            logger.info("pause ignored in state %s", self._state.value)
            return False
        self._resume.clear()
        await self._transition(TaskState.PAUSED)
        self._save_session()
        return True

    async def resume(self) -> bool:
        if self._state != TaskState.PAUSED:
            logger.info("resume ignored in state %s", self._state.value)
            return False
        await self._transition(TaskState.RUNNING)
        self._resume.set()
        return True

    def approve(self, call_id: str) -> bool:
        return self._gate.approve(call_id)

    def reject(self, call_id: str, reason: str) -> bool:
        return self._gate.reject(call_id, reason)

    async def cancel(self) -> bool:
        """Abort the active task. Returns False when nothing is cancellable."""
        async with self._cancel_lock:
            if self._state not in CANCELLABLE_STATES:
                return False
            logger.warning("Cancelling task %s in state %s", self.session_id, self._state.value)
            self._cancel_requested = True
            self._cancel_event.set()
            task = self._drive_task
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                done, _ = await asyncio.wait(
                    {task}, timeout=self._config.cancel_grace_seconds,
                )
                if not done:
                    logger.error(
                        "Step did not stop within %.1fs of cancellation",
                        self._config.cancel_grace_seconds,
                    )
            await self._complete_cancel()
            return True

    async def _complete_cancel(self) -> None:
        for call in self._conversation.pending_calls:
            result = ToolResult.from_text(call.id, CANCELLED_RESULT_TEXT, is_error=True)
            self._conversation.append(result)
            await self._emit_completed(call, result)
        killed = await self._supervisor.kill_all()
        for snap in killed:
            await self._emit_process(snap.id, snap.state.value, snap.exit_code)
        self._waiting_call = None
        self._resume.set()
        if self._state != TaskState.CANCELLED:
            await self._transition(TaskState.CANCELLED)
        self._cancel_requested = False
        self._save_session()

    async def new_task(self) -> None:
        """Start over with a fresh conversation once the current task is finished."""
        if self._state in CANCELLABLE_STATES or self.is_busy:
            raise ValueError(f"Cannot start a new task while {self._state.value}")
        self._save_session()
        self._conversation = Conversation()
        self.session_id = uuid.uuid4().hex[:12]
        self._error = None
        if self._state != TaskState.IDLE:
            await self._transition(TaskState.IDLE)

    async def send_process_input(self, process_id: str, data: bytes) -> None:
        await self._supervisor.send_input(process_id, data)

    async def shutdown(self) -> None:
        if self._state in CANCELLABLE_STATES:
            await self.cancel()
        await self._supervisor.shutdown()

    # ── Control channel ──

    async def handle(self, command: ControlCommand) -> None:
        if isinstance(command, SendMessage):
            await self.submit(command.text)
        elif isinstance(command, Approve):
            self.approve(command.call_id)
        elif isinstance(command, Reject):
            self.reject(command.call_id, command.reason)
        elif isinstance(command, Pause):
            await self.pause()
        elif isinstance(command, Resume):
            await self.resume()
        elif isinstance(command, CancelTask):
            await self.cancel()
        elif isinstance(command, NewTask):
            await self.new_task()
        elif isinstance(command, SendProcessInput):
            await self.send_process_input(command.process_id, command.data)
        elif isinstance(command, Shutdown):
            await self.shutdown()
        else:
            raise ValueError(f"Unknown control command: {command!r}")

    async def run(self, commands: asyncio.Queue) -> None:
        """Consume operator commands until Shutdown.

        Steps run in their own task, so approvals and cancellation are
        handled here while a step is suspended.
        """
        while True:
            command = await commands.get()
            try:
                await self.handle(command)
            except (ValueError, EngineError) as exc:
                logger.warning("Control command %r failed: %s", command, exc)
                await self._emit_error(getattr(exc, "kind", "control"), str(exc))
            if isinstance(command, Shutdown):
                return

    # ── One model turn ──

    async def step(self) -> TaskState:
        """Run one model turn and its tool calls. Never raises on tool or transport errors."""
        if self._state != TaskState.RUNNING:
            raise ValueError(f"step() requires running state, not {self._state.value}")
        acc = StreamAccumulator(is_taken=lambda cid: self._conversation.get_call(cid) is not None)
        message_appended = False
        tasks: dict[str, asyncio.Task] = {}
        try:
            message = await self._stream_turn(acc)
            self._conversation.append(message)
            message_appended = True

            if not message.tool_calls:
                await self._settle(TaskState.IDLE)
                self._save_session()
                return self._state

            results = await self._process_calls(message.tool_calls, tasks)
            for call in message.tool_calls:
                result = results[call.id]
                self._conversation.append(result)

            terminal = [
                c for c in message.tool_calls
                if self._dispatcher.is_terminal(c) and not results[c.id].is_error
            ]
            if terminal:
                logger.info("Task %s: terminal tool %s fired", self.session_id, terminal[0].name)
                await self._settle(TaskState.COMPLETED)
                self._save_session()
            return self._state

        except asyncio.CancelledError:
            if not message_appended and (acc.text or acc.tool_calls or acc.state != AccumulatorState.IDLE):
                self._conversation.append(acc.to_message())
            pending = [t for t in tasks.values() if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.wait(pending, timeout=self._config.cancel_grace_seconds)
            if not self._cancel_requested and self._state in CANCELLABLE_STATES:
                await self._complete_cancel()
            raise

        except TransportError as exc:
            logger.warning("Task %s: transport failure: %s", self.session_id, exc)
            self._conversation.append(ErrorNotice(kind=exc.kind, message=str(exc)))
            await self._emit_error(exc.kind, str(exc))
            await self._settle(TaskState.IDLE)
            self._save_session()
            return self._state

        except Exception as exc:
            logger.exception("Task %s: step failed", self.session_id)
            await self._fail(exc, tasks)
            return self._state

    async def _stream_turn(self, acc: StreamAccumulator) -> AssistantMessage:
        await self._wait_if_paused()
        request = ModelRequest(
            system_prompt=self._system_prompt,
            messages=self._conversation.to_dicts(),
            tools=self._dispatcher.registry.schemas(),
        )
        started = time.monotonic()
        stream = self._provider.stream(request)
        try:
            async for chunk in stream:
                out = acc.feed(chunk)
                if out.text:
                    await fire_event(self._event_callback, {
                        "event": "stream_chunk",
                        "session_id": self.session_id,
                        "text": out.text,
                    })
                if out.finished:
                    if out.usage:
                        await fire_event(self._event_callback, {
                            "event": "usage",
                            "session_id": self.session_id,
                            "usage": out.usage,
                        })
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        message = acc.to_message()
        logger.info(
            "Task %s: model turn done in %.2fs text_chars=%d tool_calls=%d",
            self.session_id, time.monotonic() - started,
            len(message.text), len(message.tool_calls),
        )
        return message

    async def _process_calls(
        self,
        calls: tuple[ToolCall, ...],
        tasks: dict[str, asyncio.Task],
    ) -> dict[str, ToolResult]:
        """Authorize sequentially, execute allowed calls concurrently."""
        results: dict[str, ToolResult] = {}
        for call in calls:
            await self._wait_if_paused()
            try:
                self._dispatcher.validate(call)
            except ValidationError as exc:
                results[call.id] = ToolResult.from_text(call.id, f"ERROR: {exc}", is_error=True)
                await self._emit_completed(call, results[call.id])
                continue

            decision = self._gate.authorize(call)
            if decision.kind == DecisionKind.DENY:
                results[call.id] = ToolResult.from_text(
                    call.id, f"ERROR: {decision.reason}", is_error=True,
                )
                await self._emit_completed(call, results[call.id])
                continue

            if decision.kind == DecisionKind.ASK_OPERATOR:
                outcome = await self._ask_operator(call)
                if not outcome.approved:
                    results[call.id] = ToolResult.from_text(
                        call.id, outcome.reason or "Rejected by operator.", is_error=True,
                    )
                    await self._emit_completed(call, results[call.id])
                    continue

            tasks[call.id] = asyncio.create_task(self._execute(call))

        if tasks:
            await asyncio.wait(list(tasks.values()))
        for call_id, task in tasks.items():
            results[call_id] = task.result()
        return results

    async def _ask_operator(self, call: ToolCall):
        self._waiting_call = call
        await self._transition(TaskState.WAITING_APPROVAL, call_id=call.id)
        await fire_event(self._event_callback, {
            "event": "permission_request",
            "session_id": self.session_id,
            "call_id": call.id,
            "tool_name": call.name,
            "arguments": call.arguments,
            "risk_class": self._gate.risk_of(call).value,
        })
        try:
            outcome = await self._gate.wait_for_operator(call)
        finally:
            self._waiting_call = None
        await self._transition(TaskState.RUNNING)
        return outcome

    async def _execute(self, call: ToolCall) -> ToolResult:
        await fire_event(self._event_callback, {
            "event": "tool_call_started",
            "session_id": self.session_id,
            "call_id": call.id,
            "tool_name": call.name,
            "arguments": call.arguments,
            "risk_class": self._dispatcher.risk_of(call).value,
        })

        async def sink(chunk: OutputChunk) -> None:
            await fire_event(self._event_callback, {
                "event": "tool_call_delta",
                "session_id": self.session_id,
                "call_id": call.id,
                "tool_name": call.name,
                "delta": chunk.text,
                "stream": chunk.stream,
            })

        result = await self._dispatcher.dispatch(
            call, sink=sink, cancelled=self._cancel_event,
        )
        await self._emit_completed(call, result)
        for block in result.content:
            data = block.get("data") if block.get("type") == "json" else None
            if isinstance(data, dict) and data.get("managed_process_id"):
                await self._emit_process(
                    data["managed_process_id"], data.get("state"), data.get("exit_code"),
                )
        return result

    async def _fail(self, exc: Exception, tasks: dict[str, asyncio.Task]) -> None:
        for t in tasks.values():
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.wait(list(tasks.values()), timeout=self._config.cancel_grace_seconds)
        self._error = f"{type(exc).__name__}: {exc}"
        for call in self._conversation.pending_calls:
            try:
                self._conversation.append(ToolResult.from_text(
                    call.id, f"ERROR: Engine failure: {self._error}", is_error=True,
                ))
            except EngineError:
                logger.exception("Could not resolve call %s after failure", call.id)
        await self._supervisor.kill_all()
        self._waiting_call = None
        if self._state == TaskState.PAUSED:
            self._resume.set()
        await self._emit_error(getattr(exc, "kind", "engine"), self._error)
        await self._transition(TaskState.FAILED, error=self._error)
        self._save_session()

    # ── Events / persistence ──

    async def _emit_completed(self, call: ToolCall, result: ToolResult) -> None:
        text = result.text
        if len(text) > _EVENT_TEXT_LIMIT:
            text = text[:_EVENT_TEXT_LIMIT] + "\n... [truncated]"
        await fire_event(self._event_callback, {
            "event": "tool_call_completed",
            "session_id": self.session_id,
            "call_id": call.id,
            "tool_name": call.name,
            "is_error": result.is_error,
            "result": text,
        })

    async def _emit_process(self, process_id: str, state: Any, exit_code: Any) -> None:
        await fire_event(self._event_callback, {
            "event": "process_status",
            "session_id": self.session_id,
            "process_id": process_id,
            "state": state,
            "exit_code": exit_code,
        })

    async def _emit_error(self, kind: str, message: str) -> None:
        await fire_event(self._event_callback, {
            "event": "engine_error",
            "session_id": self.session_id,
            "kind": kind,
            "message": message,
        })

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "error": self._error,
            "saved_at": time.time(),
            "conversation": self._conversation.to_dicts(),
        }

    def _save_session(self) -> None:
        if self._store is None or not len(self._conversation):
            return
        try:
            self._store.save(self.session_id, self.snapshot())
        except Exception:
            logger.exception("Failed to save session %s", self.session_id)
