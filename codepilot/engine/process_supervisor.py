"""Supervision of external commands spawned by tools.

The supervisor owns every spawned process: it streams tagged output to
an optional sink, forwards input to interactive processes, and
guarantees termination. Callers only ever hold a process id and
receive read-only ``ProcessSnapshot`` views.

Each process runs in its own session (process group) so that kill
reaches shells and everything they spawned. Termination escalates
SIGTERM -> SIGKILL after a grace period, then the process is reaped
and its output readers drained before the record leaves the live
table.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import (
    ExecutionError,
    ProcessNotFoundError,
    ProcessNotInteractiveError,
)
from .models import OutputChunk, ProcessSnapshot, ProcessState

logger = logging.getLogger(__name__)

# Signature: async def sink(chunk: OutputChunk) -> None
OutputSink = Callable[[OutputChunk], Awaitable[None]]

_READ_CHUNK_BYTES = 4096


class _ManagedProcess:
    """Internal mutable record. Never handed out."""

    def __init__(
        self,
        process_id: str,
        command: str,
        *,
        interactive: bool,
        owner: str | None,
        sink: OutputSink | None,
        tail_chars: int,
    ) -> None:
        self.id = process_id
        self.command = command
        self.interactive = interactive
        self.owner = owner
        self.sink = sink
        self.tail_chars = tail_chars
        self.state = ProcessState.STARTING
        self.exit_code: int | None = None
        self.proc: asyncio.subprocess.Process | None = None
        self.pid: int | None = None
        self.stdout_tail = ""
        self.stderr_tail = ""
        self.readers: list[asyncio.Task] = []
        self.watcher: asyncio.Task | None = None
        self.timer: asyncio.Task | None = None
        self.stop_reason: ProcessState | None = None
        self.stop_task: asyncio.Task | None = None
        self.exited = asyncio.Event()
        self.done = asyncio.Event()

    def append_output(self, stream: str, text: str) -> None:
        if stream == "stderr":
            self.stderr_tail = (self.stderr_tail + text)[-self.tail_chars:]
        else:
            self.stdout_tail = (self.stdout_tail + text)[-self.tail_chars:]

    def snapshot(self) -> ProcessSnapshot:
        return ProcessSnapshot(
            id=self.id,
            command=self.command,
            state=self.state,
            # The leader may exit while background children still hold the pipes.
            exit_code=self.exit_code if self.state.is_terminal else None,
            interactive=self.interactive,
            stdout_tail=self.stdout_tail,
            stderr_tail=self.stderr_tail,
            owner=self.owner,
            pid=self.pid,
        )


class ProcessSupervisor:
    """Owns the live-process table.

    Use as an async context manager, or call ``shutdown()`` explicitly;
    either way every live process is killed and reaped before the
    supervisor is considered closed.
    """

    def __init__(
        self,
        *,
        kill_grace_seconds: float = 1.0,
        output_tail_chars: int = 12000,
        max_finished: int = 64,
    ) -> None:
        self._kill_grace = max(0.0, kill_grace_seconds)
        self._tail_chars = max(1, output_tail_chars)
        if max_finished < 1:
            raise ValueError(f"max_finished must be at least 1, got {max_finished}")
        self._max_finished = max_finished
        self._live: dict[str, _ManagedProcess] = {}
        self._finished: OrderedDict[str, ProcessSnapshot] = OrderedDict()
        # Terminal outcome of every retired process; outlives eviction from _finished.
        self._outcomes: dict[str, tuple[str, ProcessState, int | None]] = {}
        self._closed = False

    async def __aenter__(self) -> ProcessSupervisor:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    # ── Queries ──

    def live_ids(self) -> list[str]:
        return list(self._live)

    def get(self, process_id: str) -> ProcessSnapshot:
        record = self._live.get(process_id)
        if record is not None:
            return record.snapshot()
        snap = self._finished.get(process_id)
        if snap is None:
            raise ProcessNotFoundError(process_id)
        return snap

    def _retired_snapshot(self, process_id: str) -> ProcessSnapshot:
        """Retained snapshot, or a bare terminal one once the record was evicted."""
        snap = self._finished.get(process_id)
        if snap is not None:
            return snap
        outcome = self._outcomes.get(process_id)
        if outcome is None:
            raise ProcessNotFoundError(process_id)
        command, state, exit_code = outcome
        return ProcessSnapshot(
            id=process_id,
            command=command,
            state=state,
            exit_code=exit_code,
            interactive=False,
            stdout_tail="",
            stderr_tail="",
        )

    def list_processes(self) -> list[ProcessSnapshot]:
        """Snapshots of live processes followed by retained finished ones."""
        snaps = [r.snapshot() for r in self._live.values()]
        snaps.extend(self._finished.values())
        return snaps

    # ── Spawning ──

    async def spawn(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        cwd: str,
        interactive: bool = False,
        env: dict[str, str] | None = None,
        owner: str | None = None,
        sink: OutputSink | None = None,
    ) -> str:
        """Start a process and register it in the live table.

        With ``args`` is None the command runs through the shell;
        otherwise ``command`` is executed directly with ``args``.
        """
        if self._closed:
            raise ExecutionError("Process supervisor is shut down")

        process_id = f"proc_{uuid.uuid4().hex[:12]}"
        display = command if args is None else " ".join([command, *args])
        record = _ManagedProcess(
            process_id,
            display,
            interactive=interactive,
            owner=owner,
            sink=sink,
            tail_chars=self._tail_chars,
        )
        full_env = {**os.environ, **(env or {})}
        stdin = asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL
        try:
            if args is None:
                shell_executable = shutil.which("bash") or None
                proc = await asyncio.create_subprocess_shell(
                    command,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=full_env,
                    start_new_session=True,
                    executable=shell_executable,
                )
            else:
                proc = await asyncio.create_subprocess_exec(
                    command,
                    *args,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=full_env,
                    start_new_session=True,
                )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise ExecutionError(f"Failed to start '{display}': {exc}") from exc

        record.proc = proc
        record.pid = proc.pid
        record.state = ProcessState.RUNNING
        self._live[process_id] = record
        record.readers = [
            asyncio.create_task(self._read_stream(record, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(record, proc.stderr, "stderr")),
        ]
        record.watcher = asyncio.create_task(self._watch(record))
        logger.info(
            "Registered subprocess id=%s pid=%s owner=%s interactive=%s "
            "cwd=%s live=%d command=%s",
            process_id,
            proc.pid,
            (owner or "-")[:12],
            interactive,
            cwd,
            len(self._live),
            (display[:180] + "...") if len(display) > 180 else display,
        )
        return process_id

    async def _read_stream(
        self,
        record: _ManagedProcess,
        stream: asyncio.StreamReader | None,
        name: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                record.append_output(name, text)
                await self._emit(record, OutputChunk(name, text))
            if not chunk:
                break

    async def _emit(self, record: _ManagedProcess, chunk: OutputChunk) -> None:
        if record.sink is None:
            return
        try:
            await record.sink(chunk)
        except Exception:
            logger.debug(
                "Output sink failed for process %s", record.id, exc_info=True,
            )

    async def _watch(self, record: _ManagedProcess) -> None:
        """Wait for exit, drain output, then retire the record."""
        proc = record.proc
        assert proc is not None
        try:
            exit_code = await proc.wait()
            record.exit_code = exit_code
            record.exited.set()
            await asyncio.gather(*record.readers, return_exceptions=True)
        finally:
            record.exited.set()
            for reader in record.readers:
                if not reader.done():
                    reader.cancel()
            if record.timer is not None and not record.timer.done():
                record.timer.cancel()
            self._retire(record)

    def _retire(self, record: _ManagedProcess) -> None:
        record.state = record.stop_reason or ProcessState.COMPLETED
        if record.proc is not None and record.proc.stdin is not None:
            try:
                record.proc.stdin.close()
            except Exception:
                logger.debug("stdin close failed for %s", record.id, exc_info=True)
        record.proc = None
        self._live.pop(record.id, None)
        self._outcomes[record.id] = (record.command, record.state, record.exit_code)
        self._finished[record.id] = record.snapshot()
        while len(self._finished) > self._max_finished:
            evicted, _ = self._finished.popitem(last=False)
            logger.debug("Evicted finished process record %s", evicted)
        record.done.set()
        logger.info(
            "Subprocess finished id=%s pid=%s state=%s exit_code=%s live=%d",
            record.id,
            record.pid,
            record.state.value,
            record.exit_code,
            len(self._live),
        )

    # ── Interaction ──

    async def wait(
        self, process_id: str, timeout: float | None = None,
    ) -> ProcessSnapshot:
        """Wait up to ``timeout`` seconds for the process to finish.

        Returns the current snapshot either way; a still-running process
        is not affected by the wait expiring.
        """
        record = self._live.get(process_id)
        if record is None:
            return self.get(process_id)
        try:
            await asyncio.wait_for(record.done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return record.snapshot()

    async def send_input(self, process_id: str, data: bytes) -> None:
        record = self._live.get(process_id)
        if record is None:
            snap = self.get(process_id)
            raise ExecutionError(
                f"Managed process {process_id} is not running "
                f"(state={snap.state.value})"
            )
        if not record.interactive:
            raise ProcessNotInteractiveError(process_id)
        proc = record.proc
        if (
            proc is None
            or proc.stdin is None
            or record.exited.is_set()
            or record.stop_reason is not None
        ):
            raise ExecutionError(f"Managed process {process_id} is not running")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ExecutionError(
                f"Input channel of {process_id} is closed: {exc}"
            ) from exc

    # ── Termination ──

    async def kill(self, process_id: str) -> ProcessSnapshot:
        """Terminate, reap and drain. Idempotent."""
        return await self._stop(process_id, ProcessState.KILLED)

    def timeout(self, process_id: str, duration: float) -> None:
        """Arm a timer that stops the process as TimedOut after ``duration``."""
        record = self._live.get(process_id)
        if record is None:
            self.get(process_id)
            return
        if record.timer is not None and not record.timer.done():
            record.timer.cancel()

        async def _expire() -> None:
            await asyncio.sleep(max(0.0, duration))
            logger.warning(
                "Subprocess %s exceeded %.1fs; terminating", process_id, duration,
            )
            await self._stop(process_id, ProcessState.TIMED_OUT)

        record.timer = asyncio.create_task(_expire())

    async def _stop(
        self, process_id: str, reason: ProcessState,
    ) -> ProcessSnapshot:
        record = self._live.get(process_id)
        if record is None:
            return self._retired_snapshot(process_id)
        if record.stop_task is None:
            if record.stop_reason is None:
                record.stop_reason = reason
            record.stop_task = asyncio.create_task(self._terminate(record))
        # Shielded so a cancelled caller cannot abandon a half-killed process.
        await asyncio.shield(record.stop_task)
        return record.snapshot()

    async def _terminate(self, record: _ManagedProcess) -> None:
        if not record.exited.is_set():
            term_sent = self._signal_group(record, signal.SIGTERM)
            logger.info(
                "Stopping subprocess id=%s pid=%s reason=%s sent=%s",
                record.id,
                record.pid,
                (record.stop_reason or ProcessState.KILLED).value,
                term_sent,
            )
            try:
                await asyncio.wait_for(
                    record.exited.wait(), timeout=self._kill_grace,
                )
            except asyncio.TimeoutError:
                kill_sent = self._signal_group(record, signal.SIGKILL)
                logger.warning(
                    "Subprocess still running after SIGTERM; escalating to "
                    "SIGKILL id=%s pid=%s sent=%s",
                    record.id,
                    record.pid,
                    kill_sent,
                )
        else:
            # Leader already gone; sweep whatever it left in its group.
            self._signal_group(record, signal.SIGKILL)
        await record.exited.wait()
        try:
            await asyncio.wait_for(record.done.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            # Orphans holding the pipes open; force the group and stop reading.
            self._signal_group(record, signal.SIGKILL)
            for reader in record.readers:
                reader.cancel()
            await record.done.wait()

    @staticmethod
    def _signal_group(record: _ManagedProcess, sig: signal.Signals) -> bool:
        """Send a signal to the process group when available."""
        if record.pid is None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(record.pid, sig)
            elif record.proc is not None and record.proc.returncode is None:
                record.proc.send_signal(sig)
            else:
                return False
            return True
        except (ProcessLookupError, PermissionError):
            return False

    async def kill_all(self, owner: str | None = None) -> list[ProcessSnapshot]:
        """Kill every live process, or only those tied to ``owner``."""
        ids = [
            pid for pid, rec in self._live.items()
            if owner is None or rec.owner == owner
        ]
        if not ids:
            return []
        logger.info("Killing %d live subprocess(es) owner=%s", len(ids), owner)
        results = await asyncio.gather(
            *(self.kill(pid) for pid in ids), return_exceptions=True,
        )
        snaps: list[ProcessSnapshot] = []
        for pid, res in zip(ids, results):
            if isinstance(res, BaseException):
                logger.error("Failed to kill subprocess %s: %s", pid, res)
            else:
                snaps.append(res)
        return snaps

    async def shutdown(self) -> None:
        if self._closed and not self._live:
            return
        self._closed = True
        await self.kill_all()
        logger.info("Process supervisor shut down")
