"""Workspace sandbox and per-path reader/writer locks.

Every file path a tool touches is resolved against the workspace root.
Resolution normalizes both separator styles and follows symlinks, so
``../..``, ``..\\..``, absolute paths and links pointing out of the
tree all fail the same way with SandboxViolation.

The lock table treats the filesystem as one shared resource: writers
are exclusive per path scope (a directory scope covers everything
beneath it), readers share. Waiters are served strictly in arrival
order so authorization order is preserved.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ArgumentError, SandboxViolation

logger = logging.getLogger(__name__)

READ = "read"
WRITE = "write"


class Workspace:
    """Absolute workspace root plus path resolution."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve(self, raw_path: str, *, tool_name: str = "path") -> Path:
        """Resolve a model-supplied path, refusing anything outside root."""
        if not isinstance(raw_path, str):
            raise ArgumentError(tool_name, "path must be a string")
        normalized = raw_path.strip().replace("\\", "/")
        if "\x00" in normalized:
            raise ArgumentError(tool_name, "path contains a NUL byte")
        if not normalized:
            normalized = "."
        candidate = Path(normalized)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and not resolved.is_relative_to(self.root):
            logger.warning(
                "Sandbox violation: %r resolved to %s (root=%s)",
                raw_path, resolved, self.root,
            )
            raise SandboxViolation(raw_path, str(self.root))
        return resolved

    def relative(self, path: Path) -> str:
        """Display form of a resolved path, relative to root."""
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return rel.as_posix() or "."


@dataclass
class _Hold:
    scope: Path
    mode: str
    granted: asyncio.Future = field(repr=False)


def _overlaps(a: Path, b: Path) -> bool:
    return a == b or a in b.parents or b in a.parents


def _conflicts(a: _Hold, b: _Hold) -> bool:
    if a.mode == READ and b.mode == READ:
        return False
    return _overlaps(a.scope, b.scope)


class PathLocks:
    """FIFO reader/writer locks keyed by path scope."""

    def __init__(self) -> None:
        self._active: list[_Hold] = []
        self._waiting: list[_Hold] = []

    @property
    def active_count(self) -> int:
        return len(self._active)

    @asynccontextmanager
    async def hold(self, scope: Path, mode: str) -> AsyncIterator[None]:
        if mode not in (READ, WRITE):
            raise ValueError(f"Unknown lock mode: {mode}")
        loop = asyncio.get_running_loop()
        req = _Hold(scope, mode, loop.create_future())
        self._waiting.append(req)
        self._grant()
        try:
            await req.granted
        except BaseException:
            if req in self._waiting:
                self._waiting.remove(req)
            elif req in self._active:
                self._active.remove(req)
            self._grant()
            raise
        try:
            yield
        finally:
            self._active.remove(req)
            self._grant()

    def _grant(self) -> None:
        ahead: list[_Hold] = []
        for req in list(self._waiting):
            blocked = any(_conflicts(req, h) for h in self._active) or any(
                _conflicts(req, w) for w in ahead
            )
            if blocked:
                ahead.append(req)
                continue
            self._waiting.remove(req)
            if req.granted.done():
                continue
            self._active.append(req)
            req.granted.set_result(None)
