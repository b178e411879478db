"""File capability: read, list, search, write and patch workspace files."""
from __future__ import annotations

import asyncio
import base64
import difflib
import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Any

from ...shared.services.durable_write import atomic_write_text
from ..errors import ArgumentError, ExecutionError
from ..models import RiskClass
from ..workspace import READ, WRITE, Workspace
from .base import ToolContext, ToolDescriptor, _error, _text, object_schema

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({"node_modules", ".git", "__pycache__", ".venv"})
MAX_LIST_ENTRIES = 500
MAX_SEARCH_RESULTS = 300
MAX_SEARCH_FILE_BYTES = 1_000_000
# Files scanned between yields to the event loop.
SEARCH_YIELD_EVERY = 32
IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


def _read_scope(workspace: Workspace, args: dict[str, Any]) -> tuple[Path, str]:
    return (workspace.resolve(args.get("path", ".")), READ)


def _write_scope(workspace: Workspace, args: dict[str, Any]) -> tuple[Path, str]:
    return (workspace.resolve(args.get("path", ".")), WRITE)


def parse_search_replace(diff: str) -> list[tuple[str, str]]:
    """Split a SEARCH/REPLACE document into (search, replace) pairs."""
    blocks: list[tuple[str, str]] = []
    search: list[str] | None = None
    replace: list[str] | None = None
    for line in diff.splitlines():
        marker = line.strip()
        if marker == SEARCH_MARKER:
            if search is not None:
                raise ValueError("nested SEARCH marker")
            search, replace = [], None
        elif marker == DIVIDER_MARKER and search is not None and replace is None:
            replace = []
        elif marker == REPLACE_MARKER:
            if search is None or replace is None:
                raise ValueError("REPLACE marker without matching SEARCH/=======")
            blocks.append(("\n".join(search), "\n".join(replace)))
            search, replace = None, None
        elif replace is not None:
            replace.append(line)
        elif search is not None:
            search.append(line)
    if search is not None:
        raise ValueError("unterminated SEARCH/REPLACE block")
    if not blocks:
        raise ValueError("no SEARCH/REPLACE blocks found")
    return blocks


def apply_search_replace(original: str, blocks: list[tuple[str, str]]) -> str:
    """Apply blocks in order, each to its first occurrence. All or nothing."""
    updated = original
    for index, (search, replace) in enumerate(blocks, start=1):
        if search == "":
            if updated:
                raise ValueError(f"block {index}: empty SEARCH on a non-empty file")
            updated = replace
            continue
        pos = updated.find(search)
        if pos < 0:
            raise ValueError(f"block {index}: SEARCH text not found in file")
        updated = updated[:pos] + replace + updated[pos + len(search):]
    return updated


class FileTools:
    """File handlers bound to one workspace."""

    def __init__(self, workspace: Workspace) -> None:
        self._workspace = workspace

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            ToolDescriptor(
                name="read_file",
                description=(
                    "Read a file in the workspace. Optional offset/limit select "
                    "a line range. Images are returned as image blocks."
                ),
                parameters=object_schema(
                    {
                        "path": {"type": "string"},
                        "offset": {"type": "integer", "minimum": 0},
                        "limit": {"type": "integer", "minimum": 0},
                    },
                    ["path"],
                ),
                risk_class=RiskClass.SAFE,
                handler=self.read_file,
                lock_scope=_read_scope,
            ),
            ToolDescriptor(
                name="list_files",
                description=(
                    "List directory entries relative to the workspace root. "
                    "Directories end with '/'."
                ),
                parameters=object_schema(
                    {
                        "path": {"type": "string"},
                        "max_depth": {"type": "integer", "minimum": 1},
                    },
                ),
                risk_class=RiskClass.SAFE,
                handler=self.list_files,
                lock_scope=_read_scope,
            ),
            ToolDescriptor(
                name="search_files",
                description=(
                    "Regex search across files under a directory. "
                    "Output lines are 'path:line:text'."
                ),
                parameters=object_schema(
                    {
                        "path": {"type": "string"},
                        "regex": {"type": "string", "minLength": 1},
                        "file_pattern": {"type": "string"},
                    },
                    ["path", "regex"],
                ),
                risk_class=RiskClass.SAFE,
                handler=self.search_files,
                lock_scope=_read_scope,
            ),
            ToolDescriptor(
                name="write_to_file",
                description=(
                    "Create or overwrite a file with the given content. "
                    "Parent directories are created."
                ),
                parameters=object_schema(
                    {
                        "path": {"type": "string"},
                        "content": {"type": "string"},
                    },
                    ["path", "content"],
                ),
                risk_class=RiskClass.MUTATING,
                handler=self.write_to_file,
                lock_scope=_write_scope,
            ),
            ToolDescriptor(
                name="replace_in_file",
                description=(
                    "Edit a file with SEARCH/REPLACE blocks:\n"
                    f"{SEARCH_MARKER}\n<exact text>\n{DIVIDER_MARKER}\n"
                    f"<new text>\n{REPLACE_MARKER}\n"
                    "Each block replaces the first occurrence. Either every "
                    "block applies or the file is left unchanged."
                ),
                parameters=object_schema(
                    {
                        "path": {"type": "string"},
                        "diff": {"type": "string", "minLength": 1},
                    },
                    ["path", "diff"],
                ),
                risk_class=RiskClass.MUTATING,
                handler=self.replace_in_file,
                lock_scope=_write_scope,
            ),
        ]

    # ── Handlers ──

    async def read_file(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        path = self._workspace.resolve(args["path"], tool_name="read_file")
        rel = self._workspace.relative(path)
        if path.is_dir():
            return _error(f"{rel} is a directory; use list_files")
        mime = IMAGE_MIME_TYPES.get(path.suffix.lower())
        try:
            if mime is not None:
                data = path.read_bytes()
                return {"content": [{
                    "type": "image",
                    "data": base64.b64encode(data).decode("ascii"),
                    "mime_type": mime,
                }]}
            text = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return _error(f"File not found: {rel}")
        except OSError as exc:
            raise ExecutionError(f"Failed to read {rel}: {exc}") from exc

        offset = int(args.get("offset", 0) or 0)
        limit_raw = args.get("limit")
        if offset or limit_raw is not None:
            lines = text.splitlines(keepends=True)
            start = max(0, offset)
            end = len(lines) if limit_raw is None else start + max(0, int(limit_raw))
            text = "".join(lines[start:end])
        return _text(text)

    async def list_files(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        root = self._workspace.resolve(args.get("path", "."), tool_name="list_files")
        if not root.exists():
            return _error(f"Directory not found: {args.get('path', '.')}")
        if not root.is_dir():
            return _error(f"{self._workspace.relative(root)} is not a directory")
        max_depth = int(args.get("max_depth", 1) or 1)

        entries: list[str] = []
        truncated = False
        stack: list[tuple[Path, int]] = [(root, 1)]
        while stack:
            current, depth = stack.pop()
            try:
                children = sorted(os.scandir(current), key=lambda e: e.name)
            except OSError as exc:
                logger.debug("list_files: cannot scan %s: %s", current, exc)
                continue
            subdirs: list[tuple[Path, int]] = []
            for entry in children:
                is_dir = entry.is_dir(follow_symlinks=False)
                rel = self._workspace.relative(Path(entry.path))
                entries.append(rel + "/" if is_dir else rel)
                if is_dir and depth < max_depth and entry.name not in SKIP_DIRS:
                    subdirs.append((Path(entry.path), depth + 1))
                if len(entries) >= MAX_LIST_ENTRIES:
                    truncated = True
                    break
            if truncated:
                break
            stack.extend(reversed(subdirs))

        entries.sort()
        if not entries:
            return _text("(empty directory)")
        text = "\n".join(entries)
        if truncated:
            text += f"\n... [truncated at {MAX_LIST_ENTRIES} entries]"
        return _text(text)

    async def search_files(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        root = self._workspace.resolve(args["path"], tool_name="search_files")
        try:
            pattern = re.compile(args["regex"])
        except re.error as exc:
            raise ArgumentError("search_files", f"invalid regex: {exc}") from exc
        file_pattern = args.get("file_pattern") or "*"
        if not root.exists():
            return _error(f"Path not found: {args['path']}")

        files = [root] if root.is_file() else self._walk_files(root)
        results: list[str] = []
        for index, path in enumerate(files):
            if index and index % SEARCH_YIELD_EVERY == 0:
                await asyncio.sleep(0)
            if ctx.cancelled.is_set():
                break
            if not fnmatch.fnmatch(path.name, file_pattern):
                continue
            try:
                if path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            rel = self._workspace.relative(path)
            for lineno, line in enumerate(text.splitlines(), start=1):
                if pattern.search(line):
                    results.append(f"{rel}:{lineno}:{line.strip()[:300]}")
                    if len(results) >= MAX_SEARCH_RESULTS:
                        break
            if len(results) >= MAX_SEARCH_RESULTS:
                break

        if not results:
            return _text("No matches found.")
        text = "\n".join(results)
        if len(results) >= MAX_SEARCH_RESULTS:
            text += f"\n... [stopped after {MAX_SEARCH_RESULTS} matches]"
        return _text(text)

    def _walk_files(self, root: Path) -> list[Path]:
        out: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                out.append(Path(dirpath) / name)
        return out

    async def write_to_file(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        path = self._workspace.resolve(args["path"], tool_name="write_to_file")
        rel = self._workspace.relative(path)
        if path.is_dir():
            return _error(f"{rel} is a directory")
        content = str(args["content"])
        existed = path.exists()
        try:
            atomic_write_text(path, content)
        except OSError as exc:
            raise ExecutionError(f"Failed to write {rel}: {exc}") from exc
        verb = "Updated" if existed else "Created"
        logger.info("write_to_file %s %s (%d chars)", verb.lower(), rel, len(content))
        return _text(f"{verb} {rel} ({len(content)} characters)")

    async def replace_in_file(
        self, ctx: ToolContext, args: dict[str, Any],
    ) -> dict[str, Any]:
        path = self._workspace.resolve(args["path"], tool_name="replace_in_file")
        rel = self._workspace.relative(path)
        try:
            blocks = parse_search_replace(args["diff"])
        except ValueError as exc:
            raise ArgumentError("replace_in_file", str(exc)) from exc
        try:
            original = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return _error(f"File not found: {rel}")
        except (OSError, UnicodeDecodeError) as exc:
            raise ExecutionError(f"Failed to read {rel} for edit: {exc}") from exc

        try:
            updated = apply_search_replace(original, blocks)
        except ValueError as exc:
            return _error(f"{rel} unchanged: {exc}")
        if updated == original:
            return _text(f"No changes to {rel}")
        try:
            atomic_write_text(path, updated)
        except OSError as exc:
            raise ExecutionError(f"Failed to write {rel}: {exc}") from exc

        diff = "".join(difflib.unified_diff(
            original.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"a/{rel}",
            tofile=f"b/{rel}",
        ))
        return _text(f"Applied {len(blocks)} edit(s) to {rel}\n{diff}")
