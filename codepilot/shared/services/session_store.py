"""Session persistence for conversation snapshots.

The engine hands a snapshot dict to the store at pause, at task end and
whenever a turn returns to Idle. ``JsonSessionStore`` keeps one JSON
file per session, written atomically.
"""
from __future__ import annotations

import abc
import json
import logging
import re
from pathlib import Path
from typing import Any

from codepilot.engine.conversation import Conversation
from codepilot.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class SessionStore(abc.ABC):

    @abc.abstractmethod
    def save(self, session_id: str, snapshot: dict[str, Any]) -> None:
        """Persist the snapshot, replacing any previous one for this session."""

    @abc.abstractmethod
    def load(self, session_id: str) -> dict[str, Any] | None:
        """Return the last snapshot for the session, or None."""

    def load_conversation(self, session_id: str) -> Conversation | None:
        snapshot = self.load(session_id)
        if snapshot is None:
            return None
        conversation = Conversation.from_dicts(snapshot.get("conversation") or [])
        # Snapshots taken mid-step (pause) may end with unanswered calls.
        conversation.resolve_pending()
        return conversation


class JsonSessionStore(SessionStore):
    """Stores ``<directory>/<session_id>.json``."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._dir / f"{session_id}.json"

    def save(self, session_id: str, snapshot: dict[str, Any]) -> None:
        path = self._path(session_id)
        atomic_write_json(path, snapshot)
        logger.debug("Saved session %s (%d turns) to %s",
                     session_id, len(snapshot.get("conversation") or []), path)

    def load(self, session_id: str) -> dict[str, Any] | None:
        path = self._path(session_id)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Session file %s is corrupt: %s", path, exc)
            return None

    def list_sessions(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))
