"""
Session store: one JSON file per session under the chats directory.

    <config>/chats/<uuid>.json

Writes go through atomic_write_text (tmp file, fsync, 0600, rename), so a
crash mid-save leaves the previous file intact. Listing only accepts file
names that are UUID v4 strings; stray *.tmp leftovers are ignored.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from gtllm.paths import chats_dir as default_chats_dir
from gtllm.storage.atomic import atomic_write_text
from gtllm.storage.models import SessionData, is_session_id, new_session_id, timestamp_value

logger = logging.getLogger(__name__)


class SessionStoreError(Exception):
    """Raised when a session cannot be read, written or deleted."""


class SessionStore:
    """JSON-file persistence for chat sessions."""

    def __init__(self, chats_dir: str | Path | None = None):
        self.chats_dir = Path(chats_dir) if chats_dir else default_chats_dir()

    def path_for(self, session_id: str) -> Path:
        if not is_session_id(session_id):
            raise SessionStoreError(f"Invalid session id: {session_id!r}")
        return self.chats_dir / f"{session_id}.json"

    @staticmethod
    def new_session_id() -> str:
        return new_session_id()

    def save(self, data: SessionData) -> Path:
        """Atomically write a session. Returns the file path."""
        path = self.path_for(data.session.id)
        if data.history.mode != data.session.mode:
            raise SessionStoreError(
                f"History mode {data.history.mode.value!r} does not match session mode {data.session.mode.value!r}"
            )
        try:
            payload = json.dumps(data.to_dict(), indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise SessionStoreError(f"Failed to serialize session: {e}") from e
        try:
            atomic_write_text(path, payload)
        except OSError as e:
            raise SessionStoreError(f"Failed to write session file: {e}") from e
        logger.debug("Saved session %s (%d bytes)", data.session.id, len(payload))
        return path

    def _load_path(self, path: Path) -> SessionData:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise SessionStoreError(f"Session not found: {path.stem}")
        except OSError as e:
            raise SessionStoreError(f"Failed to read session file: {e}") from e
        try:
            return SessionData.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SessionStoreError(f"Failed to parse session file {path.name}: {e}") from e

    def load(self, session_id: str) -> SessionData:
        return self._load_path(self.path_for(session_id))

    def exists(self, session_id: str) -> bool:
        return is_session_id(session_id) and self.path_for(session_id).is_file()

    def list_sessions(self) -> list[SessionData]:
        """All readable sessions, most recently updated first."""
        if not self.chats_dir.is_dir():
            return []

        sessions = []
        for path in self.chats_dir.glob("*.json"):
            if not is_session_id(path.stem):
                continue
            try:
                sessions.append(self._load_path(path))
            except SessionStoreError as e:
                logger.warning("Skipping unreadable session %s: %s", path.name, e)

        sessions.sort(key=lambda s: timestamp_value(s.updated_at), reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        """Remove a session file. Returns False if it did not exist."""
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SessionStoreError(f"Failed to delete session file: {e}") from e
        logger.info("Deleted session %s", session_id)
        return True
