"""
File-backed progress store.

One file per key under the storage directory:

    <dir>/cursor
    <dir>/id
    <dir>/start_time
    <dir>/sessions/<session id, percent-encoded>

Every write goes to a temporary file first and is moved into place with
os.replace, so a crash never leaves a half-written value behind.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

from loguru import logger

from ..pipeline.errors import StartTimeConflictError, StateStoreError
from ..pipeline.types import StateStore

_CURSOR = "cursor"
_ID = "id"
_START_TIME = "start_time"
_SESSIONS = "sessions"


class FileStateStore(StateStore):
    def __init__(self, directory: Path | str, *, mkdirs: bool = True):
        self._dir = Path(directory)
        self._sessions_dir = self._dir / _SESSIONS
        self._lock = threading.Lock()
        if mkdirs:
            self._sessions_dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    # --------------- main stream

    def get_cursor(self) -> str:
        return self._read(self._dir / _CURSOR) or ""

    def set_cursor(self, cursor: str) -> None:
        self._write(self._dir / _CURSOR, cursor)

    def get_last_id(self) -> str:
        return self._read(self._dir / _ID) or ""

    def set_last_id(self, event_id: str) -> None:
        self._write(self._dir / _ID, event_id)

    # --------------- start time

    def get_start_time(self) -> Optional[datetime]:
        raw = self._read(self._dir / _START_TIME)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError as e:
            raise StateStoreError(f"Corrupt start time in {self._dir}: {raw!r}") from e

    def set_start_time(self, start_time: datetime) -> None:
        with self._lock:
            prev = self.get_start_time()
            if prev is not None:
                if prev != start_time:
                    raise StartTimeConflictError(
                        f"Start time already set to {prev.isoformat()}, refusing {start_time.isoformat()}"
                    )
                return
            self._write(self._dir / _START_TIME, start_time.isoformat())

    # --------------- sessions

    def get_sessions(self) -> dict[str, int]:
        if not self._sessions_dir.exists():
            return {}
        sessions: dict[str, int] = {}
        for path in self._sessions_dir.iterdir():
            if path.name.startswith(".") or not path.is_file():
                continue
            raw = self._read(path)
            if raw is None:
                continue  # removed concurrently
            try:
                sessions[unquote(path.name)] = int(raw)
            except ValueError as e:
                raise StateStoreError(f"Corrupt session index in {path}: {raw!r}") from e
        return sessions

    def set_session_index(self, session_id: str, index: int) -> None:
        self._write(self._session_path(session_id), str(int(index)))

    def remove_session(self, session_id: str) -> None:
        try:
            self._session_path(session_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StateStoreError(f"Failed to remove session {session_id}: {e}") from e
        logger.debug(f"Session removed from state id={session_id}")

    # --------------- internals

    def _session_path(self, session_id: str) -> Path:
        if not session_id:
            raise StateStoreError("Empty session id")
        name = quote(session_id, safe="")
        if name.startswith("."):
            # dot files are temporaries
            name = "%2E" + name[1:]
        return self._sessions_dir / name

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Failed to read {path}: {e}") from e

    @staticmethod
    def _write(path: Path, value: str) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise StateStoreError(f"Failed to write {path}: {e}") from e
