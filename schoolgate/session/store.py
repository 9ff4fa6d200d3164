"""Server-side web session storage backed by the runtime-state database."""

from __future__ import annotations

import json
import secrets
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from schoolgate.core.migrations.runner import connect


def new_session_id() -> str:
    return secrets.token_hex(32)


class SessionHandle:
    """Mutable bag of session fields bound to one request."""

    def __init__(self, session_id: str | None, data: dict[str, Any] | None = None) -> None:
        self.session_id = session_id
        self.data: dict[str, Any] = dict(data or {})
        self.previous_ids: list[str] = []
        self.modified = False
        self.destroyed = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.modified = True
        self.destroyed = False

    def regenerate(self) -> str:
        """Move the session to a fresh identifier, keeping its fields."""
        if self.session_id:
            self.previous_ids.append(self.session_id)
        self.session_id = new_session_id()
        self.destroyed = False
        self.modified = True
        return self.session_id

    def destroy(self) -> None:
        """Drop every field and the identifier."""
        if self.session_id:
            self.previous_ids.append(self.session_id)
        self.session_id = None
        self.data.clear()
        self.destroyed = True
        self.modified = True


class SessionStore:
    """Keyed JSON payloads with last-write timestamps."""

    def __init__(self, *, database_path: Path, clock: Callable[[], float] = time.time) -> None:
        self._connection = connect(database_path)
        self._lock = Lock()
        self._clock = clock

    def load(self, session_id: str | None) -> SessionHandle:
        """Return a handle for ``session_id``; unknown ids yield an empty anonymous handle."""
        if not session_id:
            return SessionHandle(None)
        with self._lock:
            row = self._connection.execute(
                "SELECT payload FROM web_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return SessionHandle(None)
        try:
            data = json.loads(row["payload"])
        except ValueError:
            data = {}
        return SessionHandle(session_id, data if isinstance(data, dict) else {})

    def persist(self, handle: SessionHandle) -> None:
        """Write back a handle after the request, honouring rotation and destruction."""
        with self._lock:
            for stale_id in handle.previous_ids:
                self._connection.execute(
                    "DELETE FROM web_sessions WHERE session_id = ?", (stale_id,)
                )
            if not handle.data:
                if handle.session_id:
                    self._connection.execute(
                        "DELETE FROM web_sessions WHERE session_id = ?", (handle.session_id,)
                    )
                handle.session_id = None
                handle.previous_ids.clear()
                return
            if handle.session_id is None:
                handle.session_id = new_session_id()
            self._connection.execute(
                """
                INSERT INTO web_sessions(session_id, payload, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                  payload = excluded.payload,
                  updated_at = excluded.updated_at
                """,
                (handle.session_id, json.dumps(handle.data, default=str), self._clock()),
            )
        handle.previous_ids.clear()

    def purge_idle(self, max_idle_seconds: int) -> int:
        """Delete sessions untouched for longer than ``max_idle_seconds``."""
        cutoff = self._clock() - max_idle_seconds
        with self._lock:
            cursor = self._connection.execute(
                "DELETE FROM web_sessions WHERE updated_at < ?", (cutoff,)
            )
        return int(cursor.rowcount or 0)

    def close(self) -> None:
        with self._lock:
            self._connection.close()
