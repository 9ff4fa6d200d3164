"""Login brute-force protection backed by SQLite runtime state."""

from __future__ import annotations

import time
from pathlib import Path
from threading import Lock
from typing import Callable

from schoolgate.core.migrations.runner import connect


def login_identifier(login: str, client_ip: str) -> str:
    """Single lockout key for every login path: normalized login plus client IP."""
    return f"{login.strip().lower()}|{client_ip.strip() or 'unknown'}"


class LoginAttemptGuard:
    """Per-identifier failure counter with a fixed lockout window."""

    def __init__(
        self,
        *,
        database_path: Path,
        max_attempts: int = 5,
        lockout_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize guard storage and policy parameters."""
        self._connection = connect(database_path)
        self._lock = Lock()
        self._max_attempts = max(1, int(max_attempts))
        self._lockout_seconds = max(1, int(lockout_seconds))
        self._clock = clock

    @property
    def lockout_seconds(self) -> int:
        return self._lockout_seconds

    def may_attempt(self, identifier: str) -> bool:
        """Return whether another credential check is permitted for ``identifier``."""
        now = self._clock()
        with self._lock:
            row = self._connection.execute(
                "SELECT failed_attempts, last_attempt FROM login_attempts "
                "WHERE identifier_key = ?",
                (identifier,),
            ).fetchone()
            if row is None:
                return True
            if now - float(row["last_attempt"]) > self._lockout_seconds:
                self._connection.execute(
                    "DELETE FROM login_attempts WHERE identifier_key = ?", (identifier,)
                )
                return True
        return int(row["failed_attempts"]) < self._max_attempts

    def record(self, identifier: str, success: bool) -> None:
        """Clear the counter on success, otherwise count one more failure."""
        with self._lock:
            if success:
                self._connection.execute(
                    "DELETE FROM login_attempts WHERE identifier_key = ?", (identifier,)
                )
                return
            self._connection.execute(
                """
                INSERT INTO login_attempts(identifier_key, failed_attempts, last_attempt)
                VALUES (?, 1, ?)
                ON CONFLICT(identifier_key) DO UPDATE SET
                  failed_attempts = CASE
                    WHEN excluded.last_attempt - last_attempt > ? THEN 1
                    ELSE failed_attempts + 1
                  END,
                  last_attempt = excluded.last_attempt
                """,
                (identifier, self._clock(), self._lockout_seconds),
            )

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()
