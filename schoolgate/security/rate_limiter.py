"""Fixed-window request counters shared across processes via SQLite."""

from __future__ import annotations

import math
import time
from pathlib import Path
from threading import Lock
from typing import Callable

from schoolgate.api.errors import PolicyViolation, rate_limited
from schoolgate.core.config import RateLimitPolicy
from schoolgate.core.migrations.runner import connect
from schoolgate.core.security import hash_identifier


class RateLimiter:
    """Fixed-window counter keyed by ``(action, client identity)``.

    Counters live in the runtime-state database rather than the web session,
    so discarding cookies does not reset them and every worker process sees
    the same windows. Each check runs in a ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(
        self,
        *,
        database_path: Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connection = connect(database_path)
        self._lock = Lock()
        self._clock = clock

    def allow(
        self,
        action: str,
        client_identity: str,
        max_requests: int,
        window_seconds: int,
    ) -> bool:
        """Count one request and return whether it fits in the current window."""
        now = self._clock()
        key = hash_identifier(action, client_identity or "unknown")
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                row = self._connection.execute(
                    "SELECT request_count, window_start FROM rate_limit_windows "
                    "WHERE window_key = ?",
                    (key,),
                ).fetchone()
                if row is None or now - float(row["window_start"]) > window_seconds:
                    self._connection.execute(
                        """
                        INSERT INTO rate_limit_windows(window_key, action, request_count, window_start)
                        VALUES (?, ?, 1, ?)
                        ON CONFLICT(window_key) DO UPDATE SET
                          request_count = 1,
                          window_start = excluded.window_start
                        """,
                        (key, action, now),
                    )
                    allowed = True
                elif int(row["request_count"]) >= max_requests:
                    allowed = False
                else:
                    self._connection.execute(
                        "UPDATE rate_limit_windows SET request_count = request_count + 1 "
                        "WHERE window_key = ?",
                        (key,),
                    )
                    allowed = True
                self._connection.execute("COMMIT")
            except Exception:
                self._connection.execute("ROLLBACK")
                raise
        return allowed

    def retry_after(self, action: str, client_identity: str, window_seconds: int) -> int:
        """Seconds until the window for ``(action, identity)`` resets."""
        key = hash_identifier(action, client_identity or "unknown")
        with self._lock:
            row = self._connection.execute(
                "SELECT window_start FROM rate_limit_windows WHERE window_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return 0
        remaining = float(row["window_start"]) + window_seconds - self._clock()
        return max(1, math.ceil(remaining))

    def assert_allowed(
        self,
        action: str,
        client_identity: str,
        policy: RateLimitPolicy,
        *,
        message: str = "Too many requests",
    ) -> None:
        """Raise a 429 ``PolicyViolation`` with ``Retry-After`` when over the ceiling."""
        if self.allow(action, client_identity, policy.requests, policy.window_seconds):
            return
        raise self.violation(action, client_identity, policy, message=message)

    def violation(
        self,
        action: str,
        client_identity: str,
        policy: RateLimitPolicy,
        *,
        message: str = "Too many requests",
    ) -> PolicyViolation:
        return rate_limited(
            message, self.retry_after(action, client_identity, policy.window_seconds)
        )

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()
