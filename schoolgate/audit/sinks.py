"""Audit log sinks: rotating JSON-lines files, SQLite table and outbound webhook."""

from __future__ import annotations

import gzip
import json
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import BoundedSemaphore, Lock
from typing import Any, Callable, Iterator, Protocol

import requests

from schoolgate.audit.models import AuditLogEntry
from schoolgate.core.migrations.runner import connect

try:
    import fcntl
except ImportError:  # pragma: no cover
    fcntl = None  # type: ignore[assignment]

LOGGER = logging.getLogger(__name__)


class LogSink(Protocol):
    def write(self, entry: AuditLogEntry) -> None: ...


class FileSink:
    """Append-only per-channel, per-day JSON-lines files with size rotation."""

    def __init__(
        self,
        log_dir: Path,
        *,
        max_file_size: int,
        max_files: int,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._log_dir = log_dir
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._max_file_size = max(1, int(max_file_size))
        self._max_files = max(1, int(max_files))
        self._clock = clock
        self._lock = Lock()

    def path_for(self, channel: str) -> Path:
        return self._log_dir / f"{channel}-{self._clock():%Y-%m-%d}.log"

    def write(self, entry: AuditLogEntry) -> None:
        channel = entry.channel.value
        path = self.path_for(channel)
        line = entry.to_json_line() + "\n"
        with self._lock, self._channel_lock(channel):
            self._rotate_if_needed(path)
            self._cleanup(channel)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line)
                fh.flush()

    @contextmanager
    def _channel_lock(self, channel: str) -> Iterator[None]:
        """Exclusive lock shared by every process writing ``channel``."""
        with (self._log_dir / f".{channel}.lock").open("a") as fh:
            if fcntl is not None:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                if fcntl is not None:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _rotate_if_needed(self, path: Path) -> None:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return
        if size < self._max_file_size:
            return
        rotated = path.with_name(f"{path.stem}-{self._clock():%H%M%S}.log")
        suffix = 1
        while rotated.exists() or rotated.with_name(rotated.name + ".gz").exists():
            rotated = path.with_name(f"{path.stem}-{self._clock():%H%M%S}-{suffix}.log")
            suffix += 1
        path.rename(rotated)
        compressed = rotated.with_name(rotated.name + ".gz")
        with rotated.open("rb") as src, gzip.open(compressed, "wb", compresslevel=9) as dst:
            shutil.copyfileobj(src, dst)
        rotated.unlink()

    def _cleanup(self, channel: str) -> None:
        files = [
            candidate
            for candidate in self._log_dir.glob(f"{channel}-*.log*")
            if candidate.name[len(channel) + 1 : len(channel) + 2].isdigit()
        ]
        if len(files) <= self._max_files:
            return
        files.sort(key=lambda candidate: candidate.stat().st_mtime)
        for stale in files[: len(files) - self._max_files]:
            stale.unlink(missing_ok=True)


class DatabaseSink:
    """Append entries to the ``system_logs`` table of the runtime-state database."""

    def __init__(self, database_path: Path) -> None:
        self._connection = connect(database_path)
        self._lock = Lock()

    def write(self, entry: AuditLogEntry) -> None:
        record = entry.to_record()
        extra = record["extra"]
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO system_logs(
                  level, channel, message, context, ip_address, user_agent, user_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["level"],
                    record["channel"],
                    record["message"],
                    json.dumps(record["context"], ensure_ascii=False, default=str),
                    extra.get("ip"),
                    extra.get("user_agent"),
                    extra.get("user_id"),
                    record["timestamp"],
                ),
            )

    def close(self) -> None:
        with self._lock:
            self._connection.close()


class WebhookSink:
    """Fire-and-forget POST of entries to an external collector.

    At most ``max_pending`` entries wait for delivery; further entries are
    dropped and counted in ``dropped`` until the backlog drains.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float,
        server: str,
        environment: str,
        max_pending: int = 100,
        session: requests.Session | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._url = url
        self._timeout = max(0.1, float(timeout_seconds))
        self._server = server
        self._environment = environment
        self._session = session or requests.Session()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="audit-webhook"
        )
        self._slots = BoundedSemaphore(max(1, int(max_pending)))
        self._dropped = 0
        self._dropped_lock = Lock()

    @property
    def dropped(self) -> int:
        return self._dropped

    def build_payload(self, entry: AuditLogEntry) -> dict[str, Any]:
        record = entry.to_record()
        return {
            "timestamp": record["timestamp"],
            "level": entry.level.value,
            "channel": record["channel"],
            "message": record["message"],
            "context": record["context"],
            "server": self._server,
            "environment": self._environment,
        }

    def write(self, entry: AuditLogEntry) -> None:
        if not self._slots.acquire(blocking=False):
            with self._dropped_lock:
                self._dropped += 1
                dropped = self._dropped
            if dropped == 1 or dropped % 100 == 0:
                LOGGER.warning(
                    "audit_webhook_backlog_full", extra={"context": {"dropped": dropped}}
                )
            return
        try:
            self._executor.submit(self._post, self.build_payload(entry))
        except RuntimeError:
            self._slots.release()
            raise

    def _post(self, payload: dict[str, Any]) -> None:
        try:
            self._session.post(
                self._url,
                data=json.dumps(payload, ensure_ascii=False, default=str),
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "schoolgate-audit-logger/1.0",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            LOGGER.warning("audit_webhook_failed", extra={"context": {"error": str(exc)}})
        finally:
            self._slots.release()

    def close(self) -> None:
        self._executor.shutdown(wait=False)
