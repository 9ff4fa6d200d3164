"""Multi-channel audit/security logger fanning out to file, database and webhook sinks.

Logging is best-effort infrastructure: a failing sink is skipped and reported
on the stdlib ``logging`` stream, never raised into the request path.
"""

from __future__ import annotations

import logging
import resource
import socket
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

from schoolgate.audit.models import AuditLogEntry, LogChannel, LogExtra, LogLevel
from schoolgate.audit.redaction import redact
from schoolgate.audit.sinks import DatabaseSink, FileSink, LogSink, WebhookSink
from schoolgate.core.config import AppConfig
from schoolgate.core.logging import get_request_info

MIRROR_LOGGER = logging.getLogger("schoolgate.audit")
LOGGER = logging.getLogger(__name__)

SLOW_QUERY_SECONDS = 0.1
SLOW_OPERATION_SECONDS = 1.0

logging.addLevelName(25, "NOTICE")


def _memory_peak_kb() -> int:
    return int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)


class AuditLogger:
    """Structured logger with eight severities and fixed channels."""

    def __init__(
        self,
        sinks: Iterable[LogSink] = (),
        *,
        enabled: bool = True,
        debug_enabled: bool = False,
        default_channel: LogChannel = LogChannel.SYSTEM,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._sinks = list(sinks)
        self._enabled = enabled
        self._debug_enabled = debug_enabled
        self._default_channel = default_channel
        self._clock = clock

    def log(
        self,
        level: LogLevel | str,
        channel: LogChannel | str | None,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        if not self._enabled:
            return
        try:
            entry_level = LogLevel(level)
            if entry_level is LogLevel.DEBUG and not self._debug_enabled:
                return
            entry = self._build_entry(
                entry_level, LogChannel(channel or self._default_channel), message, context or {}
            )
        except Exception:  # noqa: BLE001
            self._fallback(message, context)
            return

        MIRROR_LOGGER.log(
            entry.level.python_level,
            entry.message,
            extra={"channel": entry.channel.value, "context": redact(entry.context)},
        )
        for sink in self._sinks:
            try:
                sink.write(entry)
            except Exception:  # noqa: BLE001
                LOGGER.exception(
                    "audit_sink_failed",
                    extra={"channel": entry.channel.value, "context": {"sink": type(sink).__name__}},
                )

    def _build_entry(
        self, level: LogLevel, channel: LogChannel, message: str, context: dict[str, Any]
    ) -> AuditLogEntry:
        info = get_request_info()
        elapsed = time.time() - info.started_at if info.started_at else 0.0
        return AuditLogEntry(
            timestamp=self._clock().isoformat(timespec="microseconds"),
            level=level,
            channel=channel,
            message=message,
            context=dict(context),
            extra=LogExtra(
                ip=info.ip,
                user_agent=info.user_agent,
                request_uri=info.request_uri,
                request_method=info.request_method,
                user_id=info.user_id,
                session_id=info.session_id,
                memory_peak_kb=_memory_peak_kb(),
                execution_time=round(elapsed, 6),
            ),
        )

    @staticmethod
    def _fallback(message: str, context: dict[str, Any] | None) -> None:
        try:
            sys.stderr.write(f"audit log failure: {message} {redact(context or {})!r}\n")
        except Exception:  # noqa: BLE001
            pass

    def emergency(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.EMERGENCY, channel, message, context)

    def alert(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.ALERT, channel, message, context)

    def critical(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.CRITICAL, channel, message, context)

    def error(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.ERROR, channel, message, context)

    def warning(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.WARNING, channel, message, context)

    def notice(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.NOTICE, channel, message, context)

    def info(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.INFO, channel, message, context)

    def debug(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        channel: LogChannel | None = None,
    ) -> None:
        self.log(LogLevel.DEBUG, channel, message, context)

    def security_event(
        self,
        event: str,
        context: dict[str, Any] | None = None,
        *,
        level: LogLevel = LogLevel.WARNING,
    ) -> None:
        """Record a security-relevant event on the security channel."""
        self.log(level, LogChannel.SECURITY, event, {"event": event, **(context or {})})

    def audit_action(
        self,
        action: str,
        table: str,
        record_id: str | None = None,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> None:
        """Record a data-changing action on the audit channel."""
        self.log(
            LogLevel.INFO,
            LogChannel.AUDIT,
            f"{action} {table}",
            {
                "action": action,
                "table_name": table,
                "record_id": record_id,
                "old_data": old_data or None,
                "new_data": new_data or None,
                "user_id": user_id or get_request_info().user_id,
            },
        )

    def performance(
        self, operation: str, started_at: float, context: dict[str, Any] | None = None
    ) -> None:
        execution_time = time.perf_counter() - started_at
        level = LogLevel.WARNING if execution_time > SLOW_OPERATION_SECONDS else LogLevel.INFO
        self.log(
            level,
            LogChannel.PERFORMANCE,
            f"Performance: {operation}",
            {
                **(context or {}),
                "execution_time": execution_time,
                "memory_peak_kb": _memory_peak_kb(),
            },
        )

    def sql_query(
        self, query: str, params: dict[str, Any] | list[Any] | None = None, execution_time: float = 0.0
    ) -> None:
        level = LogLevel.WARNING if execution_time > SLOW_QUERY_SECONDS else LogLevel.DEBUG
        self.log(
            level,
            LogChannel.DATABASE,
            "SQL Query executed",
            {"query": query, "params": params or [], "execution_time": execution_time},
        )

    def exception(self, exc: BaseException, context: dict[str, Any] | None = None) -> None:
        frame = traceback.extract_tb(exc.__traceback__)[-1] if exc.__traceback__ else None
        self.log(
            LogLevel.ERROR,
            LogChannel.ERROR,
            "Exception occurred",
            {
                **(context or {}),
                "exception": type(exc).__name__,
                "message": str(exc),
                "file": frame.filename if frame else None,
                "line": frame.lineno if frame else None,
                "trace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            },
        )

    def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if callable(close):
                close()


def create_audit_logger(config: AppConfig, app_root: Path) -> AuditLogger:
    """Build the audit logger with the sinks enabled in configuration."""
    log_config = config.logging
    sinks: list[LogSink] = [
        FileSink(
            (app_root / log_config.log_dir).resolve(),
            max_file_size=log_config.max_file_size,
            max_files=log_config.max_files,
        )
    ]
    if log_config.to_database:
        sinks.append(DatabaseSink((app_root / config.state_db_path).resolve()))
    if log_config.webhook_url:
        sinks.append(
            WebhookSink(
                log_config.webhook_url,
                timeout_seconds=log_config.webhook_timeout_seconds,
                max_pending=log_config.webhook_max_pending,
                server=socket.gethostname(),
                environment=config.env,
            )
        )
    return AuditLogger(
        sinks,
        enabled=log_config.enabled,
        debug_enabled=config.debug_logging,
    )
