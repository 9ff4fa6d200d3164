"""Structured JSON logging with correlation-id and request-info context."""

from __future__ import annotations

import json
import logging
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="")


@dataclass(frozen=True)
class RequestLogInfo:
    """Request-scoped attributes attached to every audit log entry."""

    ip: str = "cli"
    user_agent: str = "cli"
    request_uri: str = "cli"
    request_method: str = "cli"
    user_id: str | None = None
    session_id: str | None = None
    started_at: float = 0.0


REQUEST_INFO_CTX: ContextVar[RequestLogInfo] = ContextVar(
    "request_info", default=RequestLogInfo()
)


class JsonLogFormatter(logging.Formatter):
    """Serialize log records into compact JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Return JSON string for the given log record."""
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": CORRELATION_ID_CTX.get(),
        }

        for key in ["channel", "path", "method", "status_code", "client_ip", "context"]:
            value = getattr(record, key, None)
            if value not in (None, ""):
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger to emit structured JSON logs."""
    normalized_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(normalized_level)
    root_logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    """Store correlation id in request-local context."""
    CORRELATION_ID_CTX.set(correlation_id)


def set_request_info(
    *, ip: str, user_agent: str, request_uri: str, request_method: str
) -> None:
    """Start a new request-info context for the current request."""
    REQUEST_INFO_CTX.set(
        RequestLogInfo(
            ip=ip or "unknown",
            user_agent=user_agent or "unknown",
            request_uri=request_uri,
            request_method=request_method,
            started_at=time.time(),
        )
    )


def bind_request_identity(
    *, user_id: str | None = None, session_id: str | None = None
) -> None:
    """Attach authenticated user and session id to the current request info."""
    current = REQUEST_INFO_CTX.get()
    REQUEST_INFO_CTX.set(
        replace(
            current,
            user_id=user_id if user_id is not None else current.user_id,
            session_id=session_id if session_id is not None else current.session_id,
        )
    )


def get_request_info() -> RequestLogInfo:
    return REQUEST_INFO_CTX.get()
