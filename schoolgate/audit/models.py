"""Audit log levels, channels and entry model."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from schoolgate.audit.redaction import redact


class LogLevel(StrEnum):
    """Syslog-style severities, most severe first."""

    EMERGENCY = "emergency"
    ALERT = "alert"
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    NOTICE = "notice"
    INFO = "info"
    DEBUG = "debug"

    @property
    def severity(self) -> int:
        """Return syslog numeric severity (0 = emergency, 7 = debug)."""
        return _SEVERITY[self]

    @property
    def python_level(self) -> int:
        """Closest stdlib ``logging`` level for mirroring to stdout."""
        return _PYTHON_LEVEL[self]


_SEVERITY = {level: index for index, level in enumerate(LogLevel)}
_PYTHON_LEVEL = {
    LogLevel.EMERGENCY: 50,
    LogLevel.ALERT: 50,
    LogLevel.CRITICAL: 50,
    LogLevel.ERROR: 40,
    LogLevel.WARNING: 30,
    LogLevel.NOTICE: 25,
    LogLevel.INFO: 20,
    LogLevel.DEBUG: 10,
}


class LogChannel(StrEnum):
    """Audit log channels; each file sink writes one file per channel per day."""

    SYSTEM = "system"
    SECURITY = "security"
    API = "api"
    DATABASE = "database"
    AUTH = "auth"
    AUDIT = "audit"
    PERFORMANCE = "performance"
    ERROR = "error"


class LogExtra(BaseModel):
    """Request and process attributes captured with every entry."""

    ip: str
    user_agent: str
    request_uri: str
    request_method: str
    user_id: str | None = None
    session_id: str | None = None
    memory_peak_kb: int = 0
    execution_time: float = 0.0


class AuditLogEntry(BaseModel):
    """Immutable audit/security log record."""

    model_config = {"frozen": True}

    timestamp: str
    level: LogLevel
    channel: LogChannel
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    extra: LogExtra

    def to_record(self) -> dict[str, Any]:
        """Serializable form with sensitive context keys redacted."""
        record = self.model_dump()
        record["level"] = self.level.value.upper()
        record["channel"] = self.channel.value
        record["context"] = redact(record["context"])
        return record

    def to_json_line(self) -> str:
        return json.dumps(self.to_record(), ensure_ascii=False, default=str)
