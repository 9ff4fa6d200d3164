"""Structured audit and security logging."""

from schoolgate.audit.logger import AuditLogger, create_audit_logger
from schoolgate.audit.models import AuditLogEntry, LogChannel, LogLevel
from schoolgate.audit.redaction import REDACTED, Redactor, redact
from schoolgate.audit.sinks import DatabaseSink, FileSink, WebhookSink

__all__ = [
    "AuditLogEntry",
    "AuditLogger",
    "DatabaseSink",
    "FileSink",
    "LogChannel",
    "LogLevel",
    "REDACTED",
    "Redactor",
    "WebhookSink",
    "create_audit_logger",
    "redact",
]
