"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_ACCOUNT_INACTIVE = "AUTH_ACCOUNT_INACTIVE"
    AUTH_LOCKED_OUT = "AUTH_LOCKED_OUT"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_INVALID = "SESSION_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    CSRF_INVALID = "CSRF_INVALID"
    IP_BLOCKED = "IP_BLOCKED"
    SUSPICIOUS_INPUT = "SUSPICIOUS_INPUT"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        errors: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        detail: dict[str, Any] = {"error_code": str(error_code), "message": message}
        if errors:
            detail["errors"] = errors
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class PolicyViolation(ApiError):
    """Request rejected by a perimeter policy (rate limit, CSRF, threat scan, IP, size)."""


class AuthenticationFailure(ApiError):
    """Credential, token, account or session check failed."""


class ConfigurationError(RuntimeError):
    """Raised at bootstrap when required configuration is missing or unsafe."""


def rate_limited(message: str, retry_after: int) -> PolicyViolation:
    """Build a 429 violation with a ``Retry-After`` hint."""
    return PolicyViolation(
        status_code=429,
        error_code=ApiErrorCode.RATE_LIMITED,
        message=message,
        headers={"Retry-After": str(max(1, int(retry_after)))},
    )


def to_error_payload(detail: Any, status_code: int) -> dict[str, Any]:
    """Normalize HTTP exception detail into stable error payload."""
    if isinstance(detail, dict):
        payload: dict[str, Any] = {
            "success": False,
            "error_code": str(detail.get("error_code") or f"HTTP_{status_code}"),
            "message": str(detail.get("message") or detail.get("detail") or "HTTP error"),
        }
        if detail.get("errors"):
            payload["errors"] = dict(detail["errors"])
        return payload
    return {
        "success": False,
        "error_code": f"HTTP_{status_code}",
        "message": str(detail or "HTTP error"),
    }
