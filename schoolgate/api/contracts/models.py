"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    success: bool = False
    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    errors: dict[str, str] | None = Field(
        default=None, description="Per-field validation messages"
    )


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class AuthSessionResponse(BaseModel):
    """Token pair issued by API login."""

    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    user: dict[str, str]


class AccessTokenResponse(BaseModel):
    """Access token issued from a refresh token."""

    success: bool = True
    access_token: str
    token_type: str
    expires_in: int


class AuthMeResponse(BaseModel):
    """Current user endpoint response payload."""

    user: dict[str, str]


class SessionStatusResponse(BaseModel):
    """Web session status payload."""

    authenticated: bool
    csrf_token: str
    user: dict[str, str] | None = None


class LogoutResponse(BaseModel):
    """Logout response payload."""

    status: Literal["ok"]


class PasswordResetResponse(BaseModel):
    """Constant acknowledgement for password reset requests."""

    status: Literal["accepted"]
    message: str


class LogEntriesResponse(BaseModel):
    """Paged audit log listing."""

    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class LogStatisticsResponse(BaseModel):
    """Aggregated audit log counters."""

    days: int
    total: int
    by_level: dict[str, int]
    by_channel: dict[str, int]
    by_day: dict[str, int]
    top_security_events: list[dict[str, Any]]


class LogCleanupResponse(BaseModel):
    """Result of deleting old audit log rows."""

    deleted: int
    older_than_days: int


class LogAnomaliesResponse(BaseModel):
    """Anomalies found in recent audit log entries."""

    hours: int
    since: str
    error_spikes: list[dict[str, Any]]
    suspicious_ips: list[dict[str, Any]]
    auth_failures: list[dict[str, Any]]
    slow_queries: list[dict[str, Any]]


class LogReportResponse(BaseModel):
    """Summary of audit log entries over a date range."""

    period: dict[str, str]
    summary: dict[str, Any]
    level_distribution: list[dict[str, Any]]
    channel_distribution: list[dict[str, Any]]
    top_errors: list[dict[str, Any]] | None = None
    daily_activity: list[dict[str, Any]] | None = None
