"""Public API response contracts."""

from schoolgate.api.contracts.models import (
    AccessTokenResponse,
    ApiErrorResponse,
    AuthMeResponse,
    AuthSessionResponse,
    HealthResponse,
    LogAnomaliesResponse,
    LogCleanupResponse,
    LogEntriesResponse,
    LogoutResponse,
    LogReportResponse,
    LogStatisticsResponse,
    PasswordResetResponse,
    SessionStatusResponse,
)

__all__ = [
    "AccessTokenResponse",
    "ApiErrorResponse",
    "AuthMeResponse",
    "AuthSessionResponse",
    "HealthResponse",
    "LogAnomaliesResponse",
    "LogCleanupResponse",
    "LogEntriesResponse",
    "LogoutResponse",
    "LogReportResponse",
    "LogStatisticsResponse",
    "PasswordResetResponse",
    "SessionStatusResponse",
]
