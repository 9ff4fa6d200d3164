"""Admin API over persisted audit logs."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from schoolgate.api.contracts import (
    ApiErrorResponse,
    LogAnomaliesResponse,
    LogCleanupResponse,
    LogEntriesResponse,
    LogReportResponse,
    LogStatisticsResponse,
)
from schoolgate.api.errors import ApiError, ApiErrorCode
from schoolgate.audit.analyzer import LogAnalyzer
from schoolgate.audit.logger import AuditLogger
from schoolgate.auth.api_gate import require_admin
from schoolgate.auth.models import Principal

_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


def create_log_router(analyzer: LogAnalyzer, audit: AuditLogger) -> APIRouter:
    """Build admin-only routes for browsing, exporting and pruning logs."""
    router = APIRouter(
        prefix="/api/logs",
        tags=["logs"],
        responses={401: {"model": ApiErrorResponse}, 403: {"model": ApiErrorResponse}},
    )

    @router.get("", response_model=LogEntriesResponse)
    def list_logs(
        level: str | None = None,
        channel: str | None = None,
        user_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        search: str | None = Query(default=None, max_length=200),
        limit: int = Query(default=50, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        _: Principal = Depends(require_admin),
    ) -> LogEntriesResponse:
        """Page through log entries, newest first."""
        filters = {
            "level": level,
            "channel": channel,
            "user_id": user_id,
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "search": search,
        }
        return LogEntriesResponse(
            items=analyzer.query(filters, limit=limit, offset=offset),
            total=analyzer.count(filters),
            limit=limit,
            offset=offset,
        )

    @router.get("/stats", response_model=LogStatisticsResponse)
    def log_statistics(
        days: int = Query(default=7, ge=1, le=365),
        _: Principal = Depends(require_admin),
    ) -> LogStatisticsResponse:
        """Counters by level, channel and day."""
        return LogStatisticsResponse(**analyzer.statistics(days))

    @router.get("/anomalies", response_model=LogAnomaliesResponse)
    def log_anomalies(
        hours: int = Query(default=24, ge=1, le=720),
        _: Principal = Depends(require_admin),
    ) -> LogAnomaliesResponse:
        """Error spikes, noisy IPs, login-failure clusters and slow queries."""
        return LogAnomaliesResponse(**analyzer.detect_anomalies(hours))

    @router.get("/report", response_model=LogReportResponse, response_model_exclude_none=True)
    def log_report(
        start: date,
        end: date,
        channel: list[str] | None = Query(default=None),
        level: list[str] | None = Query(default=None),
        details: bool = False,
        _: Principal = Depends(require_admin),
    ) -> LogReportResponse:
        """Summary and distributions for entries between two dates."""
        return LogReportResponse(
            **analyzer.generate_report(
                start.isoformat(),
                end.isoformat(),
                channels=channel,
                levels=level,
                include_details=details,
            )
        )

    @router.get("/export")
    def export_logs(
        start: date,
        end: date,
        fmt: str = Query(default="json", alias="format"),
        _: Principal = Depends(require_admin),
    ) -> Response:
        """Download entries between two dates as JSON or CSV."""
        if fmt not in _MEDIA_TYPES:
            raise ApiError(
                status_code=422,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message=f"Unsupported export format: {fmt}",
                errors={"format": "must be one of json, csv"},
            )
        body = analyzer.export(start.isoformat(), end.isoformat(), fmt)
        filename = f"logs_{start.isoformat()}_{end.isoformat()}.{fmt}"
        return Response(
            content=body,
            media_type=_MEDIA_TYPES[fmt],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.delete("", response_model=LogCleanupResponse)
    def cleanup_logs(
        days: int = Query(default=90, ge=1),
        principal: Principal = Depends(require_admin),
    ) -> LogCleanupResponse:
        """Delete entries older than ``days``."""
        deleted = analyzer.cleanup(days)
        audit.audit_action(
            "delete",
            "system_logs",
            new_data={"older_than_days": days, "deleted": deleted},
            user_id=principal.user_id,
        )
        return LogCleanupResponse(deleted=deleted, older_than_days=days)

    return router
