"""Queries, statistics, export and retention over the ``system_logs`` table."""

from __future__ import annotations

import csv
import io
import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from schoolgate.core.migrations.runner import connect

EXPORT_COLUMNS = [
    "id",
    "created_at",
    "level",
    "channel",
    "message",
    "context",
    "ip_address",
    "user_agent",
    "user_id",
]

ERROR_LEVELS = ("ERROR", "CRITICAL", "ALERT", "EMERGENCY")
ERROR_SPIKE_PER_HOUR = 10
IP_REQUEST_LIMIT = 1000
IP_SHARED_REQUEST_LIMIT = 100
IP_SHARED_USER_LIMIT = 10
AUTH_FAILURE_LIMIT = 5
SLOW_QUERY_ALERT_SECONDS = 1.0
# ip recorded for entries written outside an HTTP request
NO_CLIENT_IP = "cli"


class LogAnalyzer:
    """Read-side companion of ``DatabaseSink``."""

    def __init__(
        self,
        database_path: Path,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._connection = connect(database_path)
        self._clock = clock
        self._lock = Lock()

    @staticmethod
    def _where(filters: dict[str, Any]) -> tuple[str, list[Any]]:
        clauses = ["1=1"]
        params: list[Any] = []
        if filters.get("level"):
            clauses.append("level = ?")
            params.append(str(filters["level"]).upper())
        if filters.get("channel"):
            clauses.append("channel = ?")
            params.append(str(filters["channel"]))
        if filters.get("user_id"):
            clauses.append("user_id = ?")
            params.append(str(filters["user_id"]))
        if filters.get("date_from"):
            clauses.append("created_at >= ?")
            params.append(str(filters["date_from"]))
        if filters.get("date_to"):
            clauses.append("created_at <= ?")
            params.append(_end_of_day(str(filters["date_to"])))
        for key, column in (("channels", "channel"), ("levels", "level")):
            values = [str(value) for value in filters.get(key) or []]
            if values:
                if column == "level":
                    values = [value.upper() for value in values]
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
        if filters.get("search"):
            clauses.append("message LIKE ?")
            params.append(f"%{filters['search']}%")
        return " AND ".join(clauses), params

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        try:
            item["context"] = json.loads(item.get("context") or "{}")
        except ValueError:
            item["context"] = {}
        return item

    def query(
        self, filters: dict[str, Any] | None = None, *, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        where, params = self._where(filters or {})
        with self._lock:
            rows = self._connection.execute(
                f"SELECT * FROM system_logs WHERE {where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, max(1, min(int(limit), 1000)), max(0, int(offset))),
            ).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def count(self, filters: dict[str, Any] | None = None) -> int:
        where, params = self._where(filters or {})
        with self._lock:
            row = self._connection.execute(
                f"SELECT COUNT(*) AS total FROM system_logs WHERE {where}", params
            ).fetchone()
        return int(row["total"] if row else 0)

    def statistics(self, days: int = 7) -> dict[str, Any]:
        """Counts by level, channel and day plus the most frequent security events."""
        since = (self._clock() - timedelta(days=max(1, days))).isoformat()
        with self._lock:
            by_level = self._connection.execute(
                "SELECT level, COUNT(*) AS total FROM system_logs "
                "WHERE created_at >= ? GROUP BY level",
                (since,),
            ).fetchall()
            by_channel = self._connection.execute(
                "SELECT channel, COUNT(*) AS total FROM system_logs "
                "WHERE created_at >= ? GROUP BY channel",
                (since,),
            ).fetchall()
            by_day = self._connection.execute(
                "SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS total "
                "FROM system_logs WHERE created_at >= ? GROUP BY day ORDER BY day",
                (since,),
            ).fetchall()
            security = self._connection.execute(
                "SELECT message, COUNT(*) AS total FROM system_logs "
                "WHERE created_at >= ? AND channel = 'security' "
                "GROUP BY message ORDER BY total DESC LIMIT 10",
                (since,),
            ).fetchall()
        return {
            "days": max(1, days),
            "total": sum(int(row["total"]) for row in by_level),
            "by_level": {row["level"]: int(row["total"]) for row in by_level},
            "by_channel": {row["channel"]: int(row["total"]) for row in by_channel},
            "by_day": {row["day"]: int(row["total"]) for row in by_day},
            "top_security_events": [
                {"event": row["message"], "count": int(row["total"])} for row in security
            ],
        }

    def detect_anomalies(self, hours: int = 24) -> dict[str, Any]:
        """Flag error bursts, noisy client IPs, login-failure clusters and slow queries.

        Only entries from the last ``hours`` hours are considered. Each list is
        empty when nothing crosses its threshold.
        """
        hours = max(1, hours)
        since = (self._clock() - timedelta(hours=hours)).isoformat()
        with self._lock:
            error_spikes = self._connection.execute(
                "SELECT substr(created_at, 1, 13) || ':00:00' AS hour, COUNT(*) AS total "
                "FROM system_logs WHERE created_at >= ? "
                f"AND level IN ({', '.join('?' for _ in ERROR_LEVELS)}) "
                "GROUP BY hour HAVING total > ? ORDER BY total DESC, hour",
                (since, *ERROR_LEVELS, ERROR_SPIKE_PER_HOUR),
            ).fetchall()
            suspicious_ips = self._connection.execute(
                "SELECT ip_address, COUNT(*) AS total, COUNT(DISTINCT user_id) AS users "
                "FROM system_logs WHERE created_at >= ? "
                "AND ip_address IS NOT NULL AND ip_address != ? "
                "GROUP BY ip_address HAVING total > ? OR (total > ? AND users > ?) "
                "ORDER BY total DESC",
                (
                    since,
                    NO_CLIENT_IP,
                    IP_REQUEST_LIMIT,
                    IP_SHARED_REQUEST_LIMIT,
                    IP_SHARED_USER_LIMIT,
                ),
            ).fetchall()
            auth_failures = self._connection.execute(
                "SELECT COALESCE(json_extract(context, '$.ip'), ip_address) AS ip, "
                "COUNT(*) AS total FROM system_logs "
                "WHERE created_at >= ? AND message = 'login_failed' "
                "GROUP BY ip HAVING total > ? ORDER BY total DESC",
                (since, AUTH_FAILURE_LIMIT),
            ).fetchall()
            slow_queries = self._connection.execute(
                "SELECT json_extract(context, '$.query') AS query, "
                "MAX(CAST(json_extract(context, '$.execution_time') AS REAL)) AS slowest, "
                "COUNT(*) AS total FROM system_logs "
                "WHERE created_at >= ? AND channel = 'database' "
                "AND CAST(json_extract(context, '$.execution_time') AS REAL) > ? "
                "GROUP BY query ORDER BY slowest DESC LIMIT 10",
                (since, SLOW_QUERY_ALERT_SECONDS),
            ).fetchall()
        return {
            "hours": hours,
            "since": since,
            "error_spikes": [
                {"hour": row["hour"], "count": int(row["total"])} for row in error_spikes
            ],
            "suspicious_ips": [
                {
                    "ip": row["ip_address"],
                    "requests": int(row["total"]),
                    "unique_users": int(row["users"]),
                }
                for row in suspicious_ips
            ],
            "auth_failures": [
                {"ip": row["ip"], "failures": int(row["total"])} for row in auth_failures
            ],
            "slow_queries": [
                {
                    "query": row["query"],
                    "max_execution_time": float(row["slowest"]),
                    "occurrences": int(row["total"]),
                }
                for row in slow_queries
            ],
        }

    def generate_report(
        self,
        start_date: str,
        end_date: str,
        *,
        channels: list[str] | None = None,
        levels: list[str] | None = None,
        include_details: bool = False,
    ) -> dict[str, Any]:
        """Summarize entries between two dates (inclusive)."""
        where, params = self._where(
            {
                "date_from": start_date,
                "date_to": end_date,
                "channels": channels,
                "levels": levels,
            }
        )
        with self._lock:
            summary = self._connection.execute(
                "SELECT COUNT(*) AS total_logs, COUNT(DISTINCT ip_address) AS unique_ips, "
                "COUNT(DISTINCT user_id) AS unique_users, MIN(created_at) AS first_log, "
                f"MAX(created_at) AS last_log FROM system_logs WHERE {where}",
                params,
            ).fetchone()
            by_level = self._connection.execute(
                f"SELECT level, COUNT(*) AS total FROM system_logs WHERE {where} "
                "GROUP BY level ORDER BY total DESC, level",
                params,
            ).fetchall()
            by_channel = self._connection.execute(
                f"SELECT channel, COUNT(*) AS total FROM system_logs WHERE {where} "
                "GROUP BY channel ORDER BY total DESC, channel",
                params,
            ).fetchall()
            details: dict[str, Any] = {}
            if include_details:
                top_errors = self._connection.execute(
                    f"SELECT message, COUNT(*) AS total FROM system_logs WHERE {where} "
                    f"AND level IN ({', '.join('?' for _ in ERROR_LEVELS)}) "
                    "GROUP BY message ORDER BY total DESC LIMIT 20",
                    (*params, *ERROR_LEVELS),
                ).fetchall()
                daily = self._connection.execute(
                    "SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS total "
                    f"FROM system_logs WHERE {where} GROUP BY day ORDER BY day",
                    params,
                ).fetchall()
                details = {
                    "top_errors": [
                        {"message": row["message"], "count": int(row["total"])}
                        for row in top_errors
                    ],
                    "daily_activity": [
                        {"date": row["day"], "count": int(row["total"])} for row in daily
                    ],
                }
        total = int(summary["total_logs"])

        def distribution(rows: list[sqlite3.Row], column: str) -> list[dict[str, Any]]:
            return [
                {
                    column: row[column],
                    "count": int(row["total"]),
                    "percentage": round(int(row["total"]) * 100.0 / total, 2),
                }
                for row in rows
            ]

        return {
            "period": {"start": start_date, "end": end_date},
            "summary": {
                "total_logs": total,
                "unique_ips": int(summary["unique_ips"]),
                "unique_users": int(summary["unique_users"]),
                "first_log": summary["first_log"],
                "last_log": summary["last_log"],
            },
            "level_distribution": distribution(by_level, "level"),
            "channel_distribution": distribution(by_channel, "channel"),
            **details,
        }

    def export(self, start_date: str, end_date: str, fmt: str = "json") -> str:
        """Serialize entries between two dates (inclusive) as JSON or CSV."""
        where, params = self._where({"date_from": start_date, "date_to": end_date})
        with self._lock:
            rows = self._connection.execute(
                f"SELECT * FROM system_logs WHERE {where} ORDER BY created_at, id", params
            ).fetchall()
        items = [self._row_to_dict(row) for row in rows]
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for item in items:
                writer.writerow(
                    {
                        **{column: item.get(column, "") for column in EXPORT_COLUMNS},
                        "context": json.dumps(item["context"], ensure_ascii=False),
                    }
                )
            return buffer.getvalue()
        if fmt == "json":
            return json.dumps(items, ensure_ascii=False, indent=2)
        raise ValueError(f"Unsupported export format: {fmt}")

    def cleanup(self, days: int = 90) -> int:
        """Delete entries older than ``days``; return the number removed."""
        cutoff = (self._clock() - timedelta(days=max(1, days))).isoformat()
        with self._lock:
            cursor = self._connection.execute(
                "DELETE FROM system_logs WHERE created_at < ?", (cutoff,)
            )
        return int(cursor.rowcount or 0)

    def close(self) -> None:
        with self._lock:
            self._connection.close()


def _end_of_day(value: str) -> str:
    return f"{value}T23:59:59.999999" if len(value) == 10 else value
