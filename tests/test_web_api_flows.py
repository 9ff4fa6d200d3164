from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from schoolgate.auth.repository import IdentityRepository
from schoolgate.auth.service import LOCKOUT_MESSAGE
from schoolgate.core.config import RateLimitPolicy
from schoolgate.session.store import SessionHandle, SessionStore
from tests.factories import FakeClock, make_config, make_principal
from web_api import create_app

COOKIE = "SECURE_SESSION_ID"


@pytest.fixture
def client(tmp_path: Path, monkeypatch) -> Iterator[TestClient]:
    monkeypatch.delenv("MONGODB_URI", raising=False)
    IdentityRepository(tmp_path).upsert_user(make_principal())
    app = create_app(make_config(tmp_path), tmp_path)
    with TestClient(app) as test_client:
        yield test_client


def _log_messages(tmp_path: Path) -> list[str]:
    connection = sqlite3.connect(str(tmp_path / "state.db"))
    try:
        return [row[0] for row in connection.execute("SELECT message FROM system_logs")]
    finally:
        connection.close()


def _log_contexts(tmp_path: Path, message: str) -> list[dict]:
    connection = sqlite3.connect(str(tmp_path / "state.db"))
    try:
        rows = connection.execute(
            "SELECT context FROM system_logs WHERE message = ? ORDER BY id", (message,)
        ).fetchall()
    finally:
        connection.close()
    return [json.loads(row[0]) for row in rows]


def _client_with(tmp_path: Path, config) -> TestClient:
    IdentityRepository(tmp_path).upsert_user(make_principal())
    return TestClient(create_app(config, tmp_path))


def _csrf(client: TestClient, **kwargs) -> str:
    response = client.get("/session", **kwargs)
    assert response.status_code == 200
    return response.json()["csrf_token"]


def _web_login(client: TestClient, password: str = "correct-horse", **kwargs):
    token = _csrf(client, **kwargs)
    return client.post(
        "/login",
        data={"email": "bob@school.test", "password": password, "csrf_token": token},
        **kwargs,
    )


def _api_token(client: TestClient, username: str, password: str) -> dict:
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return response.json()


def test_health_carries_security_headers(client: TestClient) -> None:
    response = client.get("/api/health", headers={"X-Request-ID": "req-1"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-1"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_gatekeeper_rejects_sql_injection_in_query(client: TestClient, tmp_path: Path) -> None:
    response = client.get("/api/health", params={"q": "1' OR '1'='1"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "SUSPICIOUS_INPUT"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "sql_injection_attempt" in _log_messages(tmp_path)


def test_web_login_lockout_after_five_failures(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("MONGODB_URI", raising=False)
    config = make_config(tmp_path)
    config = replace(
        config, rate_limits=replace(config.rate_limits, login=RateLimitPolicy(100, 900))
    )
    with _client_with(tmp_path, config) as client:
        for _ in range(5):
            response = _web_login(client, password="wrong")
            assert response.status_code == 401
            assert response.json()["error_code"] == "AUTH_INVALID_CREDENTIALS"

        blocked = _web_login(client)

    assert blocked.status_code == 429
    assert blocked.json()["message"] == LOCKOUT_MESSAGE
    assert blocked.headers["Retry-After"] == "900"
    [context] = _log_contexts(tmp_path, "login_blocked_attempts")
    assert context["reason"] == "lockout"
    assert len(_log_contexts(tmp_path, "login_failed")) == 5
    assert "login_success" not in _log_messages(tmp_path)

    connection = sqlite3.connect(str(tmp_path / "state.db"))
    try:
        [(attempts,)] = connection.execute("SELECT failed_attempts FROM login_attempts").fetchall()
    finally:
        connection.close()
    assert attempts == 5


def test_web_login_rate_limit_blocks_with_the_same_answer(
    client: TestClient, tmp_path: Path
) -> None:
    for _ in range(5):
        assert _web_login(client, password="wrong").status_code == 401

    blocked = _web_login(client)

    assert blocked.status_code == 429
    assert blocked.json()["message"] == LOCKOUT_MESSAGE
    [context] = _log_contexts(tmp_path, "login_blocked_attempts")
    assert context["reason"] == "rate_limit"


def test_gatekeeper_scans_every_value_of_a_repeated_query_key(
    client: TestClient, tmp_path: Path
) -> None:
    response = client.get("/api/health?q=1%27+OR+1%3D1%3B+DROP+TABLE+users&q=ok")

    assert response.status_code == 400
    assert response.json()["error_code"] == "SUSPICIOUS_INPUT"
    assert "sql_injection_attempt" in _log_messages(tmp_path)


def test_gatekeeper_scans_every_value_of_a_repeated_body_key(client: TestClient) -> None:
    response = client.post(
        "/api/auth/password-reset",
        content=b"email=%3Cscript%3Ealert(1)%3C%2Fscript%3E&email=a%40b.test",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "SUSPICIOUS_INPUT"


def test_gatekeeper_caps_chunked_bodies_without_content_length(
    tmp_path: Path, monkeypatch
) -> None:
    monkeypatch.delenv("MONGODB_URI", raising=False)
    config = make_config(tmp_path)
    config = replace(config, security=replace(config.security, request_max_bytes=1000))

    with _client_with(tmp_path, config) as client:
        response = client.post("/api/health", content=iter([b"a" * 600] * 5))

    assert response.status_code == 413
    assert response.json()["error_code"] == "REQUEST_TOO_LARGE"
    [context] = _log_contexts(tmp_path, "request_too_large")
    assert context["content_length"] > 1000


def test_web_login_requires_csrf_token(client: TestClient) -> None:
    client.get("/session")

    response = client.post("/login", data={"email": "bob@school.test", "password": "correct-horse"})

    assert response.status_code == 403
    assert response.json()["error_code"] == "CSRF_INVALID"


def test_web_login_rotates_session_cookie(client: TestClient) -> None:
    _csrf(client)
    anonymous_id = client.cookies.get(COOKIE)

    response = _web_login(client)

    assert response.status_code == 200
    assert response.json()["user"]["username"] == "bob"
    assert client.cookies.get(COOKIE) != anonymous_id
    assert client.get("/account").json()["authenticated"] is True


def test_account_redirects_anonymous_browser_to_login(client: TestClient) -> None:
    response = client.get("/account", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["Location"] == "/login"
    assert response.json()["error_code"] == "SESSION_INVALID"


def test_session_from_another_ip_is_destroyed(client: TestClient, tmp_path: Path) -> None:
    origin = {"X-Forwarded-For": "8.8.8.8"}
    assert _web_login(client, headers=origin).status_code == 200
    assert client.get("/account", headers=origin).status_code == 200

    response = client.get(
        "/account", headers={"X-Forwarded-For": "1.1.1.1"}, follow_redirects=False
    )

    assert response.status_code == 303
    assert response.json()["error_code"] == "SESSION_EXPIRED"
    assert "session_hijack_attempt" in _log_messages(tmp_path)


def test_logout_requires_csrf_and_clears_session(client: TestClient) -> None:
    token = _web_login(client).json()["csrf_token"]

    assert client.post("/logout").status_code == 403

    response = client.post("/logout", headers={"X-CSRF-Token": token})

    assert response.status_code == 200
    assert client.get("/session").json()["authenticated"] is False


def test_api_login_me_and_refresh(client: TestClient) -> None:
    tokens = _api_token(client, "bob", "correct-horse")
    bearer = {"Authorization": f"Bearer {tokens['access_token']}"}

    me = client.get("/api/auth/me", headers=bearer)
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "bob@school.test"

    refreshed = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200
    assert "refresh_token" not in refreshed.json()

    refresh_as_bearer = client.get(
        "/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
    )
    assert refresh_as_bearer.status_code == 401
    assert refresh_as_bearer.headers["WWW-Authenticate"] == "Bearer"

    assert client.post("/api/auth/logout", headers=bearer).json() == {"status": "ok"}


def test_api_login_validation_errors_are_per_field(client: TestClient) -> None:
    response = client.post("/api/auth/login", json={"username": "x", "password": "p"})

    assert response.status_code == 422
    assert "username" in response.json()["errors"]


def test_protected_api_requires_bearer(client: TestClient) -> None:
    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.json()["error_code"] == "AUTH_MISSING_TOKEN"


def test_password_reset_is_accepted_for_unknown_email(client: TestClient) -> None:
    response = client.post("/api/auth/password-reset", json={"email": "ghost@school.test"})

    assert response.status_code == 200
    assert response.json()["status"] == "accepted"


def test_log_routes_are_admin_only(client: TestClient) -> None:
    teacher = _api_token(client, "bob", "correct-horse")
    admin = _api_token(client, "admin", "admin-pass-123")

    forbidden = client.get(
        "/api/logs", headers={"Authorization": f"Bearer {teacher['access_token']}"}
    )
    assert forbidden.status_code == 403

    admin_headers = {"Authorization": f"Bearer {admin['access_token']}"}
    listing = client.get("/api/logs", params={"channel": "auth"}, headers=admin_headers)
    assert listing.status_code == 200
    assert listing.json()["total"] >= 2

    export = client.get(
        "/api/logs/export",
        params={"start": "2020-01-01", "end": "2100-01-01", "format": "csv"},
        headers=admin_headers,
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["Content-Disposition"]

    unsupported = client.get(
        "/api/logs/export",
        params={"start": "2020-01-01", "end": "2100-01-01", "format": "xml"},
        headers=admin_headers,
    )
    assert unsupported.status_code == 422


def test_app_lifespan_purges_idle_sessions_on_startup(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("MONGODB_URI", raising=False)
    store = SessionStore(database_path=tmp_path / "state.db", clock=FakeClock())
    stale = SessionHandle(None, {"k": "v"})
    store.persist(stale)
    store.close()

    with _client_with(tmp_path, make_config(tmp_path)) as client:
        assert client.get("/api/health").status_code == 200

    connection = sqlite3.connect(str(tmp_path / "state.db"))
    try:
        rows = connection.execute("SELECT session_id FROM web_sessions").fetchall()
    finally:
        connection.close()
    assert (stale.session_id,) not in rows


def test_log_anomalies_and_report_routes(client: TestClient) -> None:
    teacher = _api_token(client, "bob", "correct-horse")
    admin = _api_token(client, "admin", "admin-pass-123")
    admin_headers = {"Authorization": f"Bearer {admin['access_token']}"}

    forbidden = client.get(
        "/api/logs/anomalies", headers={"Authorization": f"Bearer {teacher['access_token']}"}
    )
    assert forbidden.status_code == 403

    anomalies = client.get("/api/logs/anomalies", params={"hours": 6}, headers=admin_headers)
    assert anomalies.status_code == 200
    assert anomalies.json()["hours"] == 6
    assert anomalies.json()["auth_failures"] == []

    report = client.get(
        "/api/logs/report",
        params={"start": "2020-01-01", "end": "2100-01-01", "channel": ["auth"]},
        headers=admin_headers,
    )
    assert report.status_code == 200
    body = report.json()
    assert body["summary"]["total_logs"] >= 2
    assert [item["channel"] for item in body["channel_distribution"]] == ["auth"]
    assert "top_errors" not in body
