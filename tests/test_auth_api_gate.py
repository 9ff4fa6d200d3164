from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from schoolgate.api.errors import ApiError, AuthenticationFailure, PolicyViolation
from schoolgate.audit import AuditLogger
from schoolgate.auth.api_gate import ApiAuthGate, _extract_bearer_token
from schoolgate.auth.models import Principal
from schoolgate.auth.tokens import TokenCodec
from schoolgate.core.config import RateLimitPolicy
from schoolgate.security.gatekeeper import RequestContext
from schoolgate.security.rate_limiter import RateLimiter
from tests.factories import FakeClock, MemorySink, make_config, make_principal


@dataclass
class _Repo:
    users: dict[str, Principal]

    def find_by_id(self, user_id: str) -> Principal | None:
        return self.users.get(user_id)


def _context(authorization: str = "") -> RequestContext:
    headers = {"authorization": authorization} if authorization else {}
    return RequestContext(
        method="GET",
        path="/api/auth/me",
        url="http://testserver/api/auth/me",
        client_ip="8.8.8.8",
        user_agent="pytest",
        content_length=0,
        headers=headers,
    )


def _gate(
    tmp_path: Path,
    sink: MemorySink,
    principal: Principal,
    policy: RateLimitPolicy = RateLimitPolicy(1000, 3600),
) -> tuple[ApiAuthGate, TokenCodec]:
    clock = FakeClock()
    tokens = TokenCodec(make_config(tmp_path).auth, clock=clock)
    gate = ApiAuthGate(
        tokens,
        _Repo(users={principal.user_id: principal}),
        RateLimiter(database_path=tmp_path / "state.db", clock=clock),
        policy,
        AuditLogger([sink]),
    )
    return gate, tokens


def test_extract_bearer_token() -> None:
    assert _extract_bearer_token("Bearer abc") == "abc"
    assert _extract_bearer_token("bearer   abc ") == "abc"
    assert _extract_bearer_token("Basic abc") == ""
    assert _extract_bearer_token("") == ""


def test_valid_access_token_resolves_principal_and_logs_access(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gate, tokens = _gate(tmp_path, sink, make_principal())

    principal = gate.authorize(_context(f"Bearer {tokens.issue_access_token(make_principal())}"))

    assert principal.user_id == "u-1"
    [entry] = sink.find("api_access")
    assert entry.channel == "api"
    assert entry.context == {"user_id": "u-1", "endpoint": "/api/auth/me", "method": "GET"}


def test_missing_token_is_rejected_with_bearer_challenge(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gate, _ = _gate(tmp_path, sink, make_principal())

    with pytest.raises(AuthenticationFailure) as exc:
        gate.authorize(_context())

    assert exc.value.status_code == 401
    assert exc.value.headers == {"WWW-Authenticate": "Bearer"}
    assert exc.value.detail["error_code"] == "AUTH_MISSING_TOKEN"
    assert sink.find("api_auth_failed")[0].context["reason"] == "missing_token"


def test_refresh_token_cannot_be_used_as_access_token(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gate, tokens = _gate(tmp_path, sink, make_principal())

    with pytest.raises(AuthenticationFailure) as exc:
        gate.authorize(_context(f"Bearer {tokens.issue_refresh_token('u-1')}"))

    assert exc.value.detail["error_code"] == "AUTH_TOKEN_INVALID"
    assert sink.find("api_auth_failed")[0].context["reason"] == "refresh_token_as_access"


def test_tampered_token_is_rejected(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gate, tokens = _gate(tmp_path, sink, make_principal())
    token = tokens.issue_access_token(make_principal())
    header, payload, signature = token.split(".")
    forged = f"{header}.{payload}.{signature[::-1]}"

    with pytest.raises(ApiError) as exc:
        gate.authorize(_context(f"Bearer {forged}"))

    assert exc.value.detail["error_code"] == "AUTH_TOKEN_INVALID"


def test_inactive_principal_is_rejected(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    inactive = make_principal(is_active=False)
    gate, tokens = _gate(tmp_path, sink, inactive)

    with pytest.raises(AuthenticationFailure) as exc:
        gate.authorize(_context(f"Bearer {tokens.issue_access_token(inactive)}"))

    assert exc.value.detail["error_code"] == "AUTH_ACCOUNT_INACTIVE"
    assert sink.find("api_access") == []


def test_api_rate_limit_runs_before_token_checks(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gate, _ = _gate(tmp_path, sink, make_principal(), RateLimitPolicy(1, 3600))

    with pytest.raises(AuthenticationFailure):
        gate.authorize(_context())
    with pytest.raises(PolicyViolation) as exc:
        gate.authorize(_context())

    assert exc.value.status_code == 429
    assert exc.value.headers == {"Retry-After": "3600"}
