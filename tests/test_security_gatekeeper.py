from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from schoolgate.api.errors import PolicyViolation
from schoolgate.audit import AuditLogger
from schoolgate.core.config import RateLimitConfig, RateLimitPolicy
from schoolgate.security.client_ip import IpAccessList
from schoolgate.security.gatekeeper import RequestContext, RequestGatekeeper, build_request_context
from schoolgate.security.rate_limiter import RateLimiter
from starlette.requests import Request
from tests.factories import FakeClock, MemorySink, make_config


def _context(**overrides: Any) -> RequestContext:
    values: dict[str, Any] = {
        "method": "GET",
        "path": "/search",
        "url": "http://testserver/search",
        "client_ip": "8.8.8.8",
        "user_agent": "Mozilla/5.0",
        "content_length": 0,
    }
    values.update(overrides)
    return RequestContext(**values)


def _gatekeeper(
    tmp_path: Path, sink: MemorySink, access: IpAccessList | None = None, **config_overrides: Any
) -> RequestGatekeeper:
    config = make_config(tmp_path, **config_overrides)
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=FakeClock())
    return RequestGatekeeper(config, limiter, access or IpAccessList(), AuditLogger([sink]))


def test_clean_request_passes(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    gatekeeper.inspect(_context(query=(("q", "normal search text"),)))

    assert sink.entries == []


def test_general_rate_limit_is_checked_first(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    base = make_config(tmp_path).rate_limits
    gatekeeper = _gatekeeper(
        tmp_path,
        sink,
        rate_limits=replace(base, general=RateLimitPolicy(requests=1, window_seconds=60)),
    )
    gatekeeper.inspect(_context())

    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(_context(query=(("q", "' OR 1=1"),)))

    assert exc.value.status_code == 429
    assert exc.value.headers == {"Retry-After": "60"}
    assert sink.messages() == ["rate_limit_exceeded"]


def test_denied_ip_is_blocked(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink, IpAccessList(deny=["8.8.8.0/24"]))

    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(_context())

    assert exc.value.status_code == 403
    assert exc.value.detail["error_code"] == "IP_BLOCKED"
    assert sink.messages() == ["ip_blocked"]


def test_sql_injection_in_cookie_is_rejected(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(_context(cookies={"pref": "1 OR 1=1; DROP TABLE users"}))

    assert exc.value.status_code == 400
    [entry] = sink.find("sql_injection_attempt")
    assert entry.context["source"] == "cookie"
    assert entry.context["field"] == "pref"


def test_xss_in_body_is_rejected(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    with pytest.raises(PolicyViolation):
        gatekeeper.inspect(_context(method="POST", form=(("homepage", "javascript:alert(1)"),)))

    [entry] = sink.find("xss_attempt")
    assert entry.context["field"] == "homepage"


def test_credential_fields_are_not_scanned(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    gatekeeper.inspect(
        _context(
            method="POST",
            form=(
                ("password", "p@ss'; --"),
                ("csrf_token", "ab--cd"),
                ("user.refresh_token", "x--y"),
            ),
        )
    )

    assert sink.entries == []


def test_user_agent_is_observed_but_not_blocked(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    gatekeeper.inspect(_context(user_agent="sqlmap/1.7"))
    gatekeeper.inspect(_context(user_agent=""))

    assert sink.messages() == ["suspicious_user_agent", "empty_user_agent"]


def test_oversized_body_is_rejected_last(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(_context(method="POST", content_length=10 * 1024 * 1024 + 1))

    assert exc.value.status_code == 413
    assert sink.messages() == ["request_too_large"]


def _request(body: bytes, content_type: str, query: bytes = b"") -> Request:
    scope: dict[str, Any] = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/submit",
        "raw_path": b"/submit",
        "query_string": query,
        "root_path": "",
        "headers": [
            (b"content-type", content_type.encode("utf-8")),
            (b"content-length", str(len(body)).encode("utf-8")),
            (b"x-forwarded-for", b"8.8.4.4"),
            (b"cookie", b"SECURE_SESSION_ID=abc"),
        ],
        "client": ("127.0.0.1", 1234),
        "server": ("testserver", 80),
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def test_build_request_context_parses_form_body(tmp_path: Path) -> None:
    request = _request(
        b"email=bob%40school.test&password=x", "application/x-www-form-urlencoded", b"page=2"
    )

    ctx = asyncio.run(build_request_context(request, make_config(tmp_path).security))

    assert ctx.client_ip == "8.8.4.4"
    assert ctx.form == (("email", "bob@school.test"), ("password", "x"))
    assert ctx.query == (("page", "2"),)
    assert ctx.cookies == {"SECURE_SESSION_ID": "abc"}


def test_build_request_context_flattens_json_body(tmp_path: Path) -> None:
    body = json.dumps({"username": "bob", "profile": {"tags": ["a", "<b>"]}, "age": 3}).encode()
    request = _request(body, "application/json")

    ctx = asyncio.run(build_request_context(request, make_config(tmp_path).security))

    assert ctx.form == (("username", "bob"), ("profile.tags.0", "a"), ("profile.tags.1", "<b>"))


def test_every_value_of_a_repeated_query_key_is_scanned(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(_context(query=(("q", "1' OR 1=1; DROP TABLE users"), ("q", "ok"))))

    assert exc.value.detail["error_code"] == "SUSPICIOUS_INPUT"
    [entry] = sink.find("sql_injection_attempt")
    assert entry.context["source"] == "query"


def test_every_value_of_a_repeated_body_key_is_scanned(tmp_path: Path) -> None:
    sink = MemorySink(entries=[])
    gatekeeper = _gatekeeper(tmp_path, sink)

    with pytest.raises(PolicyViolation):
        gatekeeper.inspect(
            _context(
                method="POST",
                form=(("email", "a@b.test"), ("email", "javascript:alert(1)")),
            )
        )

    [entry] = sink.find("xss_attempt")
    assert entry.context["source"] == "body"
    assert entry.context["field"] == "email"


def test_build_request_context_keeps_repeated_query_and_form_keys(tmp_path: Path) -> None:
    request = _request(
        b"email=%3Cscript%3Ealert(1)%3C%2Fscript%3E&email=a%40b.test",
        "application/x-www-form-urlencoded",
        b"q=1%27+OR+1%3D1&q=ok",
    )

    ctx = asyncio.run(build_request_context(request, make_config(tmp_path).security))

    assert ctx.query == (("q", "1' OR 1=1"), ("q", "ok"))
    assert ctx.form == (("email", "<script>alert(1)</script>"), ("email", "a@b.test"))


def test_build_request_context_keeps_repeated_json_keys(tmp_path: Path) -> None:
    request = _request(b'{"name": "<b>x</b>", "name": "bob"}', "application/json")

    ctx = asyncio.run(build_request_context(request, make_config(tmp_path).security))

    assert ctx.form == (("name", "<b>x</b>"), ("name", "bob"))


def _streamed_request(chunks: list[bytes], received: list[int]) -> Request:
    scope: dict[str, Any] = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/submit",
        "raw_path": b"/submit",
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"content-type", b"application/x-www-form-urlencoded"),
            (b"transfer-encoding", b"chunked"),
        ],
        "client": ("8.8.8.8", 1234),
        "server": ("testserver", 80),
    }
    pending = list(chunks)

    async def receive() -> dict[str, Any]:
        chunk = pending.pop(0)
        received.append(len(chunk))
        return {"type": "http.request", "body": chunk, "more_body": bool(pending)}

    return Request(scope, receive)


def test_chunked_body_over_the_cap_is_rejected_without_buffering_it(tmp_path: Path) -> None:
    config = make_config(tmp_path)
    config = replace(config, security=replace(config.security, request_max_bytes=1000))
    received: list[int] = []
    request = _streamed_request([b"a" * 600] * 10, received)

    ctx = asyncio.run(build_request_context(request, config.security))

    assert ctx.content_length == 1200
    assert ctx.form == ()
    assert received == [600, 600]

    sink = MemorySink(entries=[])
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=FakeClock())
    gatekeeper = RequestGatekeeper(config, limiter, IpAccessList(), AuditLogger([sink]))
    with pytest.raises(PolicyViolation) as exc:
        gatekeeper.inspect(ctx)

    assert exc.value.status_code == 413
    assert sink.find("request_too_large")[0].context["content_length"] == 1200


def test_chunked_body_under_the_cap_is_counted_and_left_readable(tmp_path: Path) -> None:
    received: list[int] = []
    request = _streamed_request([b"name=bo", b"b&role=teacher"], received)

    ctx = asyncio.run(build_request_context(request, make_config(tmp_path).security))

    assert ctx.content_length == 21
    assert ctx.form == (("name", "bob"), ("role", "teacher"))
    assert asyncio.run(request.body()) == b"name=bob&role=teacher"
