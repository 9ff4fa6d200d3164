"""Global request perimeter: rate limit, IP lists, threat scan, UA watch and size cap."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import parse_qsl

from fastapi import Request
from fastapi.responses import JSONResponse

from schoolgate.api.contracts import ApiErrorResponse
from schoolgate.api.errors import ApiErrorCode, PolicyViolation, to_error_payload
from schoolgate.audit import AuditLogger, LogLevel
from schoolgate.core.config import AppConfig, SecurityConfig
from schoolgate.core.logging import set_request_info
from schoolgate.security.client_ip import IpAccessList, resolve_client_ip
from schoolgate.security.rate_limiter import RateLimiter
from schoolgate.security.threats import excerpt, looks_like_sql_injection, looks_like_xss

GENERAL_ACTION = "general"
BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

Pairs = tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class RequestContext:
    """Immutable snapshot of the inbound request shared by every security layer.

    ``query`` and ``form`` keep every ``(name, value)`` pair in arrival order,
    repeated names included.
    """

    method: str
    path: str
    url: str
    client_ip: str
    user_agent: str
    content_length: int
    query: Pairs = ()
    form: Pairs = ()
    cookies: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)


def first_value(pairs: Iterable[tuple[str, str]], name: str) -> Optional[str]:
    """Return the first value submitted under ``name``."""
    for key, value in pairs:
        if key == name:
            return value
    return None


class _JsonObject(list):
    """JSON object decoded as its raw key/value pairs so repeated keys survive."""


def _flatten_json(value: Any, prefix: str = "") -> list[tuple[str, str]]:
    """Flatten a JSON document into dotted keys with string leaves."""
    flat: list[tuple[str, str]] = []
    if isinstance(value, (_JsonObject, dict)):
        items = value if isinstance(value, _JsonObject) else value.items()
        for key, item in items:
            flat.extend(_flatten_json(item, f"{prefix}.{key}" if prefix else str(key)))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            flat.extend(_flatten_json(item, f"{prefix}.{index}" if prefix else str(index)))
    elif isinstance(value, str):
        flat.append((prefix or "body", value))
    return flat


def _content_length(request: Request) -> int:
    try:
        return max(0, int(request.headers.get("content-length", "0") or 0))
    except ValueError:
        return 0


async def _read_body(request: Request, max_bytes: int) -> tuple[bytes, int]:
    """Stream the body, stopping as soon as more than ``max_bytes`` arrived.

    Returns the body and the number of bytes received. An oversized body is
    returned empty; its size is then greater than ``max_bytes``.
    """
    declared = _content_length(request)
    if declared > max_bytes:
        return b"", declared
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            return b"", received
        chunks.append(chunk)
    body = b"".join(chunks)
    # downstream handlers read the cached body instead of the drained stream
    request._body = body
    return body, received


async def _parse_form(request: Request, body: bytes) -> list[tuple[str, str]]:
    """Parse the body into ``(name, value)`` pairs; binary bodies yield none."""
    if request.method not in BODY_METHODS or not body:
        return []
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        return [(key, value) for key, value in form.multi_items() if isinstance(value, str)]
    text = body.decode("utf-8", errors="replace")
    if content_type.startswith("application/x-www-form-urlencoded"):
        return parse_qsl(text, keep_blank_values=True)
    if "json" in content_type:
        try:
            return _flatten_json(json.loads(text, object_pairs_hook=_JsonObject))
        except ValueError:
            return [("body", text)]
    return []


async def build_request_context(request: Request, config: SecurityConfig) -> RequestContext:
    """Resolve client IP and collect query, body and cookie values of a request."""
    remote_addr = request.client.host if request.client else None
    headers = {key.lower(): value for key, value in request.headers.items()}
    body, received = await _read_body(request, config.request_max_bytes)
    return RequestContext(
        method=request.method,
        path=request.url.path,
        url=str(request.url),
        client_ip=resolve_client_ip(
            headers, remote_addr, trust_proxy_headers=config.trust_proxy_headers
        ),
        user_agent=headers.get("user-agent", ""),
        content_length=received,
        query=tuple(request.query_params.multi_items()),
        form=tuple(await _parse_form(request, body)),
        cookies=dict(request.cookies),
        headers=headers,
    )


class RequestGatekeeper:
    """Runs the perimeter checks in a fixed order; the first failure is fatal."""

    def __init__(
        self,
        config: AppConfig,
        rate_limiter: RateLimiter,
        access_list: IpAccessList,
        audit: AuditLogger,
    ) -> None:
        self._config = config
        self._rate_limiter = rate_limiter
        self._access_list = access_list
        self._audit = audit
        self._exempt_fields = {name.lower() for name in config.security.threat_scan_exempt_fields}

    def inspect(self, ctx: RequestContext) -> None:
        """Raise ``PolicyViolation`` when the request must not go further."""
        self._check_rate_limit(ctx)
        self._check_ip(ctx)
        self._scan(ctx, "sql_injection_attempt", looks_like_sql_injection, include_cookies=True)
        self._scan(ctx, "xss_attempt", looks_like_xss, include_cookies=False)
        self._observe_user_agent(ctx)
        self._check_size(ctx)

    def _check_rate_limit(self, ctx: RequestContext) -> None:
        try:
            self._rate_limiter.assert_allowed(
                GENERAL_ACTION, ctx.client_ip, self._config.rate_limits.general
            )
        except PolicyViolation:
            self._audit.security_event(
                "rate_limit_exceeded",
                {"action": GENERAL_ACTION, "ip": ctx.client_ip, "url": ctx.path},
            )
            raise

    def _check_ip(self, ctx: RequestContext) -> None:
        if self._access_list.is_allowed(ctx.client_ip):
            return
        self._audit.security_event(
            "ip_blocked",
            {"ip": ctx.client_ip, "url": ctx.path},
            level=LogLevel.ERROR,
        )
        raise PolicyViolation(
            status_code=403,
            error_code=ApiErrorCode.IP_BLOCKED,
            message="Access denied",
        )

    def _scanned_values(self, ctx: RequestContext, include_cookies: bool):
        sources: list[tuple[str, Iterable[tuple[str, str]]]] = [
            ("query", ctx.query),
            ("body", ctx.form),
        ]
        if include_cookies:
            sources.append(("cookie", ctx.cookies.items()))
        for source, pairs in sources:
            for name, value in pairs:
                if name.rsplit(".", 1)[-1].lower() in self._exempt_fields:
                    continue
                yield source, name, value

    def _scan(
        self,
        ctx: RequestContext,
        event: str,
        detector: Callable[[str], bool],
        *,
        include_cookies: bool,
    ) -> None:
        for source, name, value in self._scanned_values(ctx, include_cookies):
            if not detector(value):
                continue
            self._audit.security_event(
                event,
                {
                    "source": source,
                    "field": name,
                    "value": excerpt(value),
                    "ip": ctx.client_ip,
                    "url": ctx.path,
                },
                level=LogLevel.ALERT,
            )
            raise PolicyViolation(
                status_code=400,
                error_code=ApiErrorCode.SUSPICIOUS_INPUT,
                message="Request rejected",
            )

    def _observe_user_agent(self, ctx: RequestContext) -> None:
        if not ctx.user_agent:
            self._audit.security_event(
                "empty_user_agent", {"ip": ctx.client_ip, "url": ctx.path}, level=LogLevel.NOTICE
            )
            return
        lowered = ctx.user_agent.lower()
        for marker in self._config.security.suspicious_user_agents:
            if marker.lower() in lowered:
                self._audit.security_event(
                    "suspicious_user_agent",
                    {"user_agent": excerpt(ctx.user_agent, 200), "ip": ctx.client_ip},
                    level=LogLevel.NOTICE,
                )
                return

    def _check_size(self, ctx: RequestContext) -> None:
        limit = self._config.security.request_max_bytes
        if ctx.content_length <= limit:
            return
        self._audit.security_event(
            "request_too_large",
            {"content_length": ctx.content_length, "ip": ctx.client_ip, "url": ctx.path},
        )
        raise PolicyViolation(
            status_code=413,
            error_code=ApiErrorCode.REQUEST_TOO_LARGE,
            message=f"Request size exceeds configured limit ({limit} bytes).",
        )


def create_gatekeeper_middleware(gatekeeper: RequestGatekeeper, config: SecurityConfig) -> Callable:
    """Create middleware that runs the gatekeeper ahead of every other layer."""

    async def gatekeeper_middleware(request: Request, call_next: Callable):
        """Build the request context, publish it and short-circuit on violations."""
        ctx = await build_request_context(request, config)
        set_request_info(
            ip=ctx.client_ip,
            user_agent=ctx.user_agent,
            request_uri=str(request.url.path)
            + (f"?{request.url.query}" if request.url.query else ""),
            request_method=ctx.method,
        )
        request.state.request_context = ctx
        try:
            gatekeeper.inspect(ctx)
        except PolicyViolation as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=ApiErrorResponse(
                    **to_error_payload(exc.detail, exc.status_code)
                ).model_dump(exclude_none=True),
                headers=exc.headers,
            )
        return await call_next(request)

    return gatekeeper_middleware
