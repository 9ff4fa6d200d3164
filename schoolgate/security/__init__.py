"""Request perimeter components."""

from schoolgate.security.client_ip import IpAccessList, resolve_client_ip
from schoolgate.security.csrf import CsrfGuard, create_csrf_middleware
from schoolgate.security.gatekeeper import (
    RequestContext,
    RequestGatekeeper,
    build_request_context,
    create_gatekeeper_middleware,
)
from schoolgate.security.rate_limiter import RateLimiter
from schoolgate.security.threats import looks_like_sql_injection, looks_like_xss

__all__ = [
    "CsrfGuard",
    "IpAccessList",
    "RateLimiter",
    "RequestContext",
    "RequestGatekeeper",
    "build_request_context",
    "create_csrf_middleware",
    "create_gatekeeper_middleware",
    "looks_like_sql_injection",
    "looks_like_xss",
    "resolve_client_ip",
]
