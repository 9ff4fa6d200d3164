"""Bearer-token authorization for protected API routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from schoolgate.api.contracts import ApiErrorResponse
from schoolgate.api.errors import (
    ApiError,
    ApiErrorCode,
    AuthenticationFailure,
    PolicyViolation,
    to_error_payload,
)
from schoolgate.audit import AuditLogger, LogChannel, LogLevel
from schoolgate.auth.models import Principal
from schoolgate.auth.repository import IdentityRepository
from schoolgate.auth.tokens import TokenCodec, is_refresh_token
from schoolgate.core.config import RateLimitPolicy, SecurityConfig
from schoolgate.core.logging import bind_request_identity
from schoolgate.core.security import InvalidTokenError
from schoolgate.security.gatekeeper import RequestContext, build_request_context
from schoolgate.security.rate_limiter import RateLimiter

API_ACTION = "api_request"
PUBLIC_API_PATHS = frozenset(
    {
        "/api/health",
        "/api/auth/login",
        "/api/auth/refresh",
        "/api/auth/password-reset",
    }
)


def _extract_bearer_token(authorization: str) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


class ApiAuthGate:
    """Rate limit, bearer decode, token-type check and principal lookup."""

    def __init__(
        self,
        tokens: TokenCodec,
        repo: IdentityRepository,
        rate_limiter: RateLimiter,
        policy: RateLimitPolicy,
        audit: AuditLogger,
    ) -> None:
        self._tokens = tokens
        self._repo = repo
        self._rate_limiter = rate_limiter
        self._policy = policy
        self._audit = audit

    def _reject(
        self, ctx: RequestContext, reason: str, error_code: ApiErrorCode, message: str
    ) -> AuthenticationFailure:
        self._audit.security_event(
            "api_auth_failed",
            {"reason": reason, "ip": ctx.client_ip, "url": ctx.path},
            level=LogLevel.NOTICE,
        )
        return AuthenticationFailure(
            status_code=401,
            error_code=error_code,
            message=message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    def authorize(self, ctx: RequestContext) -> Principal:
        """Resolve the principal of one API request or raise ``ApiError``."""
        try:
            self._rate_limiter.assert_allowed(API_ACTION, ctx.client_ip, self._policy)
        except PolicyViolation:
            self._audit.security_event(
                "rate_limit_exceeded", {"action": API_ACTION, "ip": ctx.client_ip, "url": ctx.path}
            )
            raise

        token = _extract_bearer_token(ctx.headers.get("authorization", ""))
        if not token:
            raise self._reject(
                ctx, "missing_token", ApiErrorCode.AUTH_MISSING_TOKEN, "Missing bearer token"
            )

        try:
            claims = self._tokens.decode(token)
        except InvalidTokenError as exc:
            raise self._reject(
                ctx, str(exc), ApiErrorCode.AUTH_TOKEN_INVALID, "Invalid or expired token"
            ) from exc

        if is_refresh_token(claims):
            raise self._reject(
                ctx,
                "refresh_token_as_access",
                ApiErrorCode.AUTH_TOKEN_INVALID,
                "Invalid or expired token",
            )

        user_id = str(claims.get("user_id") or claims.get("sub") or "")
        principal = self._repo.find_by_id(user_id)
        if principal is None or not principal.is_active:
            raise self._reject(
                ctx,
                "unknown_or_inactive_user",
                ApiErrorCode.AUTH_ACCOUNT_INACTIVE,
                "User not found or inactive",
            )

        self._audit.log(
            LogLevel.INFO,
            LogChannel.API,
            "api_access",
            {"user_id": principal.user_id, "endpoint": ctx.path, "method": ctx.method},
        )
        return principal


def require_api_principal(request: Request) -> Principal:
    """FastAPI dependency returning the principal attached by the gate."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationFailure(
            status_code=401,
            error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
            message="Missing bearer token",
        )
    return principal


def require_admin(request: Request) -> Principal:
    principal = require_api_principal(request)
    if principal.role != "admin":
        raise ApiError(
            status_code=403,
            error_code=ApiErrorCode.AUTH_FORBIDDEN,
            message="Administrator role required",
        )
    return principal


def create_api_auth_middleware(gate: ApiAuthGate, config: SecurityConfig) -> Callable:
    """Create middleware that authorizes protected API paths."""

    async def api_auth_middleware(request: Request, call_next: Callable):
        """Validate bearer auth for protected API paths and attach the principal."""
        path = request.url.path
        if not path.startswith("/api/") or path in PUBLIC_API_PATHS:
            return await call_next(request)

        ctx = getattr(request.state, "request_context", None)
        if ctx is None:
            ctx = await build_request_context(request, config)
        try:
            principal = gate.authorize(ctx)
        except ApiError as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=ApiErrorResponse(
                    **to_error_payload(exc.detail, exc.status_code)
                ).model_dump(exclude_none=True),
                headers=exc.headers,
            )

        request.state.principal = principal
        bind_request_identity(user_id=principal.user_id)
        return await call_next(request)

    return api_auth_middleware
