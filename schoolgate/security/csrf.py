"""Per-session CSRF token minting and verification."""

from __future__ import annotations

import hmac
import time
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from schoolgate.api.contracts import ApiErrorResponse
from schoolgate.api.errors import ApiErrorCode
from schoolgate.audit import AuditLogger
from schoolgate.core.config import CsrfConfig
from schoolgate.core.security import generate_secure_token
from schoolgate.security.gatekeeper import first_value
from schoolgate.session.store import SessionHandle

TOKEN_KEY = "csrf_token"
TOKEN_TIME_KEY = "csrf_token_time"
FORM_FIELD = "csrf_token"
HEADER_NAME = "x-csrf-token"


class CsrfGuard:
    """One active token per session, rotated once older than the TTL."""

    def __init__(self, *, ttl_seconds: int, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock

    def _is_stale(self, session: SessionHandle) -> bool:
        minted_at = float(session.get(TOKEN_TIME_KEY) or 0)
        return self._clock() - minted_at > self._ttl

    def mint(self, session: SessionHandle) -> str:
        """Return the current token, minting a fresh one when absent or stale."""
        token = session.get(TOKEN_KEY)
        if not token or self._is_stale(session):
            token = generate_secure_token(32)
            session.set(TOKEN_KEY, token)
            session.set(TOKEN_TIME_KEY, self._clock())
        return str(token)

    def verify(self, session: SessionHandle, candidate: str | None) -> bool:
        stored = session.get(TOKEN_KEY)
        if not stored or not candidate:
            return False
        if self._is_stale(session):
            return False
        return hmac.compare_digest(str(stored).encode("utf-8"), candidate.encode("utf-8"))


def create_csrf_middleware(
    guard: CsrfGuard,
    config: CsrfConfig,
    audit: AuditLogger,
    *,
    handler_verified_paths: frozenset[str] = frozenset(),
) -> Callable:
    """Create middleware rejecting POST requests without a valid CSRF token.

    Paths in ``handler_verified_paths`` verify the token inside their handler
    so it can run after other guards.
    """

    async def csrf_middleware(request: Request, call_next: Callable):
        """Verify the CSRF token of state-changing requests."""
        if request.method != "POST":
            return await call_next(request)
        path = request.url.path
        if path in handler_verified_paths or any(
            path.startswith(prefix) for prefix in config.exempt_prefixes
        ):
            return await call_next(request)

        session: SessionHandle = request.state.session
        context = getattr(request.state, "request_context", None)
        candidate = request.headers.get(HEADER_NAME) or (
            first_value(context.form, FORM_FIELD) if context is not None else None
        )
        if not guard.verify(session, candidate):
            audit.security_event(
                "csrf_token_invalid",
                {"url": str(request.url.path), "has_token": bool(candidate)},
            )
            return JSONResponse(
                status_code=403,
                content=ApiErrorResponse(
                    error_code=ApiErrorCode.CSRF_INVALID,
                    message="Invalid CSRF token",
                ).model_dump(exclude_none=True),
            )
        return await call_next(request)

    return csrf_middleware
