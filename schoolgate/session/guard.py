"""Session integrity checks: timeout, IP pinning, fixation defense and id rotation."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Callable

from fastapi import Request
from pydantic import ValidationError

from schoolgate.api.errors import ApiErrorCode, AuthenticationFailure
from schoolgate.audit import AuditLogger, LogLevel
from schoolgate.auth.models import Principal, SessionRecord
from schoolgate.core.config import SessionConfig
from schoolgate.core.logging import bind_request_identity
from schoolgate.session.store import SessionHandle, SessionStore

SESSION_USER_KEY = "user"
LOGIN_PATH = "/login"


class SessionState(StrEnum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    HIJACK_SUSPECTED = "hijack_suspected"


class SessionGuard:
    """State machine over the ``SessionRecord`` held in a web session."""

    def __init__(
        self,
        config: SessionConfig,
        audit: AuditLogger,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._audit = audit
        self._clock = clock

    def establish(self, session: SessionHandle, principal: Principal, client_ip: str) -> SessionRecord:
        """Bind an authenticated principal to the session under a fresh identifier."""
        now = self._clock()
        session.regenerate()
        record = SessionRecord(
            user_id=principal.user_id,
            name=principal.name,
            email=principal.email,
            username=principal.username,
            role=principal.role,
            login_time=now,
            ip=client_ip,
            last_activity=now,
            last_rotation=now,
        )
        session.set(SESSION_USER_KEY, record.model_dump())
        return record

    @staticmethod
    def record_of(session: SessionHandle) -> SessionRecord | None:
        raw = session.get(SESSION_USER_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return SessionRecord.model_validate(raw)
        except ValidationError:
            return None

    def validate(self, session: SessionHandle, client_ip: str) -> SessionState:
        """Check the session for this request and apply the resulting transition."""
        record = self.record_of(session)
        if record is None:
            if session.get(SESSION_USER_KEY) is not None:
                session.destroy()
            return SessionState.ANONYMOUS

        now = self._clock()
        elapsed = now - record.login_time
        if elapsed > self._config.timeout_seconds:
            self._audit.security_event(
                "session_timeout",
                {"user_id": record.user_id, "elapsed": int(elapsed)},
                level=LogLevel.INFO,
            )
            session.destroy()
            return SessionState.EXPIRED

        if self._config.check_ip and record.ip != client_ip:
            self._audit.security_event(
                "session_hijack_attempt",
                {
                    "user_id": record.user_id,
                    "session_ip": record.ip,
                    "current_ip": client_ip,
                },
                level=LogLevel.ALERT,
            )
            session.destroy()
            return SessionState.HIJACK_SUSPECTED

        updates = {"last_activity": now}
        if now - record.last_rotation > self._config.rotation_interval_seconds:
            session.regenerate()
            updates["last_rotation"] = now
        session.set(SESSION_USER_KEY, record.model_copy(update=updates).model_dump())
        return SessionState.AUTHENTICATED

    def logout(self, session: SessionHandle) -> None:
        record = self.record_of(session)
        if record is not None:
            self._audit.security_event(
                "logout", {"user_id": record.user_id}, level=LogLevel.INFO
            )
        session.destroy()


def current_principal(request: Request) -> SessionRecord | None:
    """Authenticated session record of this request, if any."""
    if getattr(request.state, "session_state", None) != SessionState.AUTHENTICATED:
        return None
    return SessionGuard.record_of(request.state.session)


def require_session_principal(request: Request) -> SessionRecord:
    """FastAPI dependency redirecting unauthenticated browsers to the login page."""
    record = current_principal(request)
    if record is not None:
        return record
    state = getattr(request.state, "session_state", SessionState.ANONYMOUS)
    expired = state in {SessionState.EXPIRED, SessionState.HIJACK_SUSPECTED}
    raise AuthenticationFailure(
        status_code=303,
        error_code=ApiErrorCode.SESSION_EXPIRED if expired else ApiErrorCode.SESSION_INVALID,
        message="Session expired, please sign in again" if expired else "Authentication required",
        headers={"Location": LOGIN_PATH},
    )


def create_session_middleware(
    store: SessionStore, guard: SessionGuard, config: SessionConfig
) -> Callable:
    """Create middleware loading, validating and persisting the web session."""

    async def session_middleware(request: Request, call_next: Callable):
        """Attach ``request.state.session`` and ``session_state`` for downstream handlers."""
        cookie_id = request.cookies.get(config.cookie_name)
        session = store.load(cookie_id)
        context = getattr(request.state, "request_context", None)
        client_ip = context.client_ip if context is not None else (
            request.client.host if request.client else "unknown"
        )
        state = guard.validate(session, client_ip)
        request.state.session = session
        request.state.session_state = state
        record = SessionGuard.record_of(session) if state == SessionState.AUTHENTICATED else None
        bind_request_identity(
            user_id=record.user_id if record else None,
            session_id=session.session_id,
        )

        response = await call_next(request)

        store.persist(session)
        if session.session_id:
            if session.session_id != cookie_id:
                response.set_cookie(
                    config.cookie_name,
                    session.session_id,
                    max_age=config.timeout_seconds,
                    httponly=True,
                    secure=config.cookie_secure,
                    samesite="strict",
                )
        elif cookie_id:
            response.delete_cookie(config.cookie_name)
        return response

    return session_middleware
