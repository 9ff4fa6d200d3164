"""Web session and API token authentication routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Form, Request

from schoolgate.api.contracts import (
    AccessTokenResponse,
    ApiErrorResponse,
    AuthMeResponse,
    AuthSessionResponse,
    LogoutResponse,
    PasswordResetResponse,
    SessionStatusResponse,
)
from schoolgate.auth.api_gate import require_api_principal
from schoolgate.auth.models import (
    ApiLoginRequest,
    PasswordResetRequest,
    Principal,
    RefreshRequest,
    SessionRecord,
)
from schoolgate.auth.service import AuthService
from schoolgate.security.csrf import CsrfGuard
from schoolgate.session.guard import current_principal, require_session_principal

WEB_LOGIN_PATH = "/login"

_ERROR_RESPONSES = {
    401: {"model": ApiErrorResponse},
    403: {"model": ApiErrorResponse},
    429: {"model": ApiErrorResponse},
}


def client_ip_of(request: Request) -> str:
    """Client IP resolved by the gatekeeper, falling back to the socket peer."""
    context = getattr(request.state, "request_context", None)
    if context is not None:
        return context.client_ip
    return (request.client.host if request.client else "") or "unknown"


def _record_summary(record: SessionRecord) -> dict[str, str]:
    return {
        "user_id": record.user_id,
        "name": record.name,
        "email": record.email,
        "username": record.username,
        "role": record.role,
    }


def create_auth_router(service: AuthService, csrf_guard: CsrfGuard) -> APIRouter:
    """Build authentication router with web session and API token endpoints."""
    router = APIRouter(tags=["auth"])

    @router.get("/session", response_model=SessionStatusResponse)
    def session_status(request: Request) -> SessionStatusResponse:
        """Report authentication state and hand out the current CSRF token."""
        record = current_principal(request)
        return SessionStatusResponse(
            authenticated=record is not None,
            csrf_token=csrf_guard.mint(request.state.session),
            user=_record_summary(record) if record else None,
        )

    @router.get(
        "/account",
        response_model=SessionStatusResponse,
        responses={303: {"description": "Redirect to the login page"}},
    )
    def account(
        request: Request, record: SessionRecord = Depends(require_session_principal)
    ) -> SessionStatusResponse:
        """Signed-in landing data for browser clients."""
        return SessionStatusResponse(
            authenticated=True,
            csrf_token=csrf_guard.mint(request.state.session),
            user=_record_summary(record),
        )

    @router.post(WEB_LOGIN_PATH, response_model=SessionStatusResponse, responses=_ERROR_RESPONSES)
    def web_login(
        request: Request,
        email: str = Form(min_length=1),
        password: str = Form(min_length=1),
        csrf_token: str = Form(default=""),
    ) -> SessionStatusResponse:
        """Authenticate a login form and start an authenticated web session."""
        session = request.state.session
        record = service.web_login(
            session,
            email,
            password,
            csrf_token or request.headers.get("x-csrf-token"),
            client_ip_of(request),
        )
        return SessionStatusResponse(
            authenticated=True,
            csrf_token=csrf_guard.mint(session),
            user=_record_summary(record),
        )

    @router.post("/logout", response_model=LogoutResponse)
    def web_logout(request: Request) -> LogoutResponse:
        """Destroy the web session."""
        service.web_logout(request.state.session)
        return LogoutResponse(status="ok")

    @router.post(
        "/api/auth/login",
        response_model=AuthSessionResponse,
        responses=_ERROR_RESPONSES,
    )
    def api_login(req: ApiLoginRequest, request: Request) -> AuthSessionResponse:
        """Authenticate user and return token pair."""
        session = service.api_login(req.username, req.password, client_ip_of(request))
        return AuthSessionResponse(**session.model_dump())

    @router.post(
        "/api/auth/refresh",
        response_model=AccessTokenResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def refresh(req: RefreshRequest) -> AccessTokenResponse:
        """Issue a new access token from a refresh token."""
        grant = service.refresh(req.refresh_token)
        return AccessTokenResponse(**grant.model_dump())

    @router.post("/api/auth/logout", response_model=LogoutResponse)
    def api_logout(principal: Principal = Depends(require_api_principal)) -> LogoutResponse:
        """Acknowledge logout; issued tokens remain valid until expiry."""
        service.api_logout(principal)
        return LogoutResponse(status="ok")

    @router.get(
        "/api/auth/me",
        response_model=AuthMeResponse,
        responses={401: {"model": ApiErrorResponse}},
    )
    def me(principal: Principal = Depends(require_api_principal)) -> AuthMeResponse:
        """Return the authenticated principal summary."""
        return AuthMeResponse(user=principal.summary())

    @router.post(
        "/api/auth/password-reset",
        response_model=PasswordResetResponse,
        responses={429: {"model": ApiErrorResponse}},
    )
    def password_reset(req: PasswordResetRequest, request: Request) -> PasswordResetResponse:
        """Accept a password reset request."""
        message = service.request_password_reset(req.email, client_ip_of(request))
        return PasswordResetResponse(status="accepted", message=message)

    return router
