"""Authentication service for web login, API tokens and password reset requests."""

from __future__ import annotations

import uuid

from schoolgate.api.errors import (
    ApiErrorCode,
    AuthenticationFailure,
    PolicyViolation,
)
from schoolgate.audit import AuditLogger, LogChannel, LogLevel
from schoolgate.auth.login_guard import LoginAttemptGuard, login_identifier
from schoolgate.auth.models import AccessTokenGrant, AuthSession, Principal, SessionRecord
from schoolgate.auth.repository import IdentityRepository
from schoolgate.auth.tokens import TokenCodec, is_refresh_token
from schoolgate.core.config import AppConfig
from schoolgate.core.security import (
    InvalidTokenError,
    generate_secure_token,
    hash_password,
    verify_password,
)
from schoolgate.security.csrf import CsrfGuard
from schoolgate.security.rate_limiter import RateLimiter
from schoolgate.session.guard import SessionGuard
from schoolgate.session.store import SessionHandle

LOGIN_ACTION = "login"
PASSWORD_RESET_ACTION = "password_reset"
LOCKOUT_MESSAGE = "Too many login attempts. Please try again later."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
PASSWORD_RESET_MESSAGE = (
    "If the account exists, password reset instructions have been sent."
)


class AuthService:
    """Login flows sharing one guard order and one lockout key."""

    def __init__(
        self,
        repo: IdentityRepository,
        tokens: TokenCodec,
        login_guard: LoginAttemptGuard,
        rate_limiter: RateLimiter,
        session_guard: SessionGuard,
        csrf_guard: CsrfGuard,
        config: AppConfig,
        audit: AuditLogger,
    ) -> None:
        """Initialize service dependencies."""
        self._repo = repo
        self._tokens = tokens
        self._login_guard = login_guard
        self._rate_limiter = rate_limiter
        self._session_guard = session_guard
        self._csrf_guard = csrf_guard
        self._config = config
        self._audit = audit
        # Unknown logins still pay for one PBKDF2 comparison.
        self._dummy_hash = hash_password(generate_secure_token(8))

    def bootstrap_admin_user(self) -> None:
        """Ensure bootstrap admin user exists from environment values."""
        auth = self._config.auth
        if not auth.admin_password:
            return
        if self._repo.find_by_email(auth.admin_email) is not None:
            return
        self._repo.upsert_user(
            Principal(
                user_id=uuid.uuid4().hex,
                name="Administrator",
                email=auth.admin_email,
                username=auth.admin_username,
                password_hash=hash_password(auth.admin_password),
                role="admin",
                is_active=True,
            )
        )
        self._audit.audit_action("create", "users", new_data={"username": auth.admin_username})

    def _blocked(self, login: str, client_ip: str, reason: str, retry_after: int) -> PolicyViolation:
        self._audit.security_event(
            "login_blocked_attempts",
            {"login": login, "ip": client_ip, "reason": reason},
        )
        return PolicyViolation(
            status_code=429,
            error_code=ApiErrorCode.AUTH_LOCKED_OUT,
            message=LOCKOUT_MESSAGE,
            headers={"Retry-After": str(max(1, int(retry_after)))},
        )

    def _check_login_rate(self, login: str, client_ip: str) -> None:
        policy = self._config.rate_limits.login
        if self._rate_limiter.allow(
            LOGIN_ACTION, client_ip, policy.requests, policy.window_seconds
        ):
            return
        retry_after = self._rate_limiter.retry_after(
            LOGIN_ACTION, client_ip, policy.window_seconds
        )
        raise self._blocked(login, client_ip, "rate_limit", retry_after)

    def _check_lockout(self, identifier: str, login: str, client_ip: str) -> None:
        if self._login_guard.may_attempt(identifier):
            return
        raise self._blocked(login, client_ip, "lockout", self._login_guard.lockout_seconds)

    def _authenticate(self, login: str, password: str, client_ip: str) -> Principal:
        """Compare credentials and account status, updating the failure counter."""
        identifier = login_identifier(login, client_ip)
        principal = self._repo.find_by_login(login)
        stored_hash = principal.password_hash if principal is not None else self._dummy_hash
        password_ok = verify_password(password, stored_hash)
        if principal is None or not password_ok:
            self._login_guard.record(identifier, False)
            self._audit.security_event(
                "login_failed", {"login": login, "ip": client_ip}, level=LogLevel.NOTICE
            )
            raise AuthenticationFailure(
                status_code=401,
                error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
                message=INVALID_CREDENTIALS_MESSAGE,
            )
        if not principal.is_active:
            self._login_guard.record(identifier, False)
            self._audit.security_event(
                "login_inactive_account",
                {"user_id": principal.user_id, "ip": client_ip},
                level=LogLevel.NOTICE,
            )
            raise AuthenticationFailure(
                status_code=403,
                error_code=ApiErrorCode.AUTH_ACCOUNT_INACTIVE,
                message="Account is inactive",
            )
        self._login_guard.record(identifier, True)
        return principal

    def web_login(
        self,
        session: SessionHandle,
        login: str,
        password: str,
        csrf_candidate: str | None,
        client_ip: str,
    ) -> SessionRecord:
        """Authenticate a form login and bind the principal to the web session.

        Guard order: login rate limit, CSRF, lockout, credentials, account
        status. Rate-limit and lockout denials share one generic message.
        """
        login = login.strip()
        self._check_login_rate(login, client_ip)
        if not self._csrf_guard.verify(session, csrf_candidate):
            self._audit.security_event(
                "csrf_token_invalid", {"url": "/login", "has_token": bool(csrf_candidate)}
            )
            raise PolicyViolation(
                status_code=403,
                error_code=ApiErrorCode.CSRF_INVALID,
                message="Invalid CSRF token",
            )
        self._check_lockout(login_identifier(login, client_ip), login, client_ip)
        principal = self._authenticate(login, password, client_ip)

        record = self._session_guard.establish(session, principal, client_ip)
        self._audit.log(
            LogLevel.INFO,
            LogChannel.AUTH,
            "login_success",
            {"user_id": principal.user_id, "ip": client_ip, "via": "web"},
        )
        return record

    def api_login(self, login: str, password: str, client_ip: str) -> AuthSession:
        """Authenticate JSON credentials and issue an access/refresh token pair."""
        login = login.strip()
        self._check_login_rate(login, client_ip)
        self._check_lockout(login_identifier(login, client_ip), login, client_ip)
        principal = self._authenticate(login, password, client_ip)

        self._audit.log(
            LogLevel.INFO,
            LogChannel.AUTH,
            "login_success",
            {"user_id": principal.user_id, "ip": client_ip, "via": "api"},
        )
        return AuthSession(
            access_token=self._tokens.issue_access_token(principal),
            refresh_token=self._tokens.issue_refresh_token(principal.user_id),
            token_type="Bearer",
            expires_in=self._tokens.access_ttl_seconds,
            user=principal.summary(),
        )

    def refresh(self, refresh_token: str) -> AccessTokenGrant:
        """Issue a new access token; the refresh token itself is not rotated."""
        try:
            claims = self._tokens.decode(refresh_token)
        except InvalidTokenError as exc:
            self._audit.security_event(
                "refresh_token_invalid", {"reason": str(exc)}, level=LogLevel.NOTICE
            )
            raise AuthenticationFailure(
                status_code=401,
                error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
                message="Invalid refresh token",
            ) from exc
        if not is_refresh_token(claims):
            self._audit.security_event(
                "refresh_token_invalid", {"reason": "wrong token type"}, level=LogLevel.NOTICE
            )
            raise AuthenticationFailure(
                status_code=401,
                error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
                message="Invalid refresh token",
            )

        principal = self._repo.find_by_id(str(claims.get("user_id") or claims.get("sub") or ""))
        if principal is None or not principal.is_active:
            raise AuthenticationFailure(
                status_code=401,
                error_code=ApiErrorCode.AUTH_ACCOUNT_INACTIVE,
                message="User not found or inactive",
            )
        self._audit.log(
            LogLevel.INFO, LogChannel.AUTH, "token_refreshed", {"user_id": principal.user_id}
        )
        return AccessTokenGrant(
            access_token=self._tokens.issue_access_token(principal),
            token_type="Bearer",
            expires_in=self._tokens.access_ttl_seconds,
        )

    def web_logout(self, session: SessionHandle) -> None:
        self._session_guard.logout(session)

    def api_logout(self, principal: Principal) -> None:
        """Record the logout; issued tokens stay valid until they expire."""
        self._audit.log(
            LogLevel.INFO, LogChannel.AUTH, "api_logout", {"user_id": principal.user_id}
        )

    def request_password_reset(self, email: str, client_ip: str) -> str:
        """Accept a reset request with a response that does not reveal the account."""
        try:
            self._rate_limiter.assert_allowed(
                PASSWORD_RESET_ACTION,
                client_ip,
                self._config.rate_limits.password_reset,
                message="Too many password reset requests. Please try again later.",
            )
        except PolicyViolation:
            self._audit.security_event(
                "rate_limit_exceeded", {"action": PASSWORD_RESET_ACTION, "ip": client_ip}
            )
            raise
        principal = self._repo.find_by_email(email)
        self._audit.security_event(
            "password_reset_requested",
            {
                "email": email.strip().lower(),
                "ip": client_ip,
                "known_account": principal is not None and principal.is_active,
            },
            level=LogLevel.INFO,
        )
        return PASSWORD_RESET_MESSAGE
