"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from schoolgate.api.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

INSECURE_DEFAULT_SECRET = "default-secret-key-change-in-production"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class AuthConfig:
    """Token signing and bootstrap identity settings."""

    secret_key: str
    access_token_ttl_seconds: int
    refresh_token_ttl_seconds: int
    issuer: str
    admin_email: str
    admin_username: str
    admin_password: str
    max_login_attempts: int = 5
    lockout_seconds: int = 900


@dataclass(frozen=True)
class SessionConfig:
    """Server-side web session settings."""

    cookie_name: str
    cookie_secure: bool
    timeout_seconds: int
    rotation_interval_seconds: int
    check_ip: bool = True


@dataclass(frozen=True)
class CsrfConfig:
    """CSRF token lifetime and exempt path prefixes."""

    token_ttl_seconds: int
    exempt_prefixes: tuple[str, ...]


@dataclass(frozen=True)
class RateLimitPolicy:
    """Ceiling of ``requests`` per ``window_seconds`` for one action."""

    requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-action fixed-window policies."""

    general: RateLimitPolicy
    login: RateLimitPolicy
    api: RateLimitPolicy
    password_reset: RateLimitPolicy


@dataclass(frozen=True)
class SecurityConfig:
    """Request perimeter settings."""

    request_max_bytes: int
    ip_allowlist: list[str]
    ip_denylist: list[str]
    trust_proxy_headers: bool
    threat_scan_exempt_fields: frozenset[str]
    suspicious_user_agents: tuple[str, ...]
    cors_allowed_origins: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LoggingConfig:
    """Structured stdout logging and audit log sink settings."""

    level: str
    enabled: bool
    log_dir: str
    max_file_size: int
    max_files: int
    to_database: bool
    webhook_url: str
    webhook_timeout_seconds: float
    webhook_max_pending: int = 100


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    env: str
    debug: bool
    app_url: str
    state_db_path: str
    auth: AuthConfig
    session: SessionConfig
    csrf: CsrfConfig
    rate_limits: RateLimitConfig
    security: SecurityConfig
    logging: LoggingConfig

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def debug_logging(self) -> bool:
        """Return whether debug-level audit entries are persisted."""
        return self.debug or self.env == "development"

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        env = os.getenv("APP_ENV", "development").strip().lower() or "development"
        debug = _env_bool("APP_DEBUG", "false")
        app_url = os.getenv("APP_URL", "http://localhost").strip() or "http://localhost"

        secret_key = os.getenv("JWT_SECRET", "").strip()
        if not secret_key or secret_key == INSECURE_DEFAULT_SECRET:
            if env == "production":
                raise ConfigurationError(
                    "JWT_SECRET must be set to a non-default value in production."
                )
            LOGGER.warning("JWT_SECRET not set; using insecure development secret")
            secret_key = "dev-insecure-secret-change-me"

        return AppConfig(
            env=env,
            debug=debug,
            app_url=app_url,
            state_db_path=(
                os.getenv("STATE_DB_PATH", "runtime/state.db").strip()
                or "runtime/state.db"
            ),
            auth=AuthConfig(
                secret_key=secret_key,
                access_token_ttl_seconds=int(os.getenv("JWT_ACCESS_TTL_SECONDS", "3600")),
                refresh_token_ttl_seconds=int(
                    os.getenv("JWT_REFRESH_TTL_SECONDS", "604800")
                ),
                issuer=app_url,
                admin_email=os.getenv("ADMIN_EMAIL", "admin@localhost").strip().lower(),
                admin_username=os.getenv("ADMIN_USERNAME", "admin").strip(),
                admin_password=os.getenv("ADMIN_PASSWORD", "").strip(),
                max_login_attempts=int(os.getenv("LOGIN_MAX_ATTEMPTS", "5")),
                lockout_seconds=int(os.getenv("LOGIN_LOCKOUT_SECONDS", "900")),
            ),
            session=SessionConfig(
                cookie_name=os.getenv("SESSION_COOKIE_NAME", "SECURE_SESSION_ID"),
                cookie_secure=env == "production",
                timeout_seconds=int(os.getenv("SESSION_TIMEOUT_SECONDS", "3600")),
                rotation_interval_seconds=int(
                    os.getenv("SESSION_ROTATION_SECONDS", "1800")
                ),
                check_ip=_env_bool("SESSION_CHECK_IP", "true"),
            ),
            csrf=CsrfConfig(
                token_ttl_seconds=int(os.getenv("CSRF_TOKEN_TTL_SECONDS", "3600")),
                exempt_prefixes=tuple(_env_list("CSRF_EXEMPT_PREFIXES", "/api/,/install")),
            ),
            rate_limits=RateLimitConfig(
                general=RateLimitPolicy(
                    int(os.getenv("RATE_LIMIT_GENERAL_REQUESTS", "100")),
                    int(os.getenv("RATE_LIMIT_GENERAL_WINDOW", "3600")),
                ),
                login=RateLimitPolicy(
                    int(os.getenv("RATE_LIMIT_LOGIN_REQUESTS", "5")),
                    int(os.getenv("RATE_LIMIT_LOGIN_WINDOW", "900")),
                ),
                api=RateLimitPolicy(
                    int(os.getenv("RATE_LIMIT_API_REQUESTS", "1000")),
                    int(os.getenv("RATE_LIMIT_API_WINDOW", "3600")),
                ),
                password_reset=RateLimitPolicy(
                    int(os.getenv("RATE_LIMIT_PASSWORD_RESET_REQUESTS", "3")),
                    int(os.getenv("RATE_LIMIT_PASSWORD_RESET_WINDOW", "3600")),
                ),
            ),
            security=SecurityConfig(
                request_max_bytes=int(os.getenv("REQUEST_MAX_BYTES", str(10 * 1024 * 1024))),
                ip_allowlist=_env_list("IP_WHITELIST"),
                ip_denylist=_env_list("IP_BLACKLIST"),
                trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS", "true"),
                threat_scan_exempt_fields=frozenset(
                    _env_list(
                        "THREAT_SCAN_EXEMPT_FIELDS",
                        "password,senha,refresh_token,access_token,csrf_token,token",
                    )
                ),
                suspicious_user_agents=tuple(
                    _env_list(
                        "SUSPICIOUS_USER_AGENTS",
                        "sqlmap,nikto,nessus,openvas,nmap,masscan,zap,burp,"
                        "wget,curl,python-requests,bot,crawler,spider",
                    )
                ),
                cors_allowed_origins=_env_list("CORS_ALLOWED_ORIGINS"),
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO",
                enabled=_env_bool("LOG_ENABLED", "true"),
                log_dir=os.getenv("LOG_DIR", "storage/logs").strip() or "storage/logs",
                max_file_size=int(os.getenv("LOG_MAX_FILE_SIZE", str(10 * 1024 * 1024))),
                max_files=int(os.getenv("LOG_MAX_FILES", "30")),
                to_database=_env_bool("LOG_TO_DATABASE", "false"),
                webhook_url=(
                    os.getenv("LOG_WEBHOOK_URL", "").strip()
                    if _env_bool("LOG_TO_EXTERNAL", "false")
                    else ""
                ),
                webhook_timeout_seconds=float(os.getenv("LOG_WEBHOOK_TIMEOUT", "2")),
                webhook_max_pending=int(os.getenv("LOG_WEBHOOK_MAX_PENDING", "100")),
            ),
        )
