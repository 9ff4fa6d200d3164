from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from schoolgate.api.contracts import HealthResponse
from schoolgate.api.http_setup import register_exception_handlers, register_http_middleware
from schoolgate.audit import create_audit_logger
from schoolgate.audit.analyzer import LogAnalyzer
from schoolgate.audit.router import create_log_router
from schoolgate.auth.api_gate import ApiAuthGate, create_api_auth_middleware
from schoolgate.auth.login_guard import LoginAttemptGuard
from schoolgate.auth.repository import IdentityRepository
from schoolgate.auth.router import WEB_LOGIN_PATH, create_auth_router
from schoolgate.auth.service import AuthService
from schoolgate.auth.tokens import TokenCodec
from schoolgate.core.config import AppConfig
from schoolgate.core.logging import setup_logging
from schoolgate.security.client_ip import IpAccessList
from schoolgate.security.csrf import CsrfGuard, create_csrf_middleware
from schoolgate.security.gatekeeper import RequestGatekeeper, create_gatekeeper_middleware
from schoolgate.security.rate_limiter import RateLimiter
from schoolgate.session.guard import SessionGuard, create_session_middleware
from schoolgate.session.store import SessionStore

load_dotenv()
APP_CONFIG = AppConfig.from_env()
setup_logging(APP_CONFIG.logging.level)
LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent


def create_app(config: AppConfig | None = None, app_root: Path | None = None) -> FastAPI:
    config = config or APP_CONFIG
    app_root = app_root or APP_ROOT
    state_db_path = (app_root / config.state_db_path).resolve()
    state_db_path.parent.mkdir(parents=True, exist_ok=True)

    audit = create_audit_logger(config, app_root)
    rate_limiter = RateLimiter(database_path=state_db_path)
    login_guard = LoginAttemptGuard(
        database_path=state_db_path,
        max_attempts=config.auth.max_login_attempts,
        lockout_seconds=config.auth.lockout_seconds,
    )
    session_store = SessionStore(database_path=state_db_path)
    session_guard = SessionGuard(config.session, audit)
    csrf_guard = CsrfGuard(ttl_seconds=config.csrf.token_ttl_seconds)
    identity_repo = IdentityRepository(app_root)
    tokens = TokenCodec(config.auth)
    log_analyzer = LogAnalyzer(state_db_path)

    auth_service = AuthService(
        identity_repo,
        tokens,
        login_guard,
        rate_limiter,
        session_guard,
        csrf_guard,
        config,
        audit,
    )
    auth_service.bootstrap_admin_user()
    gatekeeper = RequestGatekeeper(
        config,
        rate_limiter,
        IpAccessList(config.security.ip_allowlist, config.security.ip_denylist),
        audit,
    )
    api_gate = ApiAuthGate(tokens, identity_repo, rate_limiter, config.rate_limits.api, audit)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        purged = session_store.purge_idle(config.session.timeout_seconds)
        LOGGER.info("idle_sessions_purged", extra={"context": {"purged": purged}})
        try:
            yield
        finally:
            for resource in (rate_limiter, login_guard, session_store, log_analyzer, audit):
                resource.close()

    app = FastAPI(title="Schoolgate API", version="1.0.0", lifespan=lifespan)

    # Registered innermost first: the last middleware added runs first.
    app.middleware("http")(create_api_auth_middleware(api_gate, config.security))
    app.middleware("http")(
        create_csrf_middleware(
            csrf_guard,
            config.csrf,
            audit,
            handler_verified_paths=frozenset({WEB_LOGIN_PATH}),
        )
    )
    app.middleware("http")(create_session_middleware(session_store, session_guard, config.session))
    app.middleware("http")(create_gatekeeper_middleware(gatekeeper, config.security))
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER, audit=audit)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-CSRF-Token"],
    )

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    app.include_router(create_auth_router(auth_service, csrf_guard))
    app.include_router(create_log_router(log_analyzer, audit))

    return app


app = create_app()
