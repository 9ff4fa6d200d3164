"""Server-side web sessions and their integrity guard."""

from schoolgate.session.guard import (
    SessionGuard,
    SessionState,
    create_session_middleware,
    current_principal,
    require_session_principal,
)
from schoolgate.session.store import SessionHandle, SessionStore

__all__ = [
    "SessionGuard",
    "SessionHandle",
    "SessionState",
    "SessionStore",
    "create_session_middleware",
    "current_principal",
    "require_session_principal",
]
