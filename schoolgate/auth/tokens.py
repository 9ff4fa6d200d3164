"""Access and refresh token issuance over the HS256 signed-token codec."""

from __future__ import annotations

import time
from typing import Any, Callable

from schoolgate.auth.models import Principal
from schoolgate.core.config import AuthConfig
from schoolgate.core.security import build_signed_token, decode_signed_token

REFRESH_TOKEN_TYPE = "refresh"
ACCESS_TOKEN_TYPE = "access"


class TokenCodec:
    """Stateless tokens: validity depends only on signature and expiry.

    There is no revocation list, so logout cannot invalidate a token that was
    already issued; access tokens are kept short-lived for that reason.
    """

    def __init__(self, config: AuthConfig, *, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock

    def encode(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        """Sign ``claims`` merged with ``iat``, ``exp`` and ``iss``."""
        now = int(self._clock())
        payload = {
            **claims,
            "iat": now,
            "exp": now + int(ttl_seconds),
            "iss": self._config.issuer,
        }
        return build_signed_token(payload, self._config.secret_key)

    def decode(self, token: str) -> dict[str, Any]:
        """Return verified claims or raise ``InvalidTokenError``."""
        return decode_signed_token(token, self._config.secret_key, now=self._clock())

    def issue_access_token(self, principal: Principal) -> str:
        return self.encode(
            {
                "sub": principal.user_id,
                "user_id": principal.user_id,
                "username": principal.username,
                "email": principal.email,
                "role": principal.role,
                "type": ACCESS_TOKEN_TYPE,
            },
            self._config.access_token_ttl_seconds,
        )

    def issue_refresh_token(self, user_id: str) -> str:
        return self.encode(
            {"sub": user_id, "user_id": user_id, "type": REFRESH_TOKEN_TYPE},
            self._config.refresh_token_ttl_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._config.access_token_ttl_seconds


def is_refresh_token(claims: dict[str, Any]) -> bool:
    return str(claims.get("type") or "") == REFRESH_TOKEN_TYPE
