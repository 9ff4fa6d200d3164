"""Pydantic models for the authentication domain."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Principal(BaseModel):
    """Persisted identity as exposed by the identity store."""

    user_id: str
    name: str
    email: str
    username: str
    password_hash: str
    role: str = "user"
    is_active: bool = True

    def summary(self) -> dict[str, str]:
        """Non-sensitive fields safe to return to clients."""
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "username": self.username,
            "role": self.role,
        }


class SessionRecord(BaseModel):
    """Authenticated state stored in the web session."""

    user_id: str
    name: str
    email: str
    username: str
    role: str
    login_time: float
    ip: str
    last_activity: float
    last_rotation: float


class ApiLoginRequest(BaseModel):
    """API login payload; ``username`` accepts a username or an email."""

    username: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    """Refresh request payload."""

    refresh_token: str = Field(min_length=1)


class PasswordResetRequest(BaseModel):
    """Password reset request payload."""

    email: str = Field(min_length=3)


class AuthSession(BaseModel):
    """Token pair issued by API login."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: dict[str, str]


class AccessTokenGrant(BaseModel):
    """Access token issued from a refresh token."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
