"""Security primitives for password hashing, random tokens and token signing."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import time
from typing import Any


class InvalidTokenError(ValueError):
    """Signed token is malformed, tampered with or expired."""


def _b64url_encode(raw: bytes) -> str:
    """Return URL-safe base64 string without padding."""
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    """Decode URL-safe base64 string with optional missing padding."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def hash_password(password: str) -> str:
    """Hash password using PBKDF2-HMAC-SHA256 with random salt."""
    salt = os.urandom(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 120_000)
    return f"pbkdf2_sha256$120000${_b64url_encode(salt)}${_b64url_encode(derived)}"


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify password against a stored PBKDF2 hash."""
    try:
        algo, rounds_raw, salt_b64, digest_b64 = stored_hash.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        rounds = int(rounds_raw)
        salt = _b64url_decode(salt_b64)
        expected = _b64url_decode(digest_b64)
    except (ValueError, binascii.Error):
        return False

    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(derived, expected)


def generate_secure_token(length: int = 32) -> str:
    """Return ``length`` random bytes as hex."""
    return secrets.token_hex(length)


def hash_identifier(*parts: str) -> str:
    """Stable SHA-256 key for counters keyed by action and client identity."""
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def _sign(signing_input: bytes, secret_key: str) -> bytes:
    return hmac.new(secret_key.encode("utf-8"), signing_input, hashlib.sha256).digest()


def build_signed_token(payload: dict[str, Any], secret_key: str) -> str:
    """Create compact signed token using JWT-like 3-part structure."""
    header = {"typ": "JWT", "alg": "HS256"}
    header_part = _b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_part = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_part}.{payload_part}".encode("utf-8")
    signature_part = _b64url_encode(_sign(signing_input, secret_key))
    return f"{header_part}.{payload_part}.{signature_part}"


def decode_signed_token(
    token: str, secret_key: str, *, now: float | None = None
) -> dict[str, Any]:
    """Decode and verify compact signed token, raising ``InvalidTokenError`` on failure."""
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise InvalidTokenError("Malformed token")
    header_part, payload_part, signature_part = parts

    # Compare encoded forms so non-canonical base64 in the signature is rejected.
    signing_input = f"{header_part}.{payload_part}".encode("utf-8")
    expected_sig = _b64url_encode(_sign(signing_input, secret_key))
    if not hmac.compare_digest(expected_sig.encode("utf-8"), signature_part.encode("utf-8")):
        raise InvalidTokenError("Invalid token signature")

    try:
        payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise InvalidTokenError("Invalid token payload") from exc
    if not isinstance(payload, dict):
        raise InvalidTokenError("Invalid token payload")

    current = int(time.time() if now is None else now)
    try:
        exp = int(payload.get("exp") or 0)
    except (TypeError, ValueError) as exc:
        raise InvalidTokenError("Invalid token expiry") from exc
    if exp and exp < current:
        raise InvalidTokenError("Token expired")

    return payload
