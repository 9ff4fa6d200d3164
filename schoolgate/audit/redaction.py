"""Redaction of sensitive keys before audit entries leave the process."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

REDACTED = "[REDACTED]"

DEFAULT_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "senha",
        "token",
        "secret",
        "key",
        "access_token",
        "refresh_token",
        "csrf_token",
        "authorization",
        "google_access_token",
        "google_refresh_token",
    }
)


class Redactor:
    """Replace values of sensitive keys, recursing into nested maps and lists."""

    def __init__(self, sensitive_keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS) -> None:
        self._keys = frozenset(key.lower() for key in sensitive_keys)

    def is_sensitive(self, key: Any) -> bool:
        return isinstance(key, str) and key.lower() in self._keys

    def apply(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                k: REDACTED if self.is_sensitive(k) else self.apply(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self.apply(item) for item in value]
        return value


_DEFAULT = Redactor()


def redact(value: Any) -> Any:
    """Apply default redaction to a context value."""
    return _DEFAULT.apply(value)
