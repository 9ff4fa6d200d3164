"""Identity store with MongoDB primary and JSON file fallback."""

from __future__ import annotations

import json
import os
from pathlib import Path
from threading import Lock
from typing import Any

from schoolgate.auth.models import Principal

try:
    from pymongo import MongoClient
except Exception:  # pragma: no cover
    MongoClient = None  # type: ignore[assignment]


class IdentityRepository:
    """Lookup of principals by id, email or username."""

    def __init__(self, app_root: Path) -> None:
        """Initialize repository storage backends."""
        self._fallback_dir = app_root / "runtime" / "identity_store"
        self._fallback_dir.mkdir(parents=True, exist_ok=True)
        self._users_file = self._fallback_dir / "users.json"
        self._file_lock = Lock()

        self._mongo_users = None

        mongo_uri = os.getenv("MONGODB_URI", "").strip()
        mongo_db = os.getenv("MONGODB_DB", "schoolgate").strip() or "schoolgate"

        if mongo_uri and MongoClient is not None:
            try:
                client = MongoClient(mongo_uri, serverSelectionTimeoutMS=3000)
                client.admin.command("ping")
                users = client[mongo_db]["users"]
                users.create_index("user_id", unique=True)
                users.create_index("email", unique=True)
                users.create_index("username", unique=True)
                self._mongo_users = users
            except Exception:
                self._mongo_users = None

    @property
    def backend(self) -> str:
        return "mongo" if self._mongo_users is not None else "file"

    def _read_users(self) -> list[dict[str, Any]]:
        """Read user list from JSON file with empty fallback."""
        if not self._users_file.exists():
            return []
        try:
            payload = json.loads(self._users_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        return payload if isinstance(payload, list) else []

    def _write_users(self, items: list[dict[str, Any]]) -> None:
        self._users_file.write_text(
            json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    def _find_one(self, field: str, value: str) -> Principal | None:
        if self._mongo_users is not None:
            doc = self._mongo_users.find_one({field: value}, {"_id": 0})
            return Principal.model_validate(doc) if doc else None

        with self._file_lock:
            rows = self._read_users()
        for row in rows:
            if str(row.get(field, "")) == value:
                return Principal.model_validate(row)
        return None

    def find_by_id(self, user_id: str) -> Principal | None:
        return self._find_one("user_id", user_id) if user_id else None

    def find_by_email(self, email: str) -> Principal | None:
        key = email.strip().lower()
        return self._find_one("email", key) if key else None

    def find_by_username(self, username: str) -> Principal | None:
        key = username.strip()
        return self._find_one("username", key) if key else None

    def find_by_login(self, identifier: str) -> Principal | None:
        """Resolve a login identifier that may be an email or a username."""
        if "@" in identifier:
            return self.find_by_email(identifier)
        return self.find_by_username(identifier) or self.find_by_email(identifier)

    def upsert_user(self, principal: Principal) -> None:
        """Create or update a principal keyed by ``user_id``."""
        doc = principal.model_copy(update={"email": principal.email.strip().lower()}).model_dump()
        if self._mongo_users is not None:
            self._mongo_users.update_one({"user_id": principal.user_id}, {"$set": doc}, upsert=True)
            return

        with self._file_lock:
            items = [
                row for row in self._read_users() if str(row.get("user_id", "")) != principal.user_id
            ]
            items.append(doc)
            self._write_users(items)
