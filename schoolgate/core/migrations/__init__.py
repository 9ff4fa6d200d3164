"""SQLite migrations for runtime security state."""

from schoolgate.core.migrations.runner import apply_migrations

__all__ = ["apply_migrations"]
