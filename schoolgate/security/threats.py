"""Pattern-based SQL-injection and XSS heuristics.

Coarse pre-filter: a match rejects the whole request. Parameterized queries
and output encoding still belong to the data and view layers.
"""

from __future__ import annotations

import re

MAX_SCAN_LENGTH = 8192

SQL_INJECTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bunion\b.*\bselect\b",
        r"\bselect\b.*\bfrom\b",
        r"\binsert\b.*\binto\b",
        r"\bupdate\b.*\bset\b",
        r"\bdelete\b.*\bfrom\b",
        r"\bdrop\b.*\btable\b",
        r"\bexec\b|\bexecute\b",
        r"\bscript\b.*>",
        r"'|\"|;|--|#|\*|\|",
    )
]

XSS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<embed\b[^>]*>", re.IGNORECASE),
    re.compile(r"<applet\b[^<]*(?:(?!</applet>)<[^<]*)*</applet>", re.IGNORECASE | re.MULTILINE),
]


def _matches_any(patterns: list[re.Pattern[str]], text: str) -> bool:
    sample = text[:MAX_SCAN_LENGTH]
    return any(pattern.search(sample) for pattern in patterns)


def looks_like_sql_injection(text: str) -> bool:
    """Return True when ``text`` matches a SQL-injection signature."""
    return bool(text) and _matches_any(SQL_INJECTION_PATTERNS, text)


def looks_like_xss(text: str) -> bool:
    """Return True when ``text`` matches a script-injection signature."""
    return bool(text) and _matches_any(XSS_PATTERNS, text)


def excerpt(value: str, limit: int = 100) -> str:
    """Truncated preview of a rejected value for security logs."""
    return value[:limit]
