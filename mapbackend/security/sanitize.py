# mapbackend/security/sanitize.py
"""
Input sanitizers for the data proxy.

Two independent, pure functions:

- ``sanitize_string`` for free text (row values, filter values, write keys):
  rejects markup/script injection signatures, then strips what is left of
  angle brackets, the ``javascript:`` scheme and event-handler fragments.
- ``sanitize_sql`` for identifiers and clauses (table names, columns, filter
  keys, select/order clauses): rejects SQL keywords, quotes, semicolons,
  comment markers and stored-procedure prefixes.

Both either return a cleaned string or raise a classified error.
"""
from __future__ import annotations

import re
from typing import Any

MAX_TEXT_LENGTH = 1000


class MaliciousInputError(ValueError):
    """Free text matched a markup/script injection signature."""

    def __init__(self, message: str = "Potentially malicious input detected"):
        super().__init__(message)


class MaliciousSQLError(ValueError):
    """An identifier or clause matched a SQL injection signature."""

    def __init__(self, message: str = "Potentially malicious SQL input detected"):
        super().__init__(message)


XSS_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.I | re.S),
    re.compile(r"<iframe[^>]*>.*?</iframe>", re.I | re.S),
    re.compile(r"javascript:", re.I),
    re.compile(r"vbscript:", re.I),
    re.compile(r"\bon\w+\s*=", re.I),  # onload=, onclick=, etc.
    re.compile(r"<embed[^>]*>", re.I),
    re.compile(r"<object[^>]*>", re.I),
    re.compile(r"<link[^>]*>", re.I),
    re.compile(r"<meta[^>]*>", re.I),
    re.compile(r"expression\s*\(", re.I),
    re.compile(r"url\s*\(", re.I),
    re.compile(r"@import", re.I),
    re.compile(r"<[^>]*>"),  # any tag
    re.compile(r"&\w+;"),  # HTML entities
]

SQL_INJECTION_PATTERNS = [
    re.compile(
        r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|TRUNCATE|EXEC|EXECUTE|UNION|OR|AND)\b",
        re.I,
    ),
    re.compile(r"['\"`;]"),
    re.compile(r"--"),
    re.compile(r"/\*"),
    re.compile(r"\*/"),
    re.compile(r"\bxp_", re.I),
    re.compile(r"\bsp_", re.I),
    re.compile(r"\b(SCRIPT|DECLARE|CAST|CONVERT)\b", re.I),
]

_ANGLE_RE = re.compile(r"[<>]")
_JS_SCHEME_RE = re.compile(r"javascript:", re.I)
_HANDLER_RE = re.compile(r"on\w+=", re.I)

_QUOTE_SEMI_RE = re.compile(r"['\"`;]")
_COMMENT_RE = re.compile(r"--|/\*|\*/")
_DANGEROUS_KW_RE = re.compile(r"\b(DROP|DELETE|TRUNCATE|INSERT|UPDATE)\b", re.I)


def _require_str(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected str, got {type(value).__name__}")
    return value


def sanitize_string(value: str) -> str:
    text = _require_str(value)

    for pattern in XSS_PATTERNS:
        if pattern.search(text):
            raise MaliciousInputError()

    text = text.strip()
    text = _ANGLE_RE.sub("", text)
    text = _JS_SCHEME_RE.sub("", text)
    text = _HANDLER_RE.sub("", text)
    return text[:MAX_TEXT_LENGTH]


def sanitize_sql(value: str) -> str:
    text = _require_str(value).strip()

    for pattern in SQL_INJECTION_PATTERNS:
        if pattern.search(text):
            raise MaliciousSQLError()

    # Residual cleanup; a string that passed the checks is normally unchanged.
    text = _QUOTE_SEMI_RE.sub("", text)
    text = _COMMENT_RE.sub("", text)
    text = _DANGEROUS_KW_RE.sub("", text)
    return text


def sanitize_data(value: Any) -> Any:
    """Recursively free-text sanitize every string leaf and object key of a payload."""
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, dict):
        return {sanitize_string(str(k)): sanitize_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_data(v) for v in value]
    return value


def contains_markup(text: str) -> bool:
    """True when any free-text injection signature matches (no cleaning)."""
    return any(p.search(text) for p in XSS_PATTERNS)
