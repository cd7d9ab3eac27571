"""Query text sanitising applied before anything is written to a log."""

from __future__ import annotations

import re

_PASSWORD_RE = re.compile(r"""(PASSWORD\s+)(['"])(?:(?!\2).)*\2""", re.IGNORECASE)
_IDENTIFIED_BY_RE = re.compile(r"""(IDENTIFIED\s+BY\s+)(['"])(?:(?!\2).)*\2""", re.IGNORECASE)

REDACTED = "'***'"


def sanitize_query(query: str | None, max_length: int | None = None) -> str | None:
    """
    Redact password literals from statement text.

    Handles ``PASSWORD 'x'`` and ``IDENTIFIED BY 'x'`` with either quote
    style. ``max_length`` truncates after redaction.
    """
    if not query:
        return None
    sanitized = _PASSWORD_RE.sub(lambda m: m.group(1) + REDACTED, query)
    sanitized = _IDENTIFIED_BY_RE.sub(lambda m: m.group(1) + REDACTED, sanitized)
    if max_length is not None and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
    return sanitized
