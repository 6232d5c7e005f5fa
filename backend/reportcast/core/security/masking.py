"""Redaction helpers that keep secrets out of logs and audit records."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse, urlunparse

REDACTED = "[REDACTED]"

_SENSITIVE_KEY_RE = re.compile(r"password|token|secret|api_?key", re.IGNORECASE)


def is_sensitive_key(key: str) -> bool:
    return bool(_SENSITIVE_KEY_RE.search(key))


def redact_sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with values under sensitive keys replaced.

    Walks nested dicts and lists. Non-container values are returned as is.

    >>> redact_sensitive({"user": "a", "smtp_password": "x"})
    {'user': 'a', 'smtp_password': '[REDACTED]'}
    """
    if isinstance(data, dict):
        return {
            k: REDACTED if isinstance(k, str) and is_sensitive_key(k) else redact_sensitive(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(v) for v in data]
    return data


def mask_url(url: str | None) -> str:
    """Strip the password from a connection-string URL.

    Examples
    --------
    >>> mask_url("postgresql://admin:s3cret@db:5432/mydb")
    'postgresql://admin:****@db:5432/mydb'
    >>> mask_url(None)
    ''
    """
    if not url:
        return ""

    try:
        parsed = urlparse(url)
        if parsed.password:
            user_part = parsed.username or ""
            host_part = parsed.hostname or ""
            port_part = f":{parsed.port}" if parsed.port else ""
            netloc = f"{user_part}:****@{host_part}{port_part}"
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        # Fallback: regex-based masking for non-standard URLs
        return re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", url)
