"""Secret masking for log records.

The EODHD token travels in every request's query string, so any logged URL or
requests exception message would leak it. setup_logging routes each record
through filter_secrets.
"""

from __future__ import annotations

import re
import threading

MASK = "***"

SECRET_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"(api_token=)[^&\s'\"]+"), rf"\g<1>{MASK}"),
    (re.compile(r"(EODHD_API_TOKEN)\s*[=:]\s*\S+"), rf"\1={MASK}"),
    (re.compile(r"(password|passwd|pwd)\s*[=:]\s*\S+", re.IGNORECASE), rf"\1={MASK}"),
]

# Literal values (e.g. the configured token) masked wherever they appear
_registered: set[str] = set()
_registered_lock = threading.Lock()


def register_secret(value: str | None) -> None:
    """Mask this exact value in every later log message. Short values are ignored."""
    if value and len(value) >= 6:
        with _registered_lock:
            _registered.add(value)


def clear_registered_secrets() -> None:
    with _registered_lock:
        _registered.clear()


def filter_secrets(text: str) -> str:
    """Return text with known secret shapes and registered values masked."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    with _registered_lock:
        literals = sorted(_registered, key=len, reverse=True)
    for literal in literals:
        text = text.replace(literal, MASK)
    return text
