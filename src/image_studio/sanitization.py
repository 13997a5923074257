"""Sanitization helpers for provider diagnostics persisted in DB."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

_MAX_PREVIEW_CHARS = 2_000
_MAX_SNAPSHOT_STRING_CHARS = 4_000
_SECRET_KEYS = frozenset({"authorization", "api_key", "apikey", "key", "token", "fal_key"})

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer|key)\s+[a-z0-9._:\-]{16,}"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(image_studio|fal|google_ai|gemini|openai)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets/PII and clamp payload size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def sanitize_snapshot(value: Any) -> Any:
    """Recursively redact a JSON-like request/response snapshot.

    Values under credential-looking keys are replaced, long strings such as
    inline image data are clamped.
    """

    if isinstance(value, dict):
        return {
            str(key): "[redacted]" if str(key).lower() in _SECRET_KEYS else sanitize_snapshot(item)
            for key, item in value.items()
        }
    if isinstance(value, list | tuple):
        return [sanitize_snapshot(item) for item in value]
    if isinstance(value, str):
        if value.startswith("data:"):
            return value.split(",", 1)[0] + ",[inline-data]"
        return sanitize_preview(value, max_chars=_MAX_SNAPSHOT_STRING_CHARS)
    return value
