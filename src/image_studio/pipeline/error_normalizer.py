"""Deterministic provider error classification for sub-task retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

import httpx

from image_studio.pipeline.models import ErrorCategory

ERROR_NORMALIZER_VERSION = 1

RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.PROVIDER_ERROR,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.TIMEOUT,
    },
)

HTTP_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    400: ErrorCategory.INVALID_INPUT,
    401: ErrorCategory.PROVIDER_ERROR,
    403: ErrorCategory.CONTENT_FILTERED,
    404: ErrorCategory.INVALID_INPUT,
    408: ErrorCategory.TIMEOUT,
    429: ErrorCategory.RATE_LIMITED,
    500: ErrorCategory.PROVIDER_ERROR,
    502: ErrorCategory.NETWORK_ERROR,
    503: ErrorCategory.PROVIDER_ERROR,
    504: ErrorCategory.TIMEOUT,
}

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate.?limit",
    r"too.?many.?requests",
    r"quota.?exceeded",
)
_CONTENT_FILTER_PATTERNS: tuple[str, ...] = (
    r"content.?filter",
    r"nsfw",
    r"safety",
    r"violat",
    r"moderat",
    r"prohibited",
    r"blocked",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    r"invalid.?input",
    r"invalid.?prompt",
    r"invalid.?param",
    r"malformed",
    r"validation",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    r"network",
    r"connection",
    r"econnrefused",
    r"enotfound",
    r"dns",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"timeout",
    r"timed.?out",
    r"deadline",
)
_MESSAGE_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (ErrorCategory.CONTENT_FILTERED, _CONTENT_FILTER_PATTERNS),
    (ErrorCategory.INVALID_INPUT, _INVALID_INPUT_PATTERNS),
    (ErrorCategory.NETWORK_ERROR, _NETWORK_PATTERNS),
    (ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
)


class ProviderError(Exception):
    """Failure raised by a generator or by image acquisition.

    ``category`` pins the classification when the raiser already knows it;
    otherwise the status code and message are used.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_code: str | None = None,
        category: ErrorCategory | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code
        self.category = category


@dataclass(slots=True)
class NormalizedError:
    """Normalized failure classification result."""

    category: ErrorCategory
    message: str
    retryable: bool
    provider_code: str | None = None
    matched_rule: str = "fallback_unknown"
    matched_pattern: str | None = None
    original_error: BaseException | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "normalizer_version": ERROR_NORMALIZER_VERSION,
            "category": self.category.value,
            "retryable": self.retryable,
            "provider_code": self.provider_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def is_retryable(category: ErrorCategory) -> bool:
    return category in RETRYABLE_CATEGORIES


def create_normalized_error(
    category: ErrorCategory,
    message: str,
    *,
    provider_code: str | None = None,
    original_error: BaseException | None = None,
) -> NormalizedError:
    return NormalizedError(
        category=category,
        message=message,
        retryable=is_retryable(category),
        provider_code=provider_code,
        matched_rule="explicit",
        original_error=original_error,
    )


def normalize_error(error: BaseException) -> NormalizedError:
    """Classify any exception into the error taxonomy.

    Precedence: an explicit category, then the HTTP status code, then transport
    exception types, then message patterns.
    """

    message = _error_message(error)
    provider_code = getattr(error, "provider_code", None)

    explicit = getattr(error, "category", None)
    if isinstance(explicit, ErrorCategory):
        return create_normalized_error(
            explicit,
            message,
            provider_code=provider_code,
            original_error=error,
        )

    status_code = _status_code(error)
    if status_code is not None and status_code in HTTP_STATUS_CATEGORIES:
        category = HTTP_STATUS_CATEGORIES[status_code]
        return NormalizedError(
            category=category,
            message=message,
            retryable=is_retryable(category),
            provider_code=provider_code,
            matched_rule="http_status",
            matched_pattern=str(status_code),
            original_error=error,
        )

    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return NormalizedError(
            category=ErrorCategory.TIMEOUT,
            message=message,
            retryable=True,
            provider_code=provider_code,
            matched_rule="transport_timeout",
            original_error=error,
        )
    if isinstance(error, httpx.TransportError | ConnectionError):
        return NormalizedError(
            category=ErrorCategory.NETWORK_ERROR,
            message=message,
            retryable=True,
            provider_code=provider_code,
            matched_rule="transport_error",
            original_error=error,
        )

    for category, patterns in _MESSAGE_RULES:
        pattern = _first_match(message, patterns)
        if pattern is not None:
            return NormalizedError(
                category=category,
                message=message,
                retryable=is_retryable(category),
                provider_code=provider_code,
                matched_rule="message_pattern",
                matched_pattern=pattern,
                original_error=error,
            )

    return NormalizedError(
        category=ErrorCategory.UNKNOWN,
        message=message,
        retryable=False,
        provider_code=provider_code,
        original_error=error,
    )


def format_error_for_log(error: NormalizedError) -> str:
    """Render ``[CATEGORY] message (code: X) (retryable)``."""

    parts = [f"[{error.category.value}]", error.message]
    if error.provider_code:
        parts.append(f"(code: {error.provider_code})")
    parts.append("(retryable)" if error.retryable else "(not retryable)")
    return " ".join(part for part in parts if part)


def _status_code(error: BaseException) -> int | None:
    value = getattr(error, "status_code", None)
    if isinstance(value, int):
        return value
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _error_message(error: BaseException) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    text = str(error)
    return text or type(error).__name__


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack, flags=re.IGNORECASE):
            return pattern
    return None
