from __future__ import annotations

import allure
import httpx
import pytest

from image_studio.pipeline.error_normalizer import (
    ProviderError,
    create_normalized_error,
    format_error_for_log,
    is_retryable,
    normalize_error,
)
from image_studio.pipeline.models import ErrorCategory

pytestmark = [
    allure.epic("Generation Reliability"),
    allure.feature("Error Normalization"),
]


@pytest.mark.parametrize(
    ("status_code", "category", "retryable"),
    [
        (400, ErrorCategory.INVALID_INPUT, False),
        (401, ErrorCategory.PROVIDER_ERROR, True),
        (403, ErrorCategory.CONTENT_FILTERED, False),
        (429, ErrorCategory.RATE_LIMITED, True),
        (502, ErrorCategory.NETWORK_ERROR, True),
        (504, ErrorCategory.TIMEOUT, True),
    ],
)
def test_status_code_classification(
    status_code: int,
    category: ErrorCategory,
    retryable: bool,
) -> None:
    normalized = normalize_error(ProviderError("boom", status_code=status_code))

    assert normalized.category == category
    assert normalized.retryable is retryable
    assert normalized.matched_rule == "http_status"


def test_explicit_category_beats_status_code() -> None:
    normalized = normalize_error(
        ProviderError(
            "flagged",
            status_code=500,
            provider_code="NSFW_DETECTED",
            category=ErrorCategory.CONTENT_FILTERED,
        ),
    )

    assert normalized.category == ErrorCategory.CONTENT_FILTERED
    assert normalized.provider_code == "NSFW_DETECTED"
    assert normalized.matched_rule == "explicit"


def test_status_code_beats_message_patterns() -> None:
    normalized = normalize_error(ProviderError("request timed out", status_code=429))

    assert normalized.category == ErrorCategory.RATE_LIMITED


@pytest.mark.parametrize(
    ("message", "category"),
    [
        ("Rate limit exceeded", ErrorCategory.RATE_LIMITED),
        ("Too Many Requests", ErrorCategory.RATE_LIMITED),
        ("prompt blocked by safety system", ErrorCategory.CONTENT_FILTERED),
        ("Invalid prompt supplied", ErrorCategory.INVALID_INPUT),
        ("ECONNREFUSED 127.0.0.1", ErrorCategory.NETWORK_ERROR),
        ("deadline exceeded", ErrorCategory.TIMEOUT),
    ],
)
def test_message_pattern_classification(message: str, category: ErrorCategory) -> None:
    normalized = normalize_error(RuntimeError(message))

    assert normalized.category == category
    assert normalized.matched_rule == "message_pattern"
    assert normalized.matched_pattern is not None


def test_transport_exceptions_are_classified_by_type() -> None:
    request = httpx.Request("GET", "https://example.com")

    timeout = normalize_error(httpx.ReadTimeout("slow", request=request))
    assert timeout.category == ErrorCategory.TIMEOUT
    assert timeout.retryable is True

    connect = normalize_error(httpx.ConnectError("refused", request=request))
    assert connect.category == ErrorCategory.NETWORK_ERROR
    assert connect.matched_rule == "transport_error"


def test_http_status_error_uses_response_status() -> None:
    request = httpx.Request("POST", "https://fal.run/fal-ai/flux-pro")
    response = httpx.Response(503, request=request)
    error = httpx.HTTPStatusError("server error", request=request, response=response)

    assert normalize_error(error).category == ErrorCategory.PROVIDER_ERROR


def test_unmatched_error_is_unknown_and_terminal() -> None:
    normalized = normalize_error(KeyError("images"))

    assert normalized.category == ErrorCategory.UNKNOWN
    assert normalized.retryable is False
    assert normalized.matched_rule == "fallback_unknown"


def test_normalization_is_deterministic() -> None:
    error = ProviderError("upstream connection reset")

    first = normalize_error(error)
    second = normalize_error(error)

    assert first.to_event_details() == second.to_event_details()


def test_format_error_for_log() -> None:
    normalized = create_normalized_error(
        ErrorCategory.RATE_LIMITED,
        "Fal.ai rate limit exceeded",
        provider_code="RATE_LIMITED",
    )

    assert format_error_for_log(normalized) == (
        "[RATE_LIMITED] Fal.ai rate limit exceeded (code: RATE_LIMITED) (retryable)"
    )
    assert format_error_for_log(normalize_error(ValueError("odd"))) == (
        "[UNKNOWN] odd (not retryable)"
    )


def test_retryable_categories() -> None:
    assert {category for category in ErrorCategory if is_retryable(category)} == {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.PROVIDER_ERROR,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.TIMEOUT,
    }
