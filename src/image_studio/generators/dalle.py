"""DALL-E 3 served by the OpenAI images API."""

from __future__ import annotations

import logging
import random
from typing import Any

import httpx

from image_studio.assets.storage import ImageAcquisitionError
from image_studio.generators.base import GeneratedImage, GenerationRequest, GenerationResult
from image_studio.generators.rate_limiter import SlidingWindowRateLimiter
from image_studio.pipeline.error_normalizer import (
    NormalizedError,
    ProviderError,
    create_normalized_error,
    normalize_error,
)
from image_studio.pipeline.models import AspectRatio, ErrorCategory

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
DALLE_MODEL_ID = "dalle-3"
DEFAULT_DALLE_OPTIONS: dict[str, Any] = {"quality": "hd", "style": "vivid"}
# 4:3 and 3:4 have no native size; they fall back to the closest orientation.
DALLE_SIZES: dict[AspectRatio, str] = {
    AspectRatio.SQUARE: "1024x1024",
    AspectRatio.LANDSCAPE_16_9: "1792x1024",
    AspectRatio.PORTRAIT_9_16: "1024x1792",
    AspectRatio.LANDSCAPE_4_3: "1792x1024",
    AspectRatio.PORTRAIT_3_4: "1024x1792",
}
DALLE_ASPECT_RATIOS: tuple[AspectRatio, ...] = (
    AspectRatio.SQUARE,
    AspectRatio.LANDSCAPE_16_9,
    AspectRatio.PORTRAIT_9_16,
)
RATE_LIMIT_TIMEOUT_SECONDS = 30.0
_MAX_SEED = 2_147_483_647


class DalleGenerator:
    """DALL-E 3 generator; one image per call, no seed or negative prompt support."""

    provider_id = "openai"
    model_id = DALLE_MODEL_ID
    display_name = "DALL-E 3"

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        base_url: str = OPENAI_BASE_URL,
        timeout_seconds: float = 120.0,
        options: dict[str, Any] | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._options = {**DEFAULT_DALLE_OPTIONS, **(options or {})}
        self._rate_limiter = rate_limiter
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        options = {**self._options}
        for key in ("quality", "style"):
            if request.provider_options.get(key):
                options[key] = request.provider_options[key]
        return {
            "model": "dall-e-3",
            "prompt": request.prompt,
            "n": 1,
            "size": DALLE_SIZES[request.aspect_ratio],
            "quality": options["quality"],
            "style": options["style"],
            "response_format": "url",
        }

    def generate(self, request: GenerationRequest) -> GenerationResult:
        payload = self.build_payload(request)
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(
                self.provider_id,
                timeout_seconds=RATE_LIMIT_TIMEOUT_SECONDS,
            )

        response = self._client.post("/images/generations", json=payload)
        if not response.is_success:
            message, code = _error_detail(response)
            raise ProviderError(message, status_code=response.status_code, provider_code=code)

        data = response.json()
        entries = data.get("data") or []
        if not entries:
            raise ProviderError(
                "No images returned from DALL-E",
                provider_code="NO_IMAGES",
                category=ErrorCategory.PROVIDER_ERROR,
            )

        width, height = (int(part) for part in payload["size"].split("x"))
        return GenerationResult(
            images=[
                GeneratedImage(url=str(entry["url"]), width=width, height=height)
                for entry in entries
                if entry.get("url")
            ],
            # The API takes no seed; a random one keeps asset metadata uniform.
            seed=random.randint(0, _MAX_SEED),  # noqa: S311
            metadata={
                "created": data.get("created"),
                "revised_prompt": entries[0].get("revised_prompt"),
                "size": payload["size"],
            },
        )

    def normalize_error(self, error: BaseException) -> NormalizedError:
        if isinstance(error, ImageAcquisitionError) or getattr(error, "category", None):
            return normalize_error(error)
        message = str(error)
        code = getattr(error, "provider_code", None)
        status = getattr(error, "status_code", None)
        if code == "content_policy_violation" or "safety" in message.lower():
            return create_normalized_error(
                ErrorCategory.CONTENT_FILTERED,
                message,
                provider_code=code,
                original_error=error,
            )
        if status == 429:
            category = ErrorCategory.RATE_LIMITED
        elif status == 400:
            category = ErrorCategory.INVALID_INPUT
        elif status in (401, 403) or (status is not None and status >= 500):
            category = ErrorCategory.PROVIDER_ERROR
        else:
            return normalize_error(error)
        return create_normalized_error(
            category,
            message,
            provider_code=code,
            original_error=error,
        )

    def default_options(self) -> dict[str, Any]:
        return dict(self._options)

    def supported_aspect_ratios(self) -> tuple[AspectRatio, ...]:
        return DALLE_ASPECT_RATIOS

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
        code = error.get("code")
        return error["message"], code if isinstance(code, str) else None
    logger.debug("OpenAI returned HTTP %s: %s", response.status_code, response.text[:500])
    return f"OpenAI request failed: HTTP {response.status_code}", None
