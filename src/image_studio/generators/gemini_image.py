"""Gemini image models (Nano Banana, Gemini 3 Pro Image) over the Google AI REST API.

Images come back as base64 inline data and are returned as ``data:`` URIs, so the
asset pipeline decodes them without a second download.
"""

from __future__ import annotations

import logging
import random
from typing import Any

import httpx

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

GOOGLE_AI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
# model id -> (API model name, display name)
GEMINI_IMAGE_MODELS: dict[str, tuple[str, str]] = {
    "nano-banana": ("gemini-2.0-flash-preview-image-generation", "Nano Banana"),
    "gemini-3-pro-image-preview": ("gemini-3-pro-image-preview", "Gemini 3 Pro Image"),
}
GEMINI_IMAGE_DIMENSIONS: dict[AspectRatio, tuple[int, int]] = {
    AspectRatio.SQUARE: (1024, 1024),
    AspectRatio.LANDSCAPE_16_9: (1408, 768),
    AspectRatio.PORTRAIT_9_16: (768, 1408),
    AspectRatio.LANDSCAPE_4_3: (1152, 896),
    AspectRatio.PORTRAIT_3_4: (896, 1152),
}
RATE_LIMIT_TIMEOUT_SECONDS = 60.0
_SAFETY_MARKERS = ("safety", "blocked", "policy")
_MAX_SEED = 2_147_483_647


class GeminiImageGenerator:
    """Text-to-image through ``generateContent`` with image response modality."""

    provider_id = "google"

    def __init__(  # noqa: PLR0913
        self,
        *,
        model_id: str = "nano-banana",
        api_key: str | None,
        base_url: str = GOOGLE_AI_BASE_URL,
        timeout_seconds: float = 120.0,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        api_model, display_name = GEMINI_IMAGE_MODELS.get(model_id, (model_id, model_id))
        self.model_id = model_id
        self.api_model = api_model
        self.display_name = display_name
        self._api_key = api_key
        self._rate_limiter = rate_limiter
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": request.aspect_ratio.value},
            },
        }

    def generate(self, request: GenerationRequest) -> GenerationResult:
        if not self._api_key:
            raise ProviderError(
                "Google AI API key is required. Set GOOGLE_AI_API_KEY environment variable.",
                provider_code="API_KEY_MISSING",
                category=ErrorCategory.PROVIDER_ERROR,
            )
        payload = self.build_payload(request)
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(
                self.provider_id,
                timeout_seconds=RATE_LIMIT_TIMEOUT_SECONDS,
            )

        response = self._client.post(
            f"/models/{self.api_model}:generateContent",
            params={"key": self._api_key},
            json=payload,
        )
        if not response.is_success:
            raise ProviderError(_error_detail(response), status_code=response.status_code)

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(
                    f"Prompt blocked by safety filters: {block_reason}",
                    provider_code="SAFETY_BLOCKED",
                    category=ErrorCategory.CONTENT_FILTERED,
                )
            raise ProviderError(
                f"No image candidates returned from {self.display_name}",
                provider_code="NO_CANDIDATES",
                category=ErrorCategory.PROVIDER_ERROR,
            )

        parts = (candidates[0].get("content") or {}).get("parts") or []
        inline = [part["inlineData"] for part in parts if part.get("inlineData")]
        if not inline:
            raise ProviderError(
                f"No image data returned from {self.display_name}",
                provider_code="NO_IMAGE_DATA",
                category=ErrorCategory.PROVIDER_ERROR,
            )

        width, height = GEMINI_IMAGE_DIMENSIONS[request.aspect_ratio]
        text = " ".join(str(part["text"]) for part in parts if part.get("text"))
        return GenerationResult(
            images=[
                GeneratedImage(
                    url=f"data:{item.get('mimeType') or 'image/png'};base64,{item['data']}",
                    content_type=str(item.get("mimeType") or "image/png"),
                    width=width,
                    height=height,
                )
                for item in inline
            ],
            # Gemini reports no seed; a random one keeps asset metadata uniform.
            seed=random.randint(0, _MAX_SEED),  # noqa: S311
            metadata={
                "aspect_ratio": request.aspect_ratio.value,
                "model": self.model_id,
                "api_model": self.api_model,
                "finish_reason": candidates[0].get("finishReason"),
                "text": text or None,
            },
        )

    def normalize_error(self, error: BaseException) -> NormalizedError:
        if getattr(error, "category", None):
            return normalize_error(error)
        message = str(error)
        lowered = message.lower()
        status = getattr(error, "status_code", None)
        if status == 429:
            return create_normalized_error(
                ErrorCategory.RATE_LIMITED,
                message or "Google AI rate limit exceeded",
                provider_code="RATE_LIMITED",
                original_error=error,
            )
        if status == 400:
            filtered = any(marker in lowered for marker in _SAFETY_MARKERS)
            return create_normalized_error(
                ErrorCategory.CONTENT_FILTERED if filtered else ErrorCategory.INVALID_INPUT,
                message,
                provider_code="SAFETY_BLOCKED" if filtered else "INVALID_INPUT",
                original_error=error,
            )
        if status in (401, 403):
            return create_normalized_error(
                ErrorCategory.PROVIDER_ERROR,
                message or "Authentication failed",
                provider_code="AUTH_ERROR",
                original_error=error,
            )
        if status is not None and status >= 500:
            return create_normalized_error(
                ErrorCategory.PROVIDER_ERROR,
                message or "Google AI server error",
                provider_code="SERVER_ERROR",
                original_error=error,
            )
        if status is None and any(marker in lowered for marker in _SAFETY_MARKERS):
            return create_normalized_error(
                ErrorCategory.CONTENT_FILTERED,
                message,
                provider_code="SAFETY_BLOCKED",
                original_error=error,
            )
        return normalize_error(error)

    def default_options(self) -> dict[str, Any]:
        return {"aspect_ratio": AspectRatio.SQUARE.value}

    def supported_aspect_ratios(self) -> tuple[AspectRatio, ...]:
        return tuple(AspectRatio)

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
        return error["message"]
    logger.debug("Google AI returned HTTP %s: %s", response.status_code, response.text[:500])
    return f"Google AI request failed: HTTP {response.status_code}"
