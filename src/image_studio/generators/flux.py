"""Flux models served by fal.ai, called over the synchronous REST endpoint."""

from __future__ import annotations

import logging
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
from image_studio.pipeline.models import ASPECT_RATIO_DIMENSIONS, AspectRatio, ErrorCategory

logger = logging.getLogger(__name__)

FAL_BASE_URL = "https://fal.run"
FLUX_ENDPOINTS: dict[str, str] = {
    "flux-pro": "fal-ai/flux-pro",
    "flux-dev": "fal-ai/flux/dev",
    "flux-schnell": "fal-ai/flux/schnell",
}
FLUX_DISPLAY_NAMES: dict[str, str] = {
    "flux-pro": "Flux Pro",
    "flux-dev": "Flux Dev",
    "flux-schnell": "Flux Schnell",
}
DEFAULT_FLUX_OPTIONS: dict[str, Any] = {
    "num_inference_steps": 25,
    "guidance_scale": 3.5,
    "safety_tolerance": "2",
}
RATE_LIMIT_TIMEOUT_SECONDS = 30.0


class FalFluxGenerator:
    """Flux generator backed by the fal.ai HTTP API."""

    provider_id = "fal"

    def __init__(  # noqa: PLR0913
        self,
        *,
        model_id: str = "flux-pro",
        api_key: str | None,
        base_url: str = FAL_BASE_URL,
        timeout_seconds: float = 120.0,
        options: dict[str, Any] | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model_id = model_id
        self.display_name = FLUX_DISPLAY_NAMES.get(model_id, model_id)
        self.endpoint = FLUX_ENDPOINTS.get(model_id, FLUX_ENDPOINTS["flux-pro"])
        self._options = {**DEFAULT_FLUX_OPTIONS, **(options or {})}
        self._rate_limiter = rate_limiter
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Key {api_key}"
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        width, height = ASPECT_RATIO_DIMENSIONS[request.aspect_ratio]
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "image_size": {"width": width, "height": height},
            "num_images": 1,
            **self._options,
        }
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            payload["seed"] = request.seed
        payload.update(request.provider_options)
        return payload

    def generate(self, request: GenerationRequest) -> GenerationResult:
        payload = self.build_payload(request)
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(
                self.provider_id,
                timeout_seconds=RATE_LIMIT_TIMEOUT_SECONDS,
            )

        response = self._client.post(f"/{self.endpoint}", json=payload)
        if not response.is_success:
            raise ProviderError(
                _error_detail(response),
                status_code=response.status_code,
            )

        data = response.json()
        if any(data.get("has_nsfw_concepts") or []):
            raise ProviderError(
                "Image was flagged for NSFW content",
                provider_code="NSFW_DETECTED",
                category=ErrorCategory.CONTENT_FILTERED,
            )

        timings = data.get("timings") or {}
        return GenerationResult(
            images=[
                GeneratedImage(
                    url=str(image["url"]),
                    content_type=str(image.get("content_type") or "image/png"),
                    width=image.get("width"),
                    height=image.get("height"),
                )
                for image in data.get("images") or []
            ],
            seed=data.get("seed"),
            metadata=data,
            inference_seconds=timings.get("inference"),
        )

    def normalize_error(self, error: BaseException) -> NormalizedError:
        message = str(error)
        if "content policy" in message.lower():
            return create_normalized_error(
                ErrorCategory.CONTENT_FILTERED,
                message,
                provider_code="CONTENT_POLICY_VIOLATION",
                original_error=error,
            )
        if getattr(error, "status_code", None) == 429:
            return create_normalized_error(
                ErrorCategory.RATE_LIMITED,
                "Fal.ai rate limit exceeded",
                provider_code="RATE_LIMITED",
                original_error=error,
            )
        return normalize_error(error)

    def default_options(self) -> dict[str, Any]:
        return dict(self._options)

    def supported_aspect_ratios(self) -> tuple[AspectRatio, ...]:
        return tuple(AspectRatio)

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if isinstance(detail, str) and detail:
            return detail
    logger.debug("fal.ai returned HTTP %s: %s", response.status_code, response.text[:500])
    return f"fal.ai request failed: HTTP {response.status_code}"
