"""Deterministic offline generator returning an inline PNG.

Used for local smoke runs and tests. A ``simulate_error`` provider option
makes ``generate`` raise a ``ProviderError`` with that message, so retry and
failure paths can be exercised without a real provider.
"""

from __future__ import annotations

import hashlib
from typing import Any

from image_studio.generators.base import GeneratedImage, GenerationRequest, GenerationResult
from image_studio.pipeline.error_normalizer import NormalizedError, ProviderError, normalize_error
from image_studio.pipeline.models import ASPECT_RATIO_DIMENSIONS, AspectRatio

ONE_PIXEL_PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kg"
    "AAAABJRU5ErkJggg=="
)


class EchoGenerator:
    """Generator that never leaves the process."""

    provider_id = "echo"

    def __init__(self, model_id: str = "echo", display_name: str = "Echo") -> None:
        self.model_id = model_id
        self.display_name = display_name

    def generate(self, request: GenerationRequest) -> GenerationResult:
        simulated = request.provider_options.get("simulate_error")
        if simulated:
            raise ProviderError(str(simulated))

        seed = request.seed if request.seed is not None else _seed_from_prompt(request.prompt)
        width, height = ASPECT_RATIO_DIMENSIONS[request.aspect_ratio]
        return GenerationResult(
            images=[
                GeneratedImage(
                    url=ONE_PIXEL_PNG_DATA_URL,
                    content_type="image/png",
                    width=width,
                    height=height,
                ),
            ],
            seed=seed,
            metadata={
                "provider": self.provider_id,
                "model": self.model_id,
                "prompt_sha256": hashlib.sha256(request.prompt.encode("utf-8")).hexdigest(),
            },
        )

    def normalize_error(self, error: BaseException) -> NormalizedError:
        return normalize_error(error)

    def default_options(self) -> dict[str, Any]:
        return {}

    def supported_aspect_ratios(self) -> tuple[AspectRatio, ...]:
        return tuple(AspectRatio)


def _seed_from_prompt(prompt: str) -> int:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")
