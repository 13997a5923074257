"""Generator capability interface and request/result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from image_studio.pipeline.error_normalizer import NormalizedError
from image_studio.pipeline.models import AspectRatio


@dataclass(slots=True)
class GenerationRequest:
    """Inputs for one provider generation call."""

    prompt: str
    negative_prompt: str = ""
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    seed: int | None = None
    provider_options: dict[str, Any] = field(default_factory=dict)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "aspect_ratio": self.aspect_ratio.value,
            "seed": self.seed,
            "provider_options": dict(self.provider_options),
        }


@dataclass(slots=True)
class GeneratedImage:
    """One produced image: an HTTP(S) URL or an inline data URI."""

    url: str
    content_type: str = "image/png"
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class GenerationResult:
    """Provider output with the seed actually used and opaque metadata."""

    images: list[GeneratedImage]
    seed: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    inference_seconds: float | None = None


class Generator(Protocol):
    """Protocol implemented by image generation adapters, one per model id."""

    model_id: str
    provider_id: str
    display_name: str

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one generation; raise on provider failure."""

    def normalize_error(self, error: BaseException) -> NormalizedError:
        """Classify a failure raised by ``generate`` or by image acquisition."""

    def default_options(self) -> dict[str, Any]:
        """Provider option defaults merged into every request."""

    def supported_aspect_ratios(self) -> tuple[AspectRatio, ...]:
        """Aspect ratios this model can render."""
