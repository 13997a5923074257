"""Image generation adapters."""

from image_studio.generators.base import (
    GeneratedImage,
    GenerationRequest,
    GenerationResult,
    Generator,
)
from image_studio.generators.dalle import DalleGenerator
from image_studio.generators.echo import EchoGenerator
from image_studio.generators.flux import FLUX_ENDPOINTS, FalFluxGenerator
from image_studio.generators.gemini_image import GEMINI_IMAGE_MODELS, GeminiImageGenerator
from image_studio.generators.rate_limiter import SlidingWindowRateLimiter
from image_studio.generators.registry import (
    GeneratorNotFoundError,
    GeneratorRegistry,
    build_registry,
)

__all__ = [
    "FLUX_ENDPOINTS",
    "GEMINI_IMAGE_MODELS",
    "DalleGenerator",
    "EchoGenerator",
    "FalFluxGenerator",
    "GeminiImageGenerator",
    "GeneratedImage",
    "GenerationRequest",
    "GenerationResult",
    "Generator",
    "GeneratorNotFoundError",
    "GeneratorRegistry",
    "SlidingWindowRateLimiter",
    "build_registry",
]
