"""Model id to generator lookup."""

from __future__ import annotations

from image_studio.config import Settings
from image_studio.generators.base import Generator
from image_studio.generators.dalle import DALLE_MODEL_ID, DalleGenerator
from image_studio.generators.echo import EchoGenerator
from image_studio.generators.flux import FLUX_DISPLAY_NAMES, FLUX_ENDPOINTS, FalFluxGenerator
from image_studio.generators.gemini_image import GEMINI_IMAGE_MODELS, GeminiImageGenerator
from image_studio.generators.rate_limiter import SlidingWindowRateLimiter


class GeneratorNotFoundError(LookupError):
    """Raised when no generator is registered for a model id."""


class GeneratorRegistry:
    """Generators keyed by model id."""

    def __init__(self, generators: list[Generator] | None = None) -> None:
        self._generators: dict[str, Generator] = {}
        for generator in generators or []:
            self.register(generator)

    def register(self, generator: Generator) -> None:
        self._generators[generator.model_id] = generator

    def get(self, model_id: str) -> Generator | None:
        return self._generators.get(model_id)

    def get_or_raise(self, model_id: str) -> Generator:
        generator = self._generators.get(model_id)
        if generator is None:
            raise GeneratorNotFoundError(f"No adapter found for model: {model_id}")
        return generator

    def has(self, model_id: str) -> bool:
        return model_id in self._generators

    def model_ids(self) -> list[str]:
        return sorted(self._generators)

    def close(self) -> None:
        for generator in self._generators.values():
            close = getattr(generator, "close", None)
            if close is not None:
                close()


def build_registry(settings: Settings) -> GeneratorRegistry:
    """Register one generator per supported model id.

    With ``use_echo_generator`` every provider model id is served by the offline
    echo generator, so tasks can be processed without provider credentials.
    """

    if settings.providers.use_echo_generator:
        return GeneratorRegistry(
            [
                EchoGenerator(model_id=model_id, display_name=display_name)
                for model_id, display_name in provider_model_names().items()
            ]
            + [EchoGenerator()],
        )

    providers = settings.providers
    rate_limiter = SlidingWindowRateLimiter()
    generators: list[Generator] = [
        FalFluxGenerator(
            model_id=model_id,
            api_key=providers.fal_api_key,
            base_url=providers.fal_base_url,
            timeout_seconds=providers.request_timeout_seconds,
            rate_limiter=rate_limiter,
        )
        for model_id in FLUX_ENDPOINTS
    ]
    generators.append(
        DalleGenerator(
            api_key=providers.openai_api_key,
            base_url=providers.openai_base_url,
            timeout_seconds=providers.request_timeout_seconds,
            rate_limiter=rate_limiter,
        ),
    )
    generators.extend(
        GeminiImageGenerator(
            model_id=model_id,
            api_key=providers.google_ai_api_key,
            base_url=providers.google_ai_base_url,
            timeout_seconds=providers.request_timeout_seconds,
            rate_limiter=rate_limiter,
        )
        for model_id in GEMINI_IMAGE_MODELS
    )
    return GeneratorRegistry(generators)


def provider_model_names() -> dict[str, str]:
    """Display names of every model id served by a real provider."""

    return {
        **FLUX_DISPLAY_NAMES,
        DALLE_MODEL_ID: DalleGenerator.display_name,
        **{model_id: name for model_id, (_, name) in GEMINI_IMAGE_MODELS.items()},
    }
