"""Sub-task execution: one generator call, asset hand-off and retry policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from image_studio.assets.naming import FilenameParams, generate_alt_text, generate_filename
from image_studio.assets.storage import ImageStorage, MediaLibrary, extension_from_url
from image_studio.generators.base import GenerationRequest, GenerationResult, Generator
from image_studio.generators.registry import GeneratorRegistry
from image_studio.pipeline.error_normalizer import (
    NormalizedError,
    ProviderError,
    format_error_for_log,
    normalize_error,
)
from image_studio.pipeline.fission import BASE_STYLE_ID
from image_studio.pipeline.models import (
    MAX_RETRY_ATTEMPTS,
    AssetView,
    AssetWrite,
    SubTaskStatus,
    SubTaskView,
    TaskStatus,
)
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.style_merge import BASE_STYLE_NAME

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Success:
    sub_task_id: str
    asset_id: str
    seed: int | None


@dataclass(slots=True, frozen=True)
class RetryScheduled:
    """Retryable failure; the sub-task is pending again and must be re-enqueued."""

    sub_task_id: str
    retry_count: int
    error: NormalizedError


@dataclass(slots=True, frozen=True)
class Failed:
    sub_task_id: str
    error: NormalizedError


@dataclass(slots=True, frozen=True)
class Cancelled:
    sub_task_id: str
    reason: str


@dataclass(slots=True, frozen=True)
class Skipped:
    """Nothing was executed: the sub-task is missing, terminal or changed concurrently."""

    sub_task_id: str
    reason: str


ExecutionOutcome = Success | RetryScheduled | Failed | Cancelled | Skipped


class SubTaskExecutor:
    """Runs the sub-task state machine against a generator."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: StudioRepository,
        registry: GeneratorRegistry,
        storage: ImageStorage,
        media: MediaLibrary,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.storage = storage
        self.media = media
        self.max_retry_attempts = max_retry_attempts

    def execute(self, sub_task_id: str) -> ExecutionOutcome:
        """Dispatch one sub-task and report what happened to it."""

        sub_task = self.repository.get_sub_task(sub_task_id=sub_task_id)
        if sub_task is None:
            return Skipped(sub_task_id=sub_task_id, reason="sub-task not found")
        if sub_task.status == SubTaskStatus.CANCELLED:
            return Cancelled(sub_task_id=sub_task_id, reason="sub-task already cancelled")
        if sub_task.status.is_terminal:
            return Skipped(sub_task_id=sub_task_id, reason=f"sub-task is {sub_task.status.value}")

        task = self.repository.get_task(task_id=sub_task.task_id)
        if task is None or task.status == TaskStatus.CANCELLED:
            self.repository.cancel_sub_task(sub_task_id=sub_task_id, reason="task cancelled")
            logger.info("Sub-task %s cancelled: parent task is cancelled", sub_task_id)
            return Cancelled(sub_task_id=sub_task_id, reason="task cancelled")

        generator = self.registry.get(sub_task.model_id)
        request = GenerationRequest(
            prompt=sub_task.final_prompt,
            negative_prompt=sub_task.negative_prompt,
            aspect_ratio=sub_task.aspect_ratio,
            seed=sub_task.seed,
        )
        started = self.repository.mark_sub_task_processing(
            sub_task_id=sub_task_id,
            request_snapshot={
                **request.to_snapshot(),
                "model_id": sub_task.model_id,
                "provider": generator.provider_id if generator is not None else None,
            },
        )
        if not started:
            return Skipped(sub_task_id=sub_task_id, reason="sub-task state changed concurrently")

        logger.info(
            "Generating sub-task %s with %s (attempt %d)",
            sub_task_id,
            sub_task.model_id,
            sub_task.retry_count + 1,
        )
        try:
            return self._generate_and_store(
                sub_task=sub_task,
                generator=generator or self.registry.get_or_raise(sub_task.model_id),
                request=request,
            )
        except Exception as error:  # noqa: BLE001
            normalized = (
                generator.normalize_error(error)
                if generator is not None
                else normalize_error(error)
            )
            return self._handle_failure(sub_task=sub_task, error=normalized)

    def _generate_and_store(
        self,
        *,
        sub_task: SubTaskView,
        generator: Generator,
        request: GenerationRequest,
    ) -> ExecutionOutcome:
        result = generator.generate(request)
        self.repository.record_response_snapshot(
            sub_task_id=sub_task.sub_task_id,
            snapshot=result.metadata,
        )
        if not result.images:
            raise ProviderError("No image returned from generation")

        image = result.images[0]
        asset = self._store_asset(
            sub_task=sub_task,
            generator=generator,
            request=request,
            result=result,
        )
        completed = self.repository.complete_sub_task_success(
            sub_task_id=sub_task.sub_task_id,
            asset_id=asset.asset_id,
            seed=result.seed,
            response_snapshot={
                **result.metadata,
                "image_url": image.url,
                "seed": result.seed,
                "asset_id": asset.asset_id,
            },
        )
        if not completed:
            logger.warning(
                "Sub-task %s changed state while generating; asset %s kept",
                sub_task.sub_task_id,
                asset.asset_id,
            )
            return Skipped(
                sub_task_id=sub_task.sub_task_id,
                reason="sub-task state changed concurrently",
            )
        logger.info("Sub-task %s succeeded: %s", sub_task.sub_task_id, asset.filename)
        return Success(sub_task_id=sub_task.sub_task_id, asset_id=asset.asset_id, seed=result.seed)

    def _store_asset(
        self,
        *,
        sub_task: SubTaskView,
        generator: Generator,
        request: GenerationRequest,
        result: GenerationResult,
    ) -> AssetView:
        image = result.images[0]
        acquired = self.storage.acquire(image.url)
        filename = generate_filename(
            FilenameParams(
                subject_slug=sub_task.expanded_prompt.subject_slug,
                style_id=sub_task.style_id,
                model_id=sub_task.model_id,
                batch_index=sub_task.batch_index,
                extension=extension_from_url(image.url, acquired.content_type),
            ),
        )
        staged = self.storage.save(acquired.buffer, filename)
        try:
            media_path = self.media.store(staged)
            return self.repository.create_asset(
                AssetWrite(
                    filename=media_path.name,
                    path=str(media_path),
                    mime_type=acquired.content_type,
                    size_bytes=staged.size_bytes,
                    alt_text=generate_alt_text(
                        sub_task.expanded_prompt.subject_slug,
                        self._style_name(sub_task.style_id),
                        generator.display_name,
                    ),
                    task_id=sub_task.task_id,
                    sub_task_id=sub_task.sub_task_id,
                    subject_slug=sub_task.expanded_prompt.subject_slug,
                    style_id=sub_task.style_id,
                    model_id=sub_task.model_id,
                    batch_index=sub_task.batch_index,
                    source_url=acquired.source,
                    generation_params=_generation_params(
                        sub_task=sub_task,
                        generator=generator,
                        request=request,
                        result=result,
                    ),
                ),
            )
        finally:
            self.storage.delete(staged.filename)

    def _handle_failure(self, *, sub_task: SubTaskView, error: NormalizedError) -> ExecutionOutcome:
        logger.warning("Sub-task %s failed: %s", sub_task.sub_task_id, format_error_for_log(error))
        if error.retryable and sub_task.retry_count < self.max_retry_attempts:
            retry_count = sub_task.retry_count + 1
            self.repository.schedule_sub_task_retry(
                sub_task_id=sub_task.sub_task_id,
                error=error,
                retry_count=retry_count,
            )
            return RetryScheduled(
                sub_task_id=sub_task.sub_task_id,
                retry_count=retry_count,
                error=error,
            )

        self.repository.fail_sub_task(sub_task_id=sub_task.sub_task_id, error=error)
        return Failed(sub_task_id=sub_task.sub_task_id, error=error)

    def _style_name(self, style_id: str) -> str:
        if style_id == BASE_STYLE_ID:
            return BASE_STYLE_NAME
        style = self.repository.get_styles(style_ids=[style_id]).get(style_id)
        return style.name if style is not None else style_id


def _generation_params(
    *,
    sub_task: SubTaskView,
    generator: Generator,
    request: GenerationRequest,
    result: GenerationResult,
) -> dict[str, Any]:
    return {
        **request.to_snapshot(),
        "model_id": sub_task.model_id,
        "provider": generator.provider_id,
        "variant_id": sub_task.expanded_prompt.variant_id,
        "seed": result.seed,
        "inference_seconds": result.inference_seconds,
        "retry_count": sub_task.retry_count,
    }
