"""Use-case services for the studio control surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from image_studio.pipeline.fission import (
    BASE_STYLE_ID,
    BATCH_WARNING_THRESHOLD,
    FissionPlan,
    preview_fission,
)
from image_studio.pipeline.models import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_VARIANT_COUNT,
    MAX_BATCH_SIZE,
    AspectRatio,
    CancelResult,
    JobName,
    SubTaskView,
    TaskCreate,
    TaskDetails,
    TaskListFilter,
    TaskStatus,
    TaskView,
)
from image_studio.pipeline.repository import StudioRepository

logger = logging.getLogger(__name__)

MAX_VARIANT_COUNT = 10


@dataclass(slots=True)
class CreateTaskRequest:
    """High-level command to create a draft task."""

    subject: str
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    count_per_prompt: int = DEFAULT_BATCH_SIZE
    include_base_style: bool = True
    variant_count: int = DEFAULT_VARIANT_COUNT
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    web_search_enabled: bool = False


class StudioService:
    """Coordinates task lifecycle commands with the job queue."""

    def __init__(
        self,
        *,
        repository: StudioRepository,
        warning_threshold: int = BATCH_WARNING_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.warning_threshold = warning_threshold

    def create_task(self, command: CreateTaskRequest) -> TaskView:
        """Validate input and store a draft task."""

        if not 1 <= command.count_per_prompt <= MAX_BATCH_SIZE:
            raise ValueError(
                f"count_per_prompt must be between 1 and {MAX_BATCH_SIZE}, "
                f"got {command.count_per_prompt}.",
            )
        if not 1 <= command.variant_count <= MAX_VARIANT_COUNT:
            raise ValueError(
                f"variant_count must be between 1 and {MAX_VARIANT_COUNT}, "
                f"got {command.variant_count}.",
            )
        task = self.repository.create_task(
            TaskCreate(
                subject=command.subject.strip(),
                style_ids=_unique(command.style_ids),
                model_ids=_unique(command.model_ids),
                count_per_prompt=command.count_per_prompt,
                include_base_style=command.include_base_style,
                variant_count=command.variant_count,
                aspect_ratio=command.aspect_ratio,
                web_search_enabled=command.web_search_enabled,
            ),
        )
        logger.info("Task %s created as draft", task.task_id)
        return task

    def submit_task(self, task_id: str) -> TaskView:
        """Queue a draft task for prompt expansion."""

        task = self._require_task(task_id)
        if task.status != TaskStatus.DRAFT:
            raise RuntimeError(f"Only draft tasks can be submitted, got {task.status.value}.")
        if not task.subject:
            raise ValueError("Task subject must not be empty.")
        if not task.style_ids:
            raise ValueError("Select at least one style before submitting.")
        if not task.model_ids:
            raise ValueError("Select at least one model before submitting.")

        moved = self.repository.transition_task(
            task_id=task_id,
            from_statuses=(TaskStatus.DRAFT,),
            to_status=TaskStatus.QUEUED,
            event_type="submitted",
        )
        if not moved:
            raise RuntimeError(
                "Task state changed concurrently while submitting; "
                f"please retry command (task_id={task_id}).",
            )
        job = self.repository.enqueue_job(
            job_name=JobName.EXPAND_PROMPT,
            payload={"task_id": task_id},
        )
        logger.info("Task %s submitted, expansion job %s queued", task_id, job.job_id)
        return self._require_task(task_id)

    def cancel(self, task_id: str) -> CancelResult:
        result = self.repository.cancel_task(task_id=task_id)
        logger.info(
            "Task %s cancelled: %d pending sub-tasks cancelled, %d already resolved",
            task_id,
            result.cancelled_sub_tasks,
            result.resolved_sub_tasks,
        )
        return result

    def retry_sub_task(self, sub_task_id: str) -> SubTaskView:
        """Reset one failed sub-task and queue a new generation job for it."""

        sub_task = self.repository.retry_sub_task(sub_task_id=sub_task_id)
        self.repository.enqueue_job(
            job_name=JobName.GENERATE_IMAGE,
            payload={"sub_task_id": sub_task.sub_task_id, "task_id": sub_task.task_id},
        )
        return sub_task

    def retry_all_failed(self, task_id: str) -> list[str]:
        sub_task_ids = self.repository.retry_all_failed(task_id=task_id)
        for sub_task_id in sub_task_ids:
            self.repository.enqueue_job(
                job_name=JobName.GENERATE_IMAGE,
                payload={"sub_task_id": sub_task_id, "task_id": task_id},
            )
        logger.info("Task %s: %d failed sub-tasks re-queued", task_id, len(sub_task_ids))
        return sub_task_ids

    def list_tasks(self, task_filter: TaskListFilter | None = None) -> list[TaskView]:
        return self.repository.list_tasks(task_filter)

    def get_task_with_sub_tasks(self, task_id: str) -> TaskDetails | None:
        return self.repository.get_task_details(task_id=task_id)

    def preview(  # noqa: PLR0913
        self,
        *,
        variant_count: int,
        style_ids: tuple[str, ...],
        model_count: int,
        batch_size: int,
        include_base_style: bool = True,
    ) -> FissionPlan:
        return preview_task(
            variant_count=variant_count,
            style_ids=style_ids,
            model_count=model_count,
            batch_size=batch_size,
            include_base_style=include_base_style,
            warning_threshold=self.warning_threshold,
        )

    def _require_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return task


def _unique(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(value.strip() for value in values if value.strip()))


def preview_task(  # noqa: PLR0913
    *,
    variant_count: int,
    style_ids: tuple[str, ...],
    model_count: int,
    batch_size: int,
    include_base_style: bool = True,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionPlan:
    """Totals for a prospective task; an explicitly selected base style is not doubled."""

    selected = _unique(style_ids)
    return preview_fission(
        prompt_count=variant_count,
        style_count=len(selected),
        model_count=model_count,
        batch_size=batch_size,
        include_base_style=include_base_style and BASE_STYLE_ID not in selected,
        warning_threshold=warning_threshold,
    )
