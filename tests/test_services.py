from __future__ import annotations

import allure
import pytest

from image_studio.pipeline.error_normalizer import create_normalized_error
from image_studio.pipeline.models import (
    ErrorCategory,
    JobName,
    SubTaskStatus,
    TaskListFilter,
    TaskStatus,
)
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.services import (
    MAX_VARIANT_COUNT,
    CreateTaskRequest,
    StudioService,
    preview_task,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Studio Service"),
]


def _fail(repository: StudioRepository, sub_task_id: str) -> None:
    repository.mark_sub_task_processing(sub_task_id=sub_task_id, request_snapshot={})
    repository.fail_sub_task(
        sub_task_id=sub_task_id,
        error=create_normalized_error(ErrorCategory.INVALID_INPUT, "bad prompt"),
    )


def _request(**overrides) -> CreateTaskRequest:
    payload = {
        "subject": "  a cat  ",
        "style_ids": ("cyberpunk",),
        "model_ids": ("flux-pro",),
    }
    payload.update(overrides)
    return CreateTaskRequest(**payload)


def test_create_task_stores_clean_draft(repository: StudioRepository) -> None:
    service = StudioService(repository=repository)

    task = service.create_task(
        _request(style_ids=(" cyberpunk ", "cyberpunk", "", "anime"), model_ids=("flux-pro",)),
    )

    assert task.status == TaskStatus.DRAFT
    assert task.subject == "a cat"
    assert task.style_ids == ("cyberpunk", "anime")
    assert task.model_ids == ("flux-pro",)
    assert repository.list_jobs() == []


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"count_per_prompt": 0}, "count_per_prompt must be between 1 and 50"),
        ({"count_per_prompt": 51}, "count_per_prompt must be between 1 and 50"),
        ({"variant_count": 0}, "variant_count must be between 1 and 10"),
        ({"variant_count": MAX_VARIANT_COUNT + 1}, "variant_count must be between 1 and 10"),
    ],
)
def test_create_task_rejects_out_of_range_counts(
    repository: StudioRepository,
    overrides: dict[str, int],
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        StudioService(repository=repository).create_task(_request(**overrides))


def test_submit_task_queues_expansion_job(repository: StudioRepository) -> None:
    service = StudioService(repository=repository)
    task = service.create_task(_request())

    submitted = service.submit_task(task.task_id)

    assert submitted.status == TaskStatus.QUEUED
    (job,) = repository.list_jobs()
    assert job.job_name == JobName.EXPAND_PROMPT
    assert job.payload == {"task_id": task.task_id}

    with pytest.raises(RuntimeError, match="Only draft tasks can be submitted, got queued."):
        service.submit_task(task.task_id)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"subject": "   "}, "Task subject must not be empty."),
        ({"style_ids": ()}, "Select at least one style before submitting."),
        ({"model_ids": ()}, "Select at least one model before submitting."),
    ],
)
def test_submit_task_validates_draft(
    repository: StudioRepository,
    overrides: dict[str, object],
    message: str,
) -> None:
    service = StudioService(repository=repository)
    task = service.create_task(_request(**overrides))

    with pytest.raises(ValueError, match=message):
        service.submit_task(task.task_id)

    still_draft = repository.get_task(task_id=task.task_id)
    assert still_draft is not None
    assert still_draft.status == TaskStatus.DRAFT
    assert repository.list_jobs() == []


def test_submit_unknown_task(repository: StudioRepository) -> None:
    with pytest.raises(RuntimeError, match="Task not found: missing"):
        StudioService(repository=repository).submit_task("missing")


def test_retry_sub_task_reopens_task_and_enqueues_job(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (sub_task_id,) = processing_task()
    _fail(repository, sub_task_id)
    failed_task = repository.get_task(task_id=task.task_id)
    assert failed_task is not None
    assert failed_task.status == TaskStatus.FAILED

    retried = StudioService(repository=repository).retry_sub_task(sub_task_id)

    assert retried.status == SubTaskStatus.PENDING
    assert retried.retry_count == 0
    assert retried.error_log is None
    reopened = repository.get_task(task_id=task.task_id)
    assert reopened is not None
    assert reopened.status == TaskStatus.PROCESSING
    (job,) = repository.list_jobs()
    assert job.job_name == JobName.GENERATE_IMAGE
    assert job.payload == {"sub_task_id": sub_task_id, "task_id": task.task_id}


def test_retry_all_failed_enqueues_one_job_per_sub_task(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, sub_task_ids = processing_task(sub_tasks=3)
    _fail(repository, sub_task_ids[0])
    _fail(repository, sub_task_ids[2])
    repository.mark_sub_task_processing(sub_task_id=sub_task_ids[1], request_snapshot={})
    repository.complete_sub_task_success(
        sub_task_id=sub_task_ids[1],
        asset_id="asset-1",
        seed=1,
        response_snapshot={},
    )

    retried = StudioService(repository=repository).retry_all_failed(task.task_id)

    assert sorted(retried) == sorted([sub_task_ids[0], sub_task_ids[2]])
    jobs = repository.list_jobs()
    assert {job.payload["sub_task_id"] for job in jobs} == set(retried)


def test_cancel_reports_counts(repository: StudioRepository, processing_task) -> None:
    task, sub_task_ids = processing_task(sub_tasks=2)
    repository.mark_sub_task_processing(sub_task_id=sub_task_ids[0], request_snapshot={})
    repository.complete_sub_task_success(
        sub_task_id=sub_task_ids[0],
        asset_id="asset-1",
        seed=None,
        response_snapshot={},
    )

    result = StudioService(repository=repository).cancel(task.task_id)

    assert result.cancelled_sub_tasks == 1
    assert result.resolved_sub_tasks == 1
    cancelled = repository.get_task(task_id=task.task_id)
    assert cancelled is not None
    assert cancelled.status == TaskStatus.CANCELLED


def test_list_and_details_delegate_to_repository(repository: StudioRepository) -> None:
    service = StudioService(repository=repository)
    first = service.create_task(_request(subject="a cat"))
    service.create_task(_request(subject="a dog"))

    found = service.list_tasks(TaskListFilter(search="cat"))
    details = service.get_task_with_sub_tasks(first.task_id)

    assert [task.task_id for task in found] == [first.task_id]
    assert details is not None
    assert details.task.task_id == first.task_id
    assert details.counts.total == 0
    assert service.get_task_with_sub_tasks("missing") is None


def test_preview_does_not_double_count_explicit_base_style() -> None:
    plan = preview_task(
        variant_count=3,
        style_ids=("base", "cyberpunk", "cyberpunk"),
        model_count=2,
        batch_size=4,
    )

    assert plan.breakdown.style_count == 2
    assert plan.total == 3 * 2 * 2 * 4
    assert plan.warning is None


def test_service_preview_uses_warning_threshold(repository: StudioRepository) -> None:
    service = StudioService(repository=repository, warning_threshold=10)

    plan = service.preview(variant_count=3, style_ids=("cyberpunk",), model_count=1, batch_size=2)

    assert plan.total == 12
    assert plan.warning is not None
