from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from image_studio.pipeline.error_normalizer import create_normalized_error
from image_studio.pipeline.models import (
    AssetWrite,
    ErrorCategory,
    JobName,
    JobStatus,
    StyleTemplate,
    SubTaskStatus,
    TaskCreate,
    TaskListFilter,
    TaskStatus,
)
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.style_merge import InvalidStyleTemplateError
from image_studio.storage.common import utc_now

pytestmark = [
    allure.epic("Task Decomposition"),
    allure.feature("Persistence & State Machine"),
]


def _run_sub_task(repository: StudioRepository, sub_task_id: str) -> None:
    assert repository.mark_sub_task_processing(
        sub_task_id=sub_task_id,
        request_snapshot={"prompt": "a cat"},
    )


def test_create_task_round_trips_configuration(repository: StudioRepository) -> None:
    task = repository.create_task(
        TaskCreate(
            subject="a lighthouse",
            style_ids=("cinematic", "watercolor"),
            model_ids=("flux-pro",),
            count_per_prompt=2,
            include_base_style=False,
            variant_count=4,
            web_search_enabled=True,
        ),
    )

    loaded = repository.get_task(task_id=task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.DRAFT
    assert loaded.progress == 0
    assert loaded.style_ids == ("cinematic", "watercolor")
    assert loaded.model_ids == ("flux-pro",)
    assert loaded.count_per_prompt == 2
    assert loaded.include_base_style is False
    assert loaded.variant_count == 4
    assert loaded.web_search_enabled is True
    assert loaded.user_id == "default_user"

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_transition_task_is_conditional(repository: StudioRepository) -> None:
    task = repository.create_task(TaskCreate(subject="x", style_ids=(), model_ids=("echo",)))

    assert not repository.transition_task(
        task_id=task.task_id,
        from_statuses=(TaskStatus.QUEUED,),
        to_status=TaskStatus.EXPANDING,
        event_type="expansion_started",
    )
    assert repository.transition_task(
        task_id=task.task_id,
        from_statuses=(TaskStatus.DRAFT,),
        to_status=TaskStatus.QUEUED,
        event_type="submitted",
    )
    loaded = repository.get_task(task_id=task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.QUEUED

    with pytest.raises(RuntimeError, match="Task not found"):
        repository.transition_task(
            task_id="missing",
            from_statuses=(TaskStatus.DRAFT,),
            to_status=TaskStatus.QUEUED,
            event_type="submitted",
        )


def test_sub_task_success_updates_progress_and_status(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (first, second) = processing_task(sub_tasks=2)

    _run_sub_task(repository, first)
    assert repository.complete_sub_task_success(
        sub_task_id=first,
        asset_id="asset-1",
        seed=11,
        response_snapshot={"seed": 11},
    )
    halfway = repository.get_task(task_id=task.task_id)
    assert halfway is not None
    assert halfway.progress == 50
    assert halfway.status == TaskStatus.PROCESSING

    _run_sub_task(repository, second)
    repository.fail_sub_task(
        sub_task_id=second,
        error=create_normalized_error(ErrorCategory.CONTENT_FILTERED, "blocked"),
    )
    done = repository.get_task_details(task_id=task.task_id)
    assert done is not None
    assert done.task.progress == 100
    assert done.task.status == TaskStatus.PARTIAL_FAILED
    assert done.counts.success == 1
    assert done.counts.failed == 1

    succeeded = repository.get_sub_task(sub_task_id=first)
    assert succeeded is not None
    assert succeeded.asset_id == "asset-1"
    assert succeeded.seed == 11
    assert succeeded.completed_at is not None
    failed = repository.get_sub_task(sub_task_id=second)
    assert failed is not None
    assert failed.error_category == ErrorCategory.CONTENT_FILTERED
    assert failed.error_log == "[CONTENT_FILTERED] blocked (not retryable)"
    assert "status_derived" in [event.event_type for event in done.events]


def test_success_requires_processing_state(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (sub_task_id,) = processing_task()

    assert not repository.complete_sub_task_success(
        sub_task_id=sub_task_id,
        asset_id="asset-1",
        seed=None,
        response_snapshot={},
    )
    sub_task = repository.get_sub_task(sub_task_id=sub_task_id)
    assert sub_task is not None
    assert sub_task.status == SubTaskStatus.PENDING


def test_retry_scheduling_returns_sub_task_to_pending(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (sub_task_id,) = processing_task()
    _run_sub_task(repository, sub_task_id)

    assert repository.schedule_sub_task_retry(
        sub_task_id=sub_task_id,
        error=create_normalized_error(ErrorCategory.RATE_LIMITED, "slow down"),
        retry_count=1,
    )

    sub_task = repository.get_sub_task(sub_task_id=sub_task_id)
    assert sub_task is not None
    assert sub_task.status == SubTaskStatus.PENDING
    assert sub_task.retry_count == 1
    assert sub_task.error_category == ErrorCategory.RATE_LIMITED
    assert sub_task.completed_at is None


def test_request_snapshot_is_sanitized(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (sub_task_id,) = processing_task()

    repository.mark_sub_task_processing(
        sub_task_id=sub_task_id,
        request_snapshot={"prompt": "a cat", "api_key": "secret"},
    )

    sub_task = repository.get_sub_task(sub_task_id=sub_task_id)
    assert sub_task is not None
    assert sub_task.request_snapshot == {"prompt": "a cat", "api_key": "[redacted]"}
    assert sub_task.started_at is not None


def test_response_snapshot_is_only_recorded_while_processing(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (sub_task_id,) = processing_task()
    _run_sub_task(repository, sub_task_id)

    assert repository.record_response_snapshot(
        sub_task_id=sub_task_id,
        snapshot={"images": 1},
    )
    repository.fail_sub_task(
        sub_task_id=sub_task_id,
        error=create_normalized_error(ErrorCategory.CONTENT_FILTERED, "blocked"),
    )
    assert not repository.record_response_snapshot(
        sub_task_id=sub_task_id,
        snapshot={"images": 2},
    )

    sub_task = repository.get_sub_task(sub_task_id=sub_task_id)
    assert sub_task is not None
    assert sub_task.status == SubTaskStatus.FAILED
    assert sub_task.response_snapshot == {"images": 1}


def test_cancel_task_cancels_pending_and_keeps_resolved(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (done, in_flight, waiting) = processing_task(sub_tasks=3)
    _run_sub_task(repository, done)
    repository.complete_sub_task_success(
        sub_task_id=done,
        asset_id="asset-1",
        seed=None,
        response_snapshot={},
    )
    _run_sub_task(repository, in_flight)

    result = repository.cancel_task(task_id=task.task_id)

    assert result.cancelled_sub_tasks == 1
    assert result.resolved_sub_tasks == 1
    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert details.task.status == TaskStatus.CANCELLED
    statuses = {sub_task.sub_task_id: sub_task.status for sub_task in details.sub_tasks}
    assert statuses == {
        done: SubTaskStatus.SUCCESS,
        in_flight: SubTaskStatus.PROCESSING,
        waiting: SubTaskStatus.CANCELLED,
    }

    # The in-flight sub-task still finishes, but the parent stays cancelled.
    repository.complete_sub_task_success(
        sub_task_id=in_flight,
        asset_id="asset-2",
        seed=None,
        response_snapshot={},
    )
    after = repository.get_task(task_id=task.task_id)
    assert after is not None
    assert after.status == TaskStatus.CANCELLED
    assert after.progress == 67


def test_cancel_rejects_draft_and_terminal_tasks(repository: StudioRepository) -> None:
    task = repository.create_task(TaskCreate(subject="x", style_ids=(), model_ids=("echo",)))

    with pytest.raises(RuntimeError, match="cannot be cancelled"):
        repository.cancel_task(task_id=task.task_id)
    with pytest.raises(RuntimeError, match="Task not found"):
        repository.cancel_task(task_id="missing")


def test_cancel_sub_task_skips_terminal_sub_tasks(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (pending, finished) = processing_task(sub_tasks=2)
    _run_sub_task(repository, finished)
    repository.complete_sub_task_success(
        sub_task_id=finished,
        asset_id="asset-1",
        seed=None,
        response_snapshot={},
    )

    assert repository.cancel_sub_task(sub_task_id=pending, reason="task cancelled")
    assert not repository.cancel_sub_task(sub_task_id=finished, reason="task cancelled")
    assert not repository.cancel_sub_task(sub_task_id="missing", reason="task cancelled")


def test_manual_retry_reopens_terminal_task(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (sub_task_id,) = processing_task()
    _run_sub_task(repository, sub_task_id)
    repository.fail_sub_task(
        sub_task_id=sub_task_id,
        error=create_normalized_error(ErrorCategory.INVALID_INPUT, "bad prompt"),
    )
    failed_task = repository.get_task(task_id=task.task_id)
    assert failed_task is not None
    assert failed_task.status == TaskStatus.FAILED

    retried = repository.retry_sub_task(sub_task_id=sub_task_id)

    assert retried.status == SubTaskStatus.PENDING
    assert retried.retry_count == 0
    assert retried.error_log is None
    reopened = repository.get_task(task_id=task.task_id)
    assert reopened is not None
    assert reopened.status == TaskStatus.PROCESSING
    assert reopened.progress == 0

    with pytest.raises(RuntimeError, match="Only failed sub-tasks"):
        repository.retry_sub_task(sub_task_id=sub_task_id)


def test_retry_all_failed_resets_every_failed_sub_task(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, sub_task_ids = processing_task(sub_tasks=2)
    for sub_task_id in sub_task_ids:
        _run_sub_task(repository, sub_task_id)
        repository.fail_sub_task(
            sub_task_id=sub_task_id,
            error=create_normalized_error(ErrorCategory.PROVIDER_ERROR, "down"),
        )

    assert repository.retry_all_failed(task_id=task.task_id) == sub_task_ids
    assert [
        sub_task.status for sub_task in repository.list_sub_tasks(task_id=task.task_id)
    ] == [SubTaskStatus.PENDING, SubTaskStatus.PENDING]

    with pytest.raises(RuntimeError, match="while task is processing"):
        repository.retry_all_failed(task_id=task.task_id)


def test_retry_all_failed_requires_failed_sub_tasks(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (sub_task_id,) = processing_task()
    _run_sub_task(repository, sub_task_id)
    repository.complete_sub_task_success(
        sub_task_id=sub_task_id,
        asset_id="asset-1",
        seed=None,
        response_snapshot={},
    )

    with pytest.raises(RuntimeError, match="No failed sub-tasks"):
        repository.retry_all_failed(task_id=task.task_id)


def test_advisory_lock_is_exclusive_until_expiry(
    repository: StudioRepository,
    processing_task,
) -> None:
    _, (sub_task_id,) = processing_task()
    now = utc_now()
    ttl = timedelta(seconds=60)

    assert repository.try_acquire_sub_task(
        sub_task_id=sub_task_id,
        worker_id="worker-a",
        ttl=ttl,
        now=now,
    )
    assert not repository.try_acquire_sub_task(
        sub_task_id=sub_task_id,
        worker_id="worker-b",
        ttl=ttl,
        now=now,
    )
    assert repository.try_acquire_sub_task(
        sub_task_id=sub_task_id,
        worker_id="worker-a",
        ttl=ttl,
        now=now,
    )
    assert repository.try_acquire_sub_task(
        sub_task_id=sub_task_id,
        worker_id="worker-b",
        ttl=ttl,
        now=now + timedelta(seconds=61),
    )

    assert not repository.release_sub_task_lock(sub_task_id=sub_task_id, worker_id="worker-a")
    assert repository.release_sub_task_lock(sub_task_id=sub_task_id, worker_id="worker-b")
    sub_task = repository.get_sub_task(sub_task_id=sub_task_id)
    assert sub_task is not None
    assert sub_task.locked_by is None


def test_style_upsert_and_lookup(repository: StudioRepository) -> None:
    style = StyleTemplate(
        style_id="cinematic",
        name="Cinematic",
        positive_prompt="cinematic still of {prompt}",
        negative_prompt="blurry",
    )

    assert repository.upsert_style(style) is True
    style.name = "Cinematic Film"
    assert repository.upsert_style(style) is False

    stored = repository.get_styles(style_ids=["cinematic", "missing"])
    assert list(stored) == ["cinematic"]
    assert stored["cinematic"].name == "Cinematic Film"
    assert [item.style_id for item in repository.list_styles()] == ["cinematic"]
    assert repository.get_styles(style_ids=[]) == {}


def test_style_upsert_rejects_invalid_templates(repository: StudioRepository) -> None:
    with pytest.raises(InvalidStyleTemplateError):
        repository.upsert_style(
            StyleTemplate(style_id="plain", name="Plain", positive_prompt="no placeholder"),
        )
    assert repository.list_styles() == []


def test_assets_are_listed_per_task(
    repository: StudioRepository,
    processing_task,
) -> None:
    task, (sub_task_id,) = processing_task()

    asset = repository.create_asset(
        AssetWrite(
            filename="image_1_a-cat_base_echo_01.png",
            path="/media/image_1_a-cat_base_echo_01.png",
            mime_type="image/png",
            size_bytes=68,
            alt_text="AI-generated image",
            task_id=task.task_id,
            sub_task_id=sub_task_id,
            subject_slug="a-cat",
            style_id="base",
            model_id="echo",
            batch_index=0,
            source_url="data-url",
            generation_params={"seed": 3},
        ),
    )

    assets = repository.list_assets(task_id=task.task_id)
    assert [item.asset_id for item in assets] == [asset.asset_id]
    assert assets[0].generation_params == {"seed": 3}
    assert repository.list_assets(task_id="other") == []


def test_job_queue_claims_in_order_and_respects_run_after(
    repository: StudioRepository,
) -> None:
    later = repository.enqueue_job(
        job_name=JobName.GENERATE_IMAGE,
        payload={"sub_task_id": "s-2"},
        run_after=utc_now() + timedelta(hours=1),
    )
    ready = repository.enqueue_job(job_name=JobName.EXPAND_PROMPT, payload={"task_id": "t-1"})

    claimed = repository.claim_next_ready_job(worker_id="worker-a")
    assert claimed is not None
    assert claimed.job_id == ready.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "worker-a"
    assert claimed.payload == {"task_id": "t-1"}

    assert repository.claim_next_ready_job(worker_id="worker-b") is None
    assert repository.complete_job(job_id=ready.job_id)
    assert not repository.complete_job(job_id=ready.job_id)
    assert [job.job_id for job in repository.list_jobs(status=JobStatus.QUEUED)] == [
        later.job_id,
    ]


def test_requeue_and_stale_recovery(repository: StudioRepository) -> None:
    job = repository.enqueue_job(job_name=JobName.GENERATE_IMAGE, payload={"sub_task_id": "s"})
    claimed = repository.claim_next_ready_job(worker_id="worker-a")
    assert claimed is not None

    assert repository.requeue_job(
        job_id=job.job_id,
        run_after=utc_now() - timedelta(seconds=1),
        error_summary="[RATE_LIMITED] slow down (retryable)",
    )
    again = repository.claim_next_ready_job(worker_id="worker-b")
    assert again is not None
    assert again.attempt == 2
    assert again.error_summary == "[RATE_LIMITED] slow down (retryable)"

    assert repository.recover_stale_running_jobs(stale_after=timedelta(hours=1)) == 0
    assert repository.recover_stale_running_jobs(stale_after=timedelta(seconds=-1)) == 1
    assert [item.status for item in repository.list_jobs()] == [JobStatus.QUEUED]


def test_fail_job_sanitizes_error_summary(repository: StudioRepository) -> None:
    job = repository.enqueue_job(job_name=JobName.EXPAND_PROMPT, payload={"task_id": "t"})
    repository.claim_next_ready_job(worker_id="worker-a")

    assert repository.fail_job(job_id=job.job_id, error_summary="mail ops@example.com")

    (failed,) = repository.list_jobs(status=JobStatus.FAILED)
    assert failed.error_summary == "mail [redacted-email]"


def test_list_tasks_filters(repository: StudioRepository) -> None:
    first = repository.create_task(
        TaskCreate(subject="Red fox", style_ids=(), model_ids=("echo",)),
    )
    second = repository.create_task(
        TaskCreate(subject="Blue whale", style_ids=(), model_ids=("echo",)),
    )
    repository.transition_task(
        task_id=second.task_id,
        from_statuses=(TaskStatus.DRAFT,),
        to_status=TaskStatus.QUEUED,
        event_type="submitted",
    )

    newest = repository.list_tasks()
    assert [task.task_id for task in newest] == [second.task_id, first.task_id]
    oldest = repository.list_tasks(TaskListFilter(sort="oldest"))
    assert [task.task_id for task in oldest] == [first.task_id, second.task_id]

    queued = repository.list_tasks(TaskListFilter(statuses=(TaskStatus.QUEUED,)))
    assert [task.task_id for task in queued] == [second.task_id]
    searched = repository.list_tasks(TaskListFilter(search="fox"))
    assert [task.task_id for task in searched] == [first.task_id]
    paged = repository.list_tasks(TaskListFilter(limit=1, offset=1))
    assert [task.task_id for task in paged] == [first.task_id]

    today = repository.list_tasks(TaskListFilter(date_range="today"))
    assert len(today) == 2
    future = repository.list_tasks(
        TaskListFilter(date_range="7days"),
        now=utc_now() + timedelta(days=30),
    )
    assert future == []
    custom = repository.list_tasks(
        TaskListFilter(date_range="custom", date_to=utc_now() - timedelta(days=1)),
    )
    assert custom == []

    with pytest.raises(ValueError, match="Unsupported date range"):
        repository.list_tasks(TaskListFilter(date_range="yesterday"))


def test_tasks_are_scoped_to_the_owning_user(
    repository: StudioRepository,
    tmp_path,
) -> None:
    task = repository.create_task(TaskCreate(subject="mine", style_ids=(), model_ids=("echo",)))
    other = StudioRepository(tmp_path / "studio.db", user_id="someone_else")
    other.init_schema()

    assert other.get_task(task_id=task.task_id) is None
    assert other.list_tasks() == []
    other.close()
