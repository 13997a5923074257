"""Prefect flow that processes one studio task end to end.

Expansion and the job-queue drain run as Prefect tasks; all state lives in the
studio repository, so the flow only sequences the steps and reports the result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from prefect import flow, task

from image_studio.pipeline.expansion import ExpansionSummary, PromptExpansionOrchestrator
from image_studio.pipeline.models import StatusCounts, TaskStatus
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.worker import StudioWorker, WorkerRunSummary

logger = logging.getLogger(__name__)

_EXPANDABLE_STATUSES = (TaskStatus.QUEUED, TaskStatus.EXPANDING)


@dataclass(slots=True)
class StudioRunResult:
    """Final state of a task after one flow run."""

    task_id: str
    status: TaskStatus
    progress: int
    counts: StatusCounts
    worker: WorkerRunSummary
    expansion_error: str | None = None


@task(name="expand_prompts")
def expand_prompts_step(
    *,
    expansion: PromptExpansionOrchestrator,
    task_id: str,
) -> ExpansionSummary:
    return expansion.expand_task(task_id)


@task(name="drain_jobs")
def drain_jobs_step(
    *,
    worker: StudioWorker,
    max_jobs: int | None,
    max_idle_polls: int,
) -> WorkerRunSummary:
    return worker.run_loop(max_jobs=max_jobs, max_idle_polls=max_idle_polls)


def collect_run_result(
    *,
    repository: StudioRepository,
    task_id: str,
    worker_summary: WorkerRunSummary,
    expansion_error: str | None = None,
) -> StudioRunResult:
    details = repository.get_task_details(task_id=task_id)
    if details is None:
        raise RuntimeError(f"Task not found: {task_id}")
    return StudioRunResult(
        task_id=task_id,
        status=details.task.status,
        progress=details.task.progress,
        counts=details.counts,
        worker=worker_summary,
        expansion_error=expansion_error,
    )


@flow(name="image_studio_task")
def studio_task_flow(  # noqa: PLR0913
    *,
    task_id: str,
    repository: StudioRepository,
    worker: StudioWorker,
    max_jobs: int | None = None,
    max_idle_polls: int = 1,
    on_progress: Callable[[str], None] | None = None,
) -> StudioRunResult:
    """Expand a queued task, then drain the job queue until it goes idle."""

    emit = on_progress or (lambda _: None)
    current = repository.get_task(task_id=task_id)
    if current is None:
        raise RuntimeError(f"Task not found: {task_id}")
    emit(f"Task {task_id} is {current.status.value}")

    expansion_error: str | None = None
    if current.status in _EXPANDABLE_STATUSES:
        expansion = expand_prompts_step(expansion=worker.expansion, task_id=task_id)
        expansion_error = expansion.error
        if expansion.error is not None:
            emit(f"Expansion failed: {expansion.error}")
            logger.error("Expansion failed for task %s: %s", task_id, expansion.error)
        else:
            emit(
                f"Expansion: {len(expansion.variants)} variants, "
                f"{len(expansion.sub_task_ids)} sub-tasks "
                f"({'LLM' if expansion.used_llm else 'fallback'})",
            )
            if expansion.warning:
                emit(f"Warning: {expansion.warning}")

    worker_summary = drain_jobs_step(
        worker=worker,
        max_jobs=max_jobs,
        max_idle_polls=max_idle_polls,
    )
    emit(
        f"Worker: processed={worker_summary.processed} succeeded={worker_summary.succeeded} "
        f"failed={worker_summary.failed} retried={worker_summary.retried}",
    )
    return collect_run_result(
        repository=repository,
        task_id=task_id,
        worker_summary=worker_summary,
        expansion_error=expansion_error,
    )
