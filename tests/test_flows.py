from __future__ import annotations

from pathlib import Path

import allure
import pytest

from image_studio.assets.storage import ImageStorage, MediaLibrary
from image_studio.flows import (
    collect_run_result,
    drain_jobs_step,
    expand_prompts_step,
)
from image_studio.generators import EchoGenerator, GeneratorRegistry
from image_studio.pipeline.executor import SubTaskExecutor
from image_studio.pipeline.expansion import PromptExpansionOrchestrator
from image_studio.pipeline.models import TaskCreate, TaskStatus
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.worker import StudioWorker, WorkerRunSummary

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Prefect Flow"),
]


def _worker(repository: StudioRepository, tmp_path: Path) -> StudioWorker:
    return StudioWorker(
        repository=repository,
        executor=SubTaskExecutor(
            repository=repository,
            registry=GeneratorRegistry([EchoGenerator()]),
            storage=ImageStorage(staging_dir=tmp_path / "generates"),
            media=MediaLibrary(tmp_path / "media"),
        ),
        expansion=PromptExpansionOrchestrator(repository=repository),
        worker_id="flow-worker",
        poll_interval_seconds=0,
    )


def test_flow_steps_expand_drain_and_collect(repository: StudioRepository, tmp_path: Path) -> None:
    task = repository.create_task(
        TaskCreate(subject="a lighthouse", style_ids=(), model_ids=("echo",), variant_count=2),
    )
    repository.transition_task(
        task_id=task.task_id,
        from_statuses=(TaskStatus.DRAFT,),
        to_status=TaskStatus.QUEUED,
        event_type="submitted",
    )
    worker = _worker(repository, tmp_path)

    expansion = expand_prompts_step.fn(expansion=worker.expansion, task_id=task.task_id)
    summary = drain_jobs_step.fn(worker=worker, max_jobs=None, max_idle_polls=1)
    result = collect_run_result(
        repository=repository,
        task_id=task.task_id,
        worker_summary=summary,
        expansion_error=expansion.error,
    )

    assert expansion.ok
    assert len(expansion.sub_task_ids) == 2
    assert summary.succeeded == 2
    assert result.status == TaskStatus.COMPLETED
    assert result.progress == 100
    assert result.counts.success == 2
    assert result.counts.total == 2
    assert result.expansion_error is None
    assert result.worker is summary


def test_drain_respects_max_jobs(repository: StudioRepository, tmp_path: Path) -> None:
    task = repository.create_task(
        TaskCreate(subject="a lighthouse", style_ids=(), model_ids=("echo",), variant_count=3),
    )
    repository.transition_task(
        task_id=task.task_id,
        from_statuses=(TaskStatus.DRAFT,),
        to_status=TaskStatus.QUEUED,
        event_type="submitted",
    )
    worker = _worker(repository, tmp_path)
    expand_prompts_step.fn(expansion=worker.expansion, task_id=task.task_id)

    summary = drain_jobs_step.fn(worker=worker, max_jobs=1, max_idle_polls=1)
    result = collect_run_result(repository=repository, task_id=task.task_id, worker_summary=summary)

    assert summary.processed == 1
    assert result.status == TaskStatus.PROCESSING
    assert result.counts.success == 1
    assert result.counts.pending == 2
    assert result.progress == 33


def test_collect_run_result_requires_task(repository: StudioRepository) -> None:
    with pytest.raises(RuntimeError, match="Task not found: missing"):
        collect_run_result(
            repository=repository,
            task_id="missing",
            worker_summary=WorkerRunSummary(),
        )
