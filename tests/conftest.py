"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from image_studio.pipeline.models import (
    AspectRatio,
    ExpandedPrompt,
    SubTaskCreate,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from image_studio.pipeline.repository import StudioRepository

_STUDIO_ENV_VARS = (
    "GOOGLE_AI_API_KEY",
    "FAL_KEY",
    "IMAGE_STUDIO_DB_PATH",
    "IMAGE_STUDIO_DEFAULT_ASPECT_RATIO",
    "IMAGE_STUDIO_MAX_RETRY_ATTEMPTS",
    "IMAGE_STUDIO_USE_ECHO_GENERATOR",
)

ProcessingTaskFactory = Callable[..., tuple[TaskView, list[str]]]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[StudioRepository]:
    repo = StudioRepository(tmp_path / "studio.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def studio_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Offline CLI environment: echo generator, fallback expansion, tmp dirs."""

    for name in _STUDIO_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("IMAGE_STUDIO_USE_ECHO_GENERATOR", "1")
    monkeypatch.setenv("IMAGE_STUDIO_STAGING_DIR", str(tmp_path / "generates"))
    monkeypatch.setenv("IMAGE_STUDIO_MEDIA_DIR", str(tmp_path / "media"))
    monkeypatch.setenv("IMAGE_STUDIO_WORKER_POLL_INTERVAL_SECONDS", "0")
    return tmp_path


@pytest.fixture()
def variant() -> ExpandedPrompt:
    return ExpandedPrompt(
        variant_id="variant-1",
        variant_name="Realistic",
        original_prompt="a cat",
        expanded_prompt="a cat on a windowsill, soft light",
        subject_slug="a-cat",
    )


@pytest.fixture()
def processing_task(
    repository: StudioRepository,
    variant: ExpandedPrompt,
) -> ProcessingTaskFactory:
    """Factory: a task moved to processing with N pending sub-tasks."""

    def _create(
        *,
        sub_tasks: int = 1,
        model_id: str = "echo",
        style_id: str = "base",
    ) -> tuple[TaskView, list[str]]:
        task = repository.create_task(
            TaskCreate(subject="a cat", style_ids=(style_id,), model_ids=(model_id,)),
        )
        repository.transition_task(
            task_id=task.task_id,
            from_statuses=(TaskStatus.DRAFT,),
            to_status=TaskStatus.PROCESSING,
            event_type="test_setup",
        )
        created = repository.create_sub_tasks(
            [
                SubTaskCreate(
                    task_id=task.task_id,
                    style_id=style_id,
                    model_id=model_id,
                    expanded_prompt=variant,
                    final_prompt=variant.expanded_prompt,
                    negative_prompt="",
                    batch_index=index,
                    aspect_ratio=AspectRatio.SQUARE,
                )
                for index in range(sub_tasks)
            ],
        )
        return task, [sub_task.sub_task_id for sub_task in created]

    return _create
