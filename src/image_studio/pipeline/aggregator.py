"""Derive parent task progress and status from the full sub-task set."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from image_studio.pipeline.models import SubTaskStatus, TaskStatus


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    """Recomputed progress for one parent task."""

    total: int
    completed: int
    failed: int
    succeeded: int
    progress: int
    status: TaskStatus


def aggregate_progress(statuses: Iterable[SubTaskStatus]) -> ProgressSnapshot:
    """Recompute progress over every sub-task of a task.

    ``completed`` counts success and failed only; cancelled, pending and
    processing sub-tasks are unresolved.
    """

    total = 0
    succeeded = 0
    failed = 0
    for status in statuses:
        total += 1
        if status == SubTaskStatus.SUCCESS:
            succeeded += 1
        elif status == SubTaskStatus.FAILED:
            failed += 1
    completed = succeeded + failed

    progress = _round_half_up(completed * 100, total) if total else 0
    if completed == 0:
        task_status = TaskStatus.PROCESSING
    elif completed == total:
        if failed == total:
            task_status = TaskStatus.FAILED
        elif failed > 0:
            task_status = TaskStatus.PARTIAL_FAILED
        else:
            task_status = TaskStatus.COMPLETED
    else:
        task_status = TaskStatus.PROCESSING

    return ProgressSnapshot(
        total=total,
        completed=completed,
        failed=failed,
        succeeded=succeeded,
        progress=progress,
        status=task_status,
    )


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)
