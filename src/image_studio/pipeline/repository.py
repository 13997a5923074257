"""Persistence facade for studio tasks, sub-tasks, styles, assets and jobs."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from image_studio.pipeline.aggregator import ProgressSnapshot, aggregate_progress
from image_studio.pipeline.error_normalizer import NormalizedError, format_error_for_log
from image_studio.pipeline.models import (
    AspectRatio,
    AssetView,
    AssetWrite,
    CancelResult,
    ErrorCategory,
    ExpandedPrompt,
    JobName,
    JobStatus,
    JobView,
    StatusCounts,
    StyleTemplate,
    SubTaskCreate,
    SubTaskStatus,
    SubTaskView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskListFilter,
    TaskStatus,
    TaskView,
)
from image_studio.pipeline.style_merge import ensure_valid_style_template
from image_studio.sanitization import sanitize_preview, sanitize_snapshot
from image_studio.storage.alembic_runner import upgrade_head
from image_studio.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from image_studio.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AppUser,
    StudioAsset,
    StudioJob,
    StudioSubTask,
    StudioTask,
    StudioTaskEvent,
    StyleTemplateRow,
)

CANCELLABLE_TASK_STATUSES = frozenset(
    {TaskStatus.QUEUED, TaskStatus.EXPANDING, TaskStatus.PROCESSING},
)
RETRY_BLOCKED_TASK_STATUSES = frozenset(
    {TaskStatus.PROCESSING, TaskStatus.EXPANDING, TaskStatus.CANCELLED},
)
_STATUS_DERIVED_TASK_STATUSES = frozenset(
    {
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.PARTIAL_FAILED,
        TaskStatus.FAILED,
    },
)
_REOPENABLE_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.PARTIAL_FAILED, TaskStatus.FAILED},
)
DATE_RANGE_DAYS = {"7days": 7, "30days": 30}
_SUB_TASK_ORDER = (col(StudioSubTask.created_at).asc(), col(StudioSubTask.sub_task_id).asc())


class StudioRepository:
    """Studio persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        self._ensure_actor_context()

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a draft task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = StudioTask(
                task_id=task_id,
                user_id=self.user_id,
                subject=payload.subject,
                style_ids_json=json.dumps(list(payload.style_ids), ensure_ascii=False),
                model_ids_json=json.dumps(list(payload.model_ids), ensure_ascii=False),
                count_per_prompt=payload.count_per_prompt,
                include_base_style=payload.include_base_style,
                variant_count=payload.variant_count,
                aspect_ratio=payload.aspect_ratio.value,
                web_search_enabled=payload.web_search_enabled,
                status=TaskStatus.DRAFT.value,
                progress=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.DRAFT,
                details={
                    "style_ids": list(payload.style_ids),
                    "model_ids": list(payload.model_ids),
                    "count_per_prompt": payload.count_per_prompt,
                    "include_base_style": payload.include_base_style,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = self._find_task_row(session=session, task_id=task_id)
            return _to_task_view(row) if row is not None else None

    def transition_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        event_type: str,
        error_summary: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Conditionally move a task between statuses.

        Returns False when the task is not in one of ``from_statuses``.
        """

        allowed = tuple(from_statuses)
        now = utc_now()
        with Session(self.engine) as session:
            row = self._find_task_row(session=session, task_id=task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous not in allowed:
                return False

            result = session.exec(
                sa_update(StudioTask)
                .where(
                    col(StudioTask.task_id) == task_id,
                    col(StudioTask.user_id) == self.user_id,
                    col(StudioTask.status) == previous.value,
                )
                .values(
                    status=to_status.value,
                    error_summary=error_summary,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=to_status,
                details={
                    **(details or {}),
                    **({"error_summary": error_summary} if error_summary else {}),
                },
            )
            session.commit()
            return True

    def set_expanded_prompts(
        self,
        *,
        task_id: str,
        expanded_prompts: list[ExpandedPrompt],
        source: str,
    ) -> None:
        """Persist prompt variants on the task."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row_for_update(session=session, task_id=task_id)
            row.expanded_prompts_json = json.dumps(
                [prompt.to_dict() for prompt in expanded_prompts],
                ensure_ascii=False,
            )
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="prompts_expanded",
                status_from=None,
                status_to=None,
                details={"variant_count": len(expanded_prompts), "source": source},
            )
            session.commit()

    def cancel_task(self, *, task_id: str) -> CancelResult:
        """Cancel a task and every pending sub-task; in-flight sub-tasks run to completion."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._find_task_row(session=session, task_id=task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")

            previous = TaskStatus(row.status)
            if previous not in CANCELLABLE_TASK_STATUSES:
                raise RuntimeError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(StudioTask)
                .where(
                    col(StudioTask.task_id) == task_id,
                    col(StudioTask.user_id) == self.user_id,
                    col(StudioTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )

            cancelled = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.task_id) == task_id,
                    col(StudioSubTask.status) == SubTaskStatus.PENDING.value,
                )
                .values(
                    status=SubTaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            ).rowcount
            resolved = len(
                session.exec(
                    select(StudioSubTask.sub_task_id).where(
                        StudioSubTask.task_id == task_id,
                        col(StudioSubTask.status).in_(
                            [SubTaskStatus.SUCCESS.value, SubTaskStatus.FAILED.value],
                        ),
                    ),
                ).all(),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={"cancelled_sub_tasks": cancelled, "resolved_sub_tasks": resolved},
            )
            self._refresh_task_progress(session=session, task_id=task_id)
            session.commit()
        return CancelResult(
            task_id=task_id,
            cancelled_sub_tasks=cancelled,
            resolved_sub_tasks=resolved,
        )

    def list_tasks(
        self,
        task_filter: TaskListFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> list[TaskView]:
        """List tasks matching status, date range and subject filters."""

        task_filter = task_filter or TaskListFilter()
        with Session(self.engine) as session:
            statement = select(StudioTask).where(StudioTask.user_id == self.user_id)
            if task_filter.statuses:
                statement = statement.where(
                    col(StudioTask.status).in_([status.value for status in task_filter.statuses]),
                )
            date_from, date_to = _resolve_date_range(task_filter, now=now or utc_now())
            if date_from is not None:
                statement = statement.where(StudioTask.created_at >= to_db_datetime(date_from))
            if date_to is not None:
                statement = statement.where(StudioTask.created_at <= to_db_datetime(date_to))
            if task_filter.search and task_filter.search.strip():
                statement = statement.where(
                    col(StudioTask.subject).ilike(f"%{task_filter.search.strip()}%"),
                )
            order = (
                col(StudioTask.created_at).asc()
                if task_filter.sort == "oldest"
                else col(StudioTask.created_at).desc()
            )
            statement = (
                statement.order_by(order)
                .offset(max(task_filter.offset, 0))
                .limit(max(task_filter.limit, 1))
            )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with sub-tasks, status counts and event stream."""

        with Session(self.engine) as session:
            task = self._find_task_row(session=session, task_id=task_id)
            if task is None:
                return None
            sub_task_rows = session.exec(
                select(StudioSubTask)
                .where(StudioSubTask.task_id == task_id)
                .order_by(*_SUB_TASK_ORDER),
            ).all()
            event_rows = session.exec(
                select(StudioTaskEvent)
                .where(StudioTaskEvent.task_id == task_id)
                .order_by(col(StudioTaskEvent.created_at).asc(), col(StudioTaskEvent.id).asc()),
            ).all()

        sub_tasks = [_to_sub_task_view(row) for row in sub_task_rows]
        return TaskDetails(
            task=_to_task_view(task),
            sub_tasks=sub_tasks,
            counts=StatusCounts.from_statuses([sub_task.status for sub_task in sub_tasks]),
            events=[_to_event_view(row) for row in event_rows],
        )

    def refresh_task_progress(self, *, task_id: str) -> ProgressSnapshot:
        """Recompute and store parent progress from the full sub-task set."""

        with Session(self.engine) as session:
            snapshot = self._refresh_task_progress(session=session, task_id=task_id)
            session.commit()
            return snapshot

    # Sub-tasks

    def create_sub_tasks(
        self,
        items: list[SubTaskCreate],
        *,
        enqueue_jobs: bool = False,
    ) -> list[SubTaskView]:
        """Insert pending sub-tasks in one transaction.

        With ``enqueue_jobs`` each sub-task gets its generate job in the same commit,
        so a crash never leaves pending sub-tasks without work scheduled.
        """

        if not items:
            return []
        now = utc_now()
        rows: list[StudioSubTask] = []
        with Session(self.engine) as session:
            for item in items:
                row = StudioSubTask(
                    sub_task_id=str(uuid4()),
                    task_id=item.task_id,
                    status=SubTaskStatus.PENDING.value,
                    style_id=item.style_id,
                    model_id=item.model_id,
                    variant_id=item.expanded_prompt.variant_id,
                    expanded_prompt_json=json.dumps(
                        item.expanded_prompt.to_dict(),
                        ensure_ascii=False,
                    ),
                    final_prompt=item.final_prompt,
                    negative_prompt=item.negative_prompt,
                    batch_index=item.batch_index,
                    aspect_ratio=item.aspect_ratio.value,
                    seed=item.seed,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                rows.append(row)
                if enqueue_jobs:
                    session.add(
                        _new_job_row(
                            job_name=JobName.GENERATE_IMAGE,
                            payload={"sub_task_id": row.sub_task_id, "task_id": item.task_id},
                            run_after=now,
                            now=now,
                        ),
                    )
            task_ids = sorted({item.task_id for item in items})
            for task_id in task_ids:
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="sub_tasks_created",
                    status_from=None,
                    status_to=None,
                    details={"count": sum(1 for item in items if item.task_id == task_id)},
                )
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_sub_task_view(row) for row in rows]

    def get_sub_task(self, *, sub_task_id: str) -> SubTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(StudioSubTask).where(StudioSubTask.sub_task_id == sub_task_id),
            ).one_or_none()
            return _to_sub_task_view(row) if row is not None else None

    def list_sub_tasks(
        self,
        *,
        task_id: str,
        status: SubTaskStatus | None = None,
    ) -> list[SubTaskView]:
        with Session(self.engine) as session:
            statement = (
                select(StudioSubTask)
                .where(StudioSubTask.task_id == task_id)
                .order_by(*_SUB_TASK_ORDER)
            )
            if status is not None:
                statement = statement.where(StudioSubTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_sub_task_view(row) for row in rows]

    def try_acquire_sub_task(
        self,
        *,
        sub_task_id: str,
        worker_id: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Take the advisory execution lock unless another worker holds an unexpired one."""

        current = now or utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    or_(
                        col(StudioSubTask.locked_by).is_(None),
                        col(StudioSubTask.locked_by) == worker_id,
                        col(StudioSubTask.lock_expires_at).is_(None),
                        col(StudioSubTask.lock_expires_at) <= to_db_datetime(current),
                    ),
                )
                .values(
                    locked_by=worker_id,
                    lock_expires_at=to_db_datetime(current + ttl),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_sub_task_lock(self, *, sub_task_id: str, worker_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.locked_by) == worker_id,
                )
                .values(locked_by=None, lock_expires_at=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_sub_task_processing(
        self,
        *,
        sub_task_id: str,
        request_snapshot: dict[str, Any],
    ) -> bool:
        """Move a pending sub-task to processing and store the outbound request."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._find_sub_task_row(session=session, sub_task_id=sub_task_id)
            if row is None:
                return False
            previous = SubTaskStatus(row.status)
            if previous not in {SubTaskStatus.PENDING, SubTaskStatus.PROCESSING}:
                return False
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.status) == previous.value,
                )
                .values(
                    status=SubTaskStatus.PROCESSING.value,
                    started_at=to_db_datetime(now),
                    completed_at=None,
                    request_snapshot_json=_dump_snapshot(request_snapshot),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type="sub_task_started",
                status_from=previous,
                status_to=SubTaskStatus.PROCESSING,
                details={"model_id": row.model_id, "retry_count": row.retry_count},
            )
            self._refresh_task_progress(session=session, task_id=row.task_id)
            session.commit()
            return True

    def record_response_snapshot(self, *, sub_task_id: str, snapshot: dict[str, Any]) -> bool:
        """Store the raw provider response while the sub-task is still processing."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.status) == SubTaskStatus.PROCESSING.value,
                )
                .values(
                    response_snapshot_json=_dump_snapshot(snapshot),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_sub_task_success(
        self,
        *,
        sub_task_id: str,
        asset_id: str,
        seed: int | None,
        response_snapshot: dict[str, Any],
    ) -> bool:
        """Mark a processing sub-task as succeeded with its asset reference."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._find_sub_task_row(session=session, sub_task_id=sub_task_id)
            if row is None:
                return False
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.status) == SubTaskStatus.PROCESSING.value,
                )
                .values(
                    status=SubTaskStatus.SUCCESS.value,
                    asset_id=asset_id,
                    seed=seed if seed is not None else row.seed,
                    response_snapshot_json=_dump_snapshot(response_snapshot),
                    error_log=None,
                    error_category=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type="sub_task_succeeded",
                status_from=SubTaskStatus.PROCESSING,
                status_to=SubTaskStatus.SUCCESS,
                details={"asset_id": asset_id, "seed": seed},
            )
            self._refresh_task_progress(session=session, task_id=row.task_id)
            session.commit()
            return True

    def schedule_sub_task_retry(
        self,
        *,
        sub_task_id: str,
        error: NormalizedError,
        retry_count: int,
    ) -> bool:
        """Return a processing sub-task to pending after a retryable failure."""

        return self._finish_failed_attempt(
            sub_task_id=sub_task_id,
            error=error,
            status_to=SubTaskStatus.PENDING,
            retry_count=retry_count,
            event_type="sub_task_retry_scheduled",
        )

    def fail_sub_task(self, *, sub_task_id: str, error: NormalizedError) -> bool:
        """Mark a processing sub-task as terminally failed."""

        return self._finish_failed_attempt(
            sub_task_id=sub_task_id,
            error=error,
            status_to=SubTaskStatus.FAILED,
            retry_count=None,
            event_type="sub_task_failed",
        )

    def cancel_sub_task(self, *, sub_task_id: str, reason: str) -> bool:
        """Short-circuit a non-terminal sub-task to cancelled."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._find_sub_task_row(session=session, sub_task_id=sub_task_id)
            if row is None:
                return False
            previous = SubTaskStatus(row.status)
            if previous.is_terminal:
                return False
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.status) == previous.value,
                )
                .values(
                    status=SubTaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type="sub_task_cancelled",
                status_from=previous,
                status_to=SubTaskStatus.CANCELLED,
                details={"reason": reason},
            )
            self._refresh_task_progress(session=session, task_id=row.task_id)
            session.commit()
            return True

    def retry_sub_task(self, *, sub_task_id: str) -> SubTaskView:
        """Manual operator retry for one failed sub-task."""

        with Session(self.engine) as session:
            row = self._find_sub_task_row(session=session, sub_task_id=sub_task_id)
            if row is None:
                raise RuntimeError(f"Sub-task not found: {sub_task_id}")
            if row.status != SubTaskStatus.FAILED.value:
                raise RuntimeError(
                    f"Only failed sub-tasks can be retried manually, got {row.status}.",
                )
            task = self._get_task_row_for_update(session=session, task_id=row.task_id)
            if task.status == TaskStatus.CANCELLED.value:
                raise RuntimeError(
                    f"Cannot retry sub-task of a cancelled task (task_id={task.task_id}).",
                )

            self._reset_failed_sub_task(session=session, row=row)
            self._reopen_task(session=session, task=task, retried=1)
            session.commit()
            session.refresh(row)
            return _to_sub_task_view(row)

    def retry_all_failed(self, *, task_id: str) -> list[str]:
        """Reset every failed sub-task of a task; return their ids."""

        with Session(self.engine) as session:
            task = self._find_task_row(session=session, task_id=task_id)
            if task is None:
                raise RuntimeError(f"Task not found: {task_id}")
            if TaskStatus(task.status) in RETRY_BLOCKED_TASK_STATUSES:
                raise RuntimeError(f"Cannot retry failed sub-tasks while task is {task.status}.")

            rows = session.exec(
                select(StudioSubTask)
                .where(
                    StudioSubTask.task_id == task_id,
                    StudioSubTask.status == SubTaskStatus.FAILED.value,
                )
                .order_by(*_SUB_TASK_ORDER),
            ).all()
            if not rows:
                raise RuntimeError(f"No failed sub-tasks to retry (task_id={task_id}).")

            for row in rows:
                self._reset_failed_sub_task(session=session, row=row)
            self._reopen_task(session=session, task=task, retried=len(rows))
            session.commit()
            return [row.sub_task_id for row in rows]

    # Styles

    def upsert_style(self, style: StyleTemplate) -> bool:
        """Insert or update a style template; return True when it was created."""

        ensure_valid_style_template(style)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(StyleTemplateRow).where(StyleTemplateRow.style_id == style.style_id),
            ).one_or_none()
            created = row is None
            if row is None:
                row = StyleTemplateRow(
                    style_id=style.style_id,
                    name=style.name,
                    positive_prompt=style.positive_prompt,
                    negative_prompt=style.negative_prompt,
                    description=style.description,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.name = style.name
                row.positive_prompt = style.positive_prompt
                row.negative_prompt = style.negative_prompt
                row.description = style.description
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            return created

    def get_styles(self, *, style_ids: Iterable[str]) -> dict[str, StyleTemplate]:
        ids = list(style_ids)
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(StyleTemplateRow).where(col(StyleTemplateRow.style_id).in_(ids)),
            ).all()
        return {row.style_id: _to_style(row) for row in rows}

    def list_styles(self) -> list[StyleTemplate]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(StyleTemplateRow).order_by(col(StyleTemplateRow.name).asc()),
            ).all()
        return [_to_style(row) for row in rows]

    # Assets

    def create_asset(self, asset: AssetWrite) -> AssetView:
        """Insert an asset row for a handed-off image."""

        with Session(self.engine) as session:
            row = StudioAsset(
                asset_id=str(uuid4()),
                filename=asset.filename,
                path=asset.path,
                mime_type=asset.mime_type,
                size_bytes=asset.size_bytes,
                alt_text=asset.alt_text,
                task_id=asset.task_id,
                sub_task_id=asset.sub_task_id,
                subject_slug=asset.subject_slug,
                style_id=asset.style_id,
                model_id=asset.model_id,
                batch_index=asset.batch_index,
                source_url=asset.source_url,
                generation_params_json=json.dumps(
                    asset.generation_params,
                    ensure_ascii=False,
                    sort_keys=True,
                    default=str,
                ),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_asset_view(row)

    def list_assets(self, *, task_id: str) -> list[AssetView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(StudioAsset)
                .where(StudioAsset.task_id == task_id)
                .order_by(col(StudioAsset.created_at).asc()),
            ).all()
        return [_to_asset_view(row) for row in rows]

    # Jobs

    def enqueue_job(
        self,
        *,
        job_name: JobName,
        payload: dict[str, Any],
        run_after: datetime | None = None,
    ) -> JobView:
        """Create a queued job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = _new_job_row(
                job_name=job_name,
                payload=payload,
                run_after=run_after or now,
                now=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def enqueue_missing_generate_jobs(self, *, task_id: str) -> list[str]:
        """Queue a generate job for every pending sub-task of the task that has none active."""

        now = utc_now()
        with Session(self.engine) as session:
            pending_ids = session.exec(
                select(StudioSubTask.sub_task_id)
                .where(
                    StudioSubTask.task_id == task_id,
                    StudioSubTask.status == SubTaskStatus.PENDING.value,
                )
                .order_by(*_SUB_TASK_ORDER),
            ).all()
            active_payloads = session.exec(
                select(StudioJob.payload_json).where(
                    StudioJob.job_name == JobName.GENERATE_IMAGE.value,
                    col(StudioJob.status).in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                ),
            ).all()
            scheduled = {
                (_load_json_dict(payload) or {}).get("sub_task_id") for payload in active_payloads
            }
            missing = [sub_task_id for sub_task_id in pending_ids if sub_task_id not in scheduled]
            for sub_task_id in missing:
                session.add(
                    _new_job_row(
                        job_name=JobName.GENERATE_IMAGE,
                        payload={"sub_task_id": sub_task_id, "task_id": task_id},
                        run_after=now,
                        now=now,
                    ),
                )
            session.commit()
        return missing

    def claim_next_ready_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim one job ready for execution."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(StudioJob)
                    .where(
                        StudioJob.status == JobStatus.QUEUED.value,
                        StudioJob.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(StudioJob.run_after).asc(),
                        col(StudioJob.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(StudioJob)
                    .where(
                        col(StudioJob.job_id) == candidate.job_id,
                        col(StudioJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(StudioJob).where(StudioJob.job_id == candidate.job_id),
                ).one()
                session.commit()
                return _to_job_view(claimed)

    def complete_job(self, *, job_id: str) -> bool:
        return self._finish_job(job_id=job_id, status=JobStatus.SUCCEEDED, error_summary=None)

    def fail_job(self, *, job_id: str, error_summary: str) -> bool:
        return self._finish_job(
            job_id=job_id,
            status=JobStatus.FAILED,
            error_summary=sanitize_preview(error_summary),
        )

    def requeue_job(self, *, job_id: str, run_after: datetime, error_summary: str) -> bool:
        """Put a running job back in the queue after a signaled retry."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioJob)
                .where(
                    col(StudioJob.job_id) == job_id,
                    col(StudioJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    error_summary=sanitize_preview(error_summary),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_running_jobs(self, *, stale_after: timedelta) -> int:
        """Requeue running jobs whose worker stopped updating them."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioJob)
                .where(
                    col(StudioJob.status) == JobStatus.RUNNING.value,
                    col(StudioJob.updated_at) < to_db_datetime(now - stale_after),
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(now),
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return result.rowcount

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 100) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(StudioJob).order_by(col(StudioJob.created_at).asc()).limit(limit)
            if status is not None:
                statement = statement.where(StudioJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        sub_task_id: str | None = None,
        status_from: TaskStatus | SubTaskStatus | None = None,
        status_to: TaskStatus | SubTaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one free-form audit event."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                sub_task_id=sub_task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    # Internals

    def _finish_job(
        self,
        *,
        job_id: str,
        status: JobStatus,
        error_summary: str | None,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudioJob)
                .where(
                    col(StudioJob.job_id) == job_id,
                    col(StudioJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    error_summary=error_summary,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _finish_failed_attempt(  # noqa: PLR0913
        self,
        *,
        sub_task_id: str,
        error: NormalizedError,
        status_to: SubTaskStatus,
        retry_count: int | None,
        event_type: str,
    ) -> bool:
        now = utc_now()
        error_log = sanitize_preview(format_error_for_log(error))
        with Session(self.engine) as session:
            row = self._find_sub_task_row(session=session, sub_task_id=sub_task_id)
            if row is None:
                return False
            values: dict[str, Any] = {
                "status": status_to.value,
                "error_log": error_log,
                "error_category": error.category.value,
                "updated_at": to_db_datetime(now),
            }
            if retry_count is not None:
                values["retry_count"] = retry_count
            if status_to == SubTaskStatus.FAILED:
                values["completed_at"] = to_db_datetime(now)
            result = session.exec(
                sa_update(StudioSubTask)
                .where(
                    col(StudioSubTask.sub_task_id) == sub_task_id,
                    col(StudioSubTask.status) == SubTaskStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type=event_type,
                status_from=SubTaskStatus.PROCESSING,
                status_to=status_to,
                details={
                    **error.to_event_details(),
                    "retry_count": retry_count if retry_count is not None else row.retry_count,
                    "error_log": error_log,
                },
            )
            self._refresh_task_progress(session=session, task_id=row.task_id)
            session.commit()
            return True

    def _reset_failed_sub_task(self, *, session: Session, row: StudioSubTask) -> None:
        now = utc_now()
        result = session.exec(
            sa_update(StudioSubTask)
            .where(
                col(StudioSubTask.sub_task_id) == row.sub_task_id,
                col(StudioSubTask.status) == SubTaskStatus.FAILED.value,
            )
            .values(
                status=SubTaskStatus.PENDING.value,
                retry_count=0,
                error_log=None,
                error_category=None,
                started_at=None,
                completed_at=None,
                locked_by=None,
                lock_expires_at=None,
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise RuntimeError(
                "Sub-task state changed concurrently while retrying; "
                f"please retry command (sub_task_id={row.sub_task_id}).",
            )
        self._add_event(
            session=session,
            task_id=row.task_id,
            sub_task_id=row.sub_task_id,
            event_type="manual_retry",
            status_from=SubTaskStatus.FAILED,
            status_to=SubTaskStatus.PENDING,
            details={"previous_retry_count": row.retry_count},
        )

    def _reopen_task(self, *, session: Session, task: StudioTask, retried: int) -> None:
        previous = TaskStatus(task.status)
        if previous in _REOPENABLE_TASK_STATUSES:
            session.exec(
                sa_update(StudioTask)
                .where(
                    col(StudioTask.task_id) == task.task_id,
                    col(StudioTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    error_summary=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="reopened",
                status_from=previous,
                status_to=TaskStatus.PROCESSING,
                details={"retried_sub_tasks": retried},
            )
        self._refresh_task_progress(session=session, task_id=task.task_id)

    def _refresh_task_progress(self, *, session: Session, task_id: str) -> ProgressSnapshot:
        current_status = session.exec(
            select(StudioTask.status).where(
                StudioTask.task_id == task_id,
                StudioTask.user_id == self.user_id,
            ),
        ).one_or_none()
        if current_status is None:
            raise RuntimeError(f"Task not found: {task_id}")
        statuses = session.exec(
            select(StudioSubTask.status).where(StudioSubTask.task_id == task_id),
        ).all()
        snapshot = aggregate_progress(SubTaskStatus(status) for status in statuses)

        previous = TaskStatus(current_status)
        values: dict[str, Any] = {
            "progress": snapshot.progress,
            "updated_at": to_db_datetime(utc_now()),
        }
        derive_status = previous in _STATUS_DERIVED_TASK_STATUSES and snapshot.total > 0
        if derive_status and snapshot.status != previous:
            values["status"] = snapshot.status.value
        session.exec(
            sa_update(StudioTask).where(col(StudioTask.task_id) == task_id).values(**values),
        )
        if "status" in values:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_derived",
                status_from=previous,
                status_to=snapshot.status,
                details={
                    "total": snapshot.total,
                    "completed": snapshot.completed,
                    "failed": snapshot.failed,
                    "progress": snapshot.progress,
                },
            )
        return snapshot

    def _find_task_row(self, *, session: Session, task_id: str) -> StudioTask | None:
        return session.exec(
            select(StudioTask).where(
                StudioTask.task_id == task_id,
                StudioTask.user_id == self.user_id,
            ),
        ).one_or_none()

    def _get_task_row_for_update(self, *, session: Session, task_id: str) -> StudioTask:
        row = self._find_task_row(session=session, task_id=task_id)
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _find_sub_task_row(self, *, session: Session, sub_task_id: str) -> StudioSubTask | None:
        return session.exec(
            select(StudioSubTask).where(StudioSubTask.sub_task_id == sub_task_id),
        ).one_or_none()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | SubTaskStatus | None,
        status_to: TaskStatus | SubTaskStatus | None,
        details: dict[str, object],
        sub_task_id: str | None = None,
    ) -> None:
        session.add(
            StudioTaskEvent(
                task_id=task_id,
                sub_task_id=sub_task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _resolve_date_range(
    task_filter: TaskListFilter,
    *,
    now: datetime,
) -> tuple[datetime | None, datetime | None]:
    if task_filter.date_range is None:
        return task_filter.date_from, task_filter.date_to
    if task_filter.date_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), None
    if task_filter.date_range in DATE_RANGE_DAYS:
        return now - timedelta(days=DATE_RANGE_DAYS[task_filter.date_range]), None
    if task_filter.date_range == "custom":
        return task_filter.date_from, task_filter.date_to
    raise ValueError(f"Unsupported date range: {task_filter.date_range}")


def _new_job_row(
    *,
    job_name: JobName,
    payload: dict[str, Any],
    run_after: datetime,
    now: datetime,
) -> StudioJob:
    return StudioJob(
        job_id=str(uuid4()),
        job_name=job_name.value,
        payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
        status=JobStatus.QUEUED.value,
        attempt=0,
        run_after=to_db_datetime(run_after),
        created_at=now,
        updated_at=now,
    )


def _dump_snapshot(snapshot: dict[str, Any]) -> str:
    return json.dumps(sanitize_snapshot(snapshot), ensure_ascii=False, sort_keys=True, default=str)


def _load_json_dict(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: StudioTask) -> TaskView:
    expanded: list[ExpandedPrompt] = []
    if row.expanded_prompts_json:
        expanded = [
            ExpandedPrompt.from_dict(item) for item in json.loads(row.expanded_prompts_json)
        ]
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        subject=row.subject,
        style_ids=tuple(json.loads(row.style_ids_json)),
        model_ids=tuple(json.loads(row.model_ids_json)),
        count_per_prompt=row.count_per_prompt,
        include_base_style=row.include_base_style,
        variant_count=row.variant_count,
        aspect_ratio=AspectRatio(row.aspect_ratio),
        web_search_enabled=row.web_search_enabled,
        expanded_prompts=expanded,
        status=TaskStatus(row.status),
        progress=row.progress,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_sub_task_view(row: StudioSubTask) -> SubTaskView:
    return SubTaskView(
        sub_task_id=row.sub_task_id,
        task_id=row.task_id,
        status=SubTaskStatus(row.status),
        style_id=row.style_id,
        model_id=row.model_id,
        expanded_prompt=ExpandedPrompt.from_dict(json.loads(row.expanded_prompt_json)),
        final_prompt=row.final_prompt,
        negative_prompt=row.negative_prompt,
        batch_index=row.batch_index,
        aspect_ratio=AspectRatio(row.aspect_ratio),
        seed=row.seed,
        retry_count=row.retry_count,
        error_log=row.error_log,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        request_snapshot=_load_json_dict(row.request_snapshot_json),
        response_snapshot=_load_json_dict(row.response_snapshot_json),
        asset_id=row.asset_id,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        locked_by=row.locked_by,
        lock_expires_at=optional_utc(row.lock_expires_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_style(row: StyleTemplateRow) -> StyleTemplate:
    return StyleTemplate(
        style_id=row.style_id,
        name=row.name,
        positive_prompt=row.positive_prompt,
        negative_prompt=row.negative_prompt,
        description=row.description,
    )


def _to_asset_view(row: StudioAsset) -> AssetView:
    return AssetView(
        asset_id=row.asset_id,
        filename=row.filename,
        path=row.path,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        alt_text=row.alt_text,
        task_id=row.task_id,
        sub_task_id=row.sub_task_id,
        subject_slug=row.subject_slug,
        style_id=row.style_id,
        model_id=row.model_id,
        batch_index=row.batch_index,
        source_url=row.source_url,
        generation_params=_load_json_dict(row.generation_params_json) or {},
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: StudioJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_name=JobName(row.job_name),
        payload=_load_json_dict(row.payload_json) or {},
        status=JobStatus(row.status),
        attempt=row.attempt,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: StudioTaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        sub_task_id=row.sub_task_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_load_json_dict(row.details_json) or {},
    )
