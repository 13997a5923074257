"""Controllers for studio CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from pathlib import Path

from image_studio.assets.storage import ImageStorage, MediaLibrary
from image_studio.config import Settings
from image_studio.flows import studio_task_flow
from image_studio.generators.registry import build_registry
from image_studio.pipeline.executor import SubTaskExecutor
from image_studio.pipeline.expansion import PromptExpansionOrchestrator
from image_studio.pipeline.models import AspectRatio, TaskDetails, TaskListFilter, TaskStatus
from image_studio.pipeline.prompt_optimizer import GeminiProvider, LlmPromptOptimizer
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.services import CreateTaskRequest, StudioService, preview_task
from image_studio.pipeline.style_loader import import_styles, load_style_file, search_styles
from image_studio.pipeline.worker import StudioWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for draft task creation."""

    db_path: Path | None
    subject: str
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    count_per_prompt: int
    include_base_style: bool
    variant_count: int
    aspect_ratio: str | None
    web_search: bool
    submit: bool


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for submit/cancel/retry-failed operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SubTaskRetryCommand:
    """CLI input for one sub-task retry."""

    db_path: Path | None
    sub_task_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    statuses: tuple[str, ...]
    date_range: str | None
    date_from: datetime | None
    date_to: datetime | None
    search: str | None
    sort: str
    limit: int
    offset: int = 0


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str
    show_events: bool = True


@dataclass(slots=True)
class TaskPreviewCommand:
    """CLI input for sub-task count preview."""

    variant_count: int
    style_ids: tuple[str, ...]
    model_count: int
    batch_size: int
    include_base_style: bool


@dataclass(slots=True)
class StyleImportCommand:
    db_path: Path | None
    path: Path


@dataclass(slots=True)
class StyleListCommand:
    db_path: Path | None
    search: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for processing one task through the Prefect flow."""

    db_path: Path | None
    task_id: str
    max_jobs: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class FilesCleanupCommand:
    db_path: Path | None
    max_age_hours: int | None


class StudioCliController:
    """Coordinates task, style, worker and file CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        aspect_ratio = (
            AspectRatio(command.aspect_ratio)
            if command.aspect_ratio is not None
            else settings.studio.default_aspect_ratio
        )
        with _repository(settings) as repository:
            service = _service(settings, repository)
            task = service.create_task(
                CreateTaskRequest(
                    subject=command.subject,
                    style_ids=command.style_ids,
                    model_ids=command.model_ids,
                    count_per_prompt=command.count_per_prompt,
                    include_base_style=command.include_base_style,
                    variant_count=command.variant_count,
                    aspect_ratio=aspect_ratio,
                    web_search_enabled=command.web_search,
                ),
            )
            if command.submit:
                task = service.submit_task(task.task_id)
            plan = service.preview(
                variant_count=task.variant_count,
                style_ids=task.style_ids,
                model_count=len(task.model_ids),
                batch_size=task.count_per_prompt,
                include_base_style=task.include_base_style,
            )

        lines = [
            f"Task created: task_id={task.task_id} status={task.status.value}",
            f"Planned sub-tasks: {plan.total}",
        ]
        if plan.warning:
            lines.append(f"Warning: {plan.warning}")
        return lines

    def submit_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _service(settings, repository).submit_task(command.task_id)
        return [f"Task submitted: {task.task_id} status={task.status.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        task_filter = TaskListFilter(
            statuses=tuple(TaskStatus(status.strip().lower()) for status in command.statuses),
            date_range=command.date_range,
            date_from=command.date_from,
            date_to=_end_of_day(command.date_to),
            search=command.search,
            sort=command.sort,
            limit=command.limit,
            offset=command.offset,
        )
        with _repository(settings) as repository:
            tasks = _service(settings, repository).list_tasks(task_filter)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} progress={task.progress}% "
                f"created_at={task.created_at.isoformat()} subject={task.subject!r}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = _service(settings, repository).get_task_with_sub_tasks(command.task_id)
            assets = repository.list_assets(task_id=command.task_id) if details else []
        if details is None:
            return [f"Task not found: {command.task_id}"]
        lines = _render_task_details(details, show_events=command.show_events)
        lines.append(f"Assets: {len(assets)}")
        for asset in assets:
            lines.append(f"  {asset.asset_id} {asset.filename} ({asset.size_bytes} bytes)")
        return lines

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = _service(settings, repository).cancel(command.task_id)
        return [
            f"Task cancelled: {result.task_id}",
            f"Pending sub-tasks cancelled: {result.cancelled_sub_tasks}",
            f"Already resolved sub-tasks: {result.resolved_sub_tasks}",
        ]

    def retry_sub_task(self, command: SubTaskRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            sub_task = _service(settings, repository).retry_sub_task(command.sub_task_id)
        return [f"Sub-task re-queued: {sub_task.sub_task_id} (task_id={sub_task.task_id})"]

    def retry_failed(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            sub_task_ids = _service(settings, repository).retry_all_failed(command.task_id)
        return [f"Failed sub-tasks re-queued: {len(sub_task_ids)} (task_id={command.task_id})"]

    def preview(self, command: TaskPreviewCommand) -> list[str]:
        settings = Settings.from_env()
        plan = preview_task(
            variant_count=command.variant_count,
            style_ids=command.style_ids,
            model_count=command.model_count,
            batch_size=command.batch_size,
            include_base_style=command.include_base_style,
            warning_threshold=settings.studio.batch_warning_threshold,
        )
        breakdown = plan.breakdown
        lines = [
            f"Total sub-tasks: {plan.total}",
            f"  prompts={breakdown.prompt_count} styles={breakdown.style_count} "
            f"models={breakdown.model_count} batch_size={breakdown.batch_size}",
        ]
        if plan.warning:
            lines.append(f"Warning: {plan.warning}")
        return lines

    def import_styles(self, command: StyleImportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        styles = load_style_file(command.path)
        with _repository(settings) as repository:
            report = import_styles(repository, styles)
        lines = [
            f"Styles imported from {command.path}: created={report.created} "
            f"updated={report.updated} skipped={report.skipped}",
        ]
        for name in report.skipped_names:
            lines.append(f"  skipped: {name}")
        return lines

    def list_styles(self, command: StyleListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            styles = repository.list_styles()
        if command.search:
            styles = search_styles(styles, command.search)
        lines = [f"Styles: {len(styles)}"]
        for style in styles:
            lines.append(f"  {style.style_id}: {style.name}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with _repository(settings) as repository, _worker(settings, repository) as worker:
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls or settings.worker.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"cancelled={summary.cancelled} deferred={summary.deferred} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_task(self, command: RunTaskCommand) -> list[str]:
        """Submit a draft if needed, then process the task with the Prefect flow."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        lines: list[str] = []
        with _repository(settings) as repository, _worker(settings, repository) as worker:
            current = repository.get_task(task_id=command.task_id)
            if current is None:
                return [f"Task not found: {command.task_id}"]
            if current.status == TaskStatus.DRAFT:
                _service(settings, repository).submit_task(command.task_id)
                lines.append(f"Task submitted: {command.task_id}")
            result = studio_task_flow(
                task_id=command.task_id,
                repository=repository,
                worker=worker,
                max_jobs=command.max_jobs,
                max_idle_polls=command.max_idle_polls or settings.worker.max_idle_polls,
                on_progress=lines.append,
            )

        counts = result.counts
        lines.append(
            f"Task {result.task_id}: status={result.status.value} progress={result.progress}% "
            f"success={counts.success} failed={counts.failed} pending={counts.pending} "
            f"cancelled={counts.cancelled}",
        )
        return lines

    def cleanup_files(self, command: FilesCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        hours = command.max_age_hours or settings.studio.staging_max_age_hours
        with ImageStorage(staging_dir=settings.studio.staging_dir) as storage:
            deleted = storage.cleanup_old_files(max_age=timedelta(hours=hours))
            remaining = len(storage.list_files())
        return [
            f"Staged files older than {hours}h deleted: {deleted}",
            f"Staged files remaining: {remaining}",
        ]


def _render_task_details(details: TaskDetails, *, show_events: bool) -> list[str]:
    task = details.task
    counts = details.counts
    lines = [
        f"Task: {task.task_id}",
        f"Subject: {task.subject}",
        f"Status: {task.status.value}",
        f"Progress: {task.progress}%",
        f"Styles: {', '.join(task.style_ids) or '-'} (base style: "
        f"{'yes' if task.include_base_style else 'no'})",
        f"Models: {', '.join(task.model_ids) or '-'}",
        f"Count per prompt: {task.count_per_prompt}",
        f"Aspect ratio: {task.aspect_ratio.value}",
        f"Error: {task.error_summary or '-'}",
        f"Variants: {len(task.expanded_prompts)}",
    ]
    for variant in task.expanded_prompts:
        lines.append(f"  {variant.variant_id} {variant.variant_name}: {variant.expanded_prompt}")
    lines.append(
        f"Sub-tasks: {counts.total} (pending={counts.pending} processing={counts.processing} "
        f"success={counts.success} failed={counts.failed} cancelled={counts.cancelled})",
    )
    for sub_task in details.sub_tasks:
        line = (
            f"  {sub_task.sub_task_id} {sub_task.status.value} "
            f"variant={sub_task.expanded_prompt.variant_id} style={sub_task.style_id} "
            f"model={sub_task.model_id} batch={sub_task.batch_index} "
            f"retries={sub_task.retry_count}"
        )
        if sub_task.error_log:
            line += f" error={sub_task.error_log}"
        lines.append(line)
    if show_events:
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
    return lines


def _end_of_day(value: datetime | None) -> datetime | None:
    """A bare date as an upper bound includes the whole day."""

    if value is None or value.time() != time.min:
        return value
    return value + timedelta(days=1) - timedelta(microseconds=1)


def _service(settings: Settings, repository: StudioRepository) -> StudioService:
    return StudioService(
        repository=repository,
        warning_threshold=settings.studio.batch_warning_threshold,
    )


@contextmanager
def _worker(settings: Settings, repository: StudioRepository) -> Iterator[StudioWorker]:
    with ExitStack() as stack:
        optimizer = None
        if settings.providers.google_ai_api_key:
            provider = GeminiProvider(
                api_key=settings.providers.google_ai_api_key,
                model=settings.providers.gemini_model,
                base_url=settings.providers.google_ai_base_url,
                timeout_seconds=settings.providers.request_timeout_seconds,
            )
            stack.callback(provider.close)
            optimizer = LlmPromptOptimizer(provider)
        else:
            logger.info("GOOGLE_AI_API_KEY is not set, prompt expansion uses fallback variants")
        if not settings.providers.use_echo_generator:
            for key_name, value in (
                ("FAL_KEY", settings.providers.fal_api_key),
                ("OPENAI_API_KEY", settings.providers.openai_api_key),
                ("GOOGLE_AI_API_KEY", settings.providers.google_ai_api_key),
            ):
                if not value:
                    logger.warning(
                        "%s is not set, requests to that provider will be rejected",
                        key_name,
                    )

        registry = build_registry(settings)
        stack.callback(registry.close)
        storage = stack.enter_context(
            ImageStorage(
                staging_dir=settings.studio.staging_dir,
                timeout_seconds=settings.studio.download_timeout_seconds,
            ),
        )
        executor = SubTaskExecutor(
            repository=repository,
            registry=registry,
            storage=storage,
            media=MediaLibrary(settings.studio.media_dir),
            max_retry_attempts=settings.studio.max_retry_attempts,
        )
        expansion = PromptExpansionOrchestrator(
            repository=repository,
            optimizer=optimizer,
            warning_threshold=settings.studio.batch_warning_threshold,
        )
        yield StudioWorker(
            repository=repository,
            executor=executor,
            expansion=expansion,
            worker_id=settings.worker.worker_id,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            retry_base_seconds=settings.worker.retry_base_seconds,
            retry_max_seconds=settings.worker.retry_max_seconds,
            lock_ttl_seconds=settings.worker.lock_ttl_seconds,
        )


@contextmanager
def _repository(settings: Settings) -> Iterator[StudioRepository]:
    repository = StudioRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
