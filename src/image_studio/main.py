"""CLI entrypoint for image-studio."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from image_studio import __version__
from image_studio.generators.flux import FLUX_ENDPOINTS
from image_studio.pipeline.controllers import (
    FilesCleanupCommand,
    RunTaskCommand,
    StudioCliController,
    StyleImportCommand,
    StyleListCommand,
    SubTaskRetryCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskPreviewCommand,
    WorkerCommand,
)
from image_studio.pipeline.models import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_VARIANT_COUNT,
    MAX_BATCH_SIZE,
    AspectRatio,
    TaskStatus,
)
from image_studio.pipeline.services import MAX_VARIANT_COUNT

click.rich_click.USE_MARKDOWN = True
STUDIO_CONTROLLER = StudioCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="image-studio")
def image_studio() -> None:
    """Image studio CLI."""


@image_studio.group()
def task() -> None:
    """Task lifecycle commands."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--subject", required=True, help="Short subject to expand into prompt variants.")
@click.option(
    "--style",
    "style_ids",
    multiple=True,
    help="Style template id. Can be repeated.",
)
@click.option(
    "--model",
    "model_ids",
    multiple=True,
    help=f"Model id ({', '.join(FLUX_ENDPOINTS)}). Can be repeated.",
)
@click.option(
    "--count",
    "count_per_prompt",
    type=click.IntRange(min=1, max=MAX_BATCH_SIZE),
    default=DEFAULT_BATCH_SIZE,
    show_default=True,
    help="Images per (variant, style, model) combination.",
)
@click.option(
    "--variants",
    "variant_count",
    type=click.IntRange(min=1, max=MAX_VARIANT_COUNT),
    default=DEFAULT_VARIANT_COUNT,
    show_default=True,
    help="Number of prompt variants to expand the subject into.",
)
@click.option(
    "--aspect-ratio",
    type=click.Choice([ratio.value for ratio in AspectRatio]),
    default=None,
    help="Output aspect ratio; defaults to IMAGE_STUDIO_DEFAULT_ASPECT_RATIO.",
)
@click.option(
    "--base-style/--no-base-style",
    default=True,
    show_default=True,
    help="Also generate with the implicit unstyled base template.",
)
@click.option(
    "--web-search/--no-web-search",
    default=False,
    show_default=True,
    help="Ask the prompt optimizer to ground variants with web search.",
)
@click.option(
    "--submit/--draft",
    default=False,
    show_default=True,
    help="Queue the task for expansion right away.",
)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    subject: str,
    style_ids: tuple[str, ...],
    model_ids: tuple[str, ...],
    count_per_prompt: int,
    variant_count: int,
    aspect_ratio: str | None,
    base_style: bool,
    web_search: bool,
    submit: bool,
) -> None:
    """Create a draft task."""

    _run(
        lambda: STUDIO_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                subject=subject,
                style_ids=style_ids,
                model_ids=model_ids,
                count_per_prompt=count_per_prompt,
                include_base_style=base_style,
                variant_count=variant_count,
                aspect_ratio=aspect_ratio,
                web_search=web_search,
                submit=submit,
            ),
        ),
    )


@task.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def task_submit(db_path: Path | None, task_id: str) -> None:
    """Queue a draft task for prompt expansion."""

    _run(
        lambda: STUDIO_CONTROLLER.submit_task(
            TaskMutateCommand(db_path=db_path, task_id=task_id),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    help="Status filter. Can be repeated.",
)
@click.option(
    "--range",
    "date_range",
    type=click.Choice(["today", "7days", "30days", "custom"]),
    default=None,
    help="Creation date window; custom uses --from/--to.",
)
@click.option(
    "--from",
    "date_from",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Created on or after this date (UTC).",
)
@click.option(
    "--to",
    "date_to",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Created on or before this date (UTC, inclusive).",
)
@click.option("--search", default=None, help="Subject keyword.")
@click.option(
    "--sort",
    type=click.Choice(["newest", "oldest"]),
    default="newest",
    show_default=True,
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Tasks to skip for pagination.",
)
def task_list(  # noqa: PLR0913
    db_path: Path | None,
    statuses: tuple[str, ...],
    date_range: str | None,
    date_from: datetime | None,
    date_to: datetime | None,
    search: str | None,
    sort: str,
    limit: int,
    offset: int,
) -> None:
    """List tasks."""

    _run(
        lambda: STUDIO_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                statuses=statuses,
                date_range=date_range,
                date_from=date_from,
                date_to=date_to,
                search=search,
                sort=sort,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--events/--no-events",
    default=True,
    show_default=True,
    help="Print the task event history.",
)
def task_inspect(db_path: Path | None, task_id: str, events: bool) -> None:
    """Inspect one task with its sub-tasks, assets and events."""

    _run(
        lambda: STUDIO_CONTROLLER.inspect_task(
            TaskInspectCommand(db_path=db_path, task_id=task_id, show_events=events),
        ),
    )


@task.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a queued, expanding or processing task."""

    _run(
        lambda: STUDIO_CONTROLLER.cancel_task(
            TaskMutateCommand(db_path=db_path, task_id=task_id),
        ),
    )


@task.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--sub-task-id", required=True, help="Failed sub-task id.")
def task_retry(db_path: Path | None, sub_task_id: str) -> None:
    """Manually re-queue one failed sub-task."""

    _run(
        lambda: STUDIO_CONTROLLER.retry_sub_task(
            SubTaskRetryCommand(db_path=db_path, sub_task_id=sub_task_id),
        ),
    )


@task.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def task_retry_failed(db_path: Path | None, task_id: str) -> None:
    """Re-queue every failed sub-task of a task."""

    _run(
        lambda: STUDIO_CONTROLLER.retry_failed(
            TaskMutateCommand(db_path=db_path, task_id=task_id),
        ),
    )


@task.command("preview")
@click.option(
    "--variants",
    "variant_count",
    type=click.IntRange(min=0),
    default=DEFAULT_VARIANT_COUNT,
    show_default=True,
)
@click.option("--style", "style_ids", multiple=True, help="Style id. Can be repeated.")
@click.option(
    "--models",
    "model_count",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Number of selected models.",
)
@click.option(
    "--count",
    "batch_size",
    type=click.IntRange(min=0, max=MAX_BATCH_SIZE),
    default=DEFAULT_BATCH_SIZE,
    show_default=True,
)
@click.option("--base-style/--no-base-style", default=True, show_default=True)
def task_preview(
    variant_count: int,
    style_ids: tuple[str, ...],
    model_count: int,
    batch_size: int,
    base_style: bool,
) -> None:
    """Preview how many sub-tasks a task configuration produces."""

    _run(
        lambda: STUDIO_CONTROLLER.preview(
            TaskPreviewCommand(
                variant_count=variant_count,
                style_ids=style_ids,
                model_count=model_count,
                batch_size=batch_size,
                include_base_style=base_style,
            ),
        ),
    )


@image_studio.group()
def styles() -> None:
    """Style template library commands."""


@styles.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def styles_import(db_path: Path | None, path: Path) -> None:
    """Import styles from a JSON array of {name, prompt, negative_prompt} objects."""

    _run(lambda: STUDIO_CONTROLLER.import_styles(StyleImportCommand(db_path=db_path, path=path)))


@styles.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--search", default=None, help="Filter by style id or name.")
def styles_list(db_path: Path | None, search: str | None) -> None:
    """List stored style templates."""

    _run(lambda: STUDIO_CONTROLLER.list_styles(StyleListCommand(db_path=db_path, search=search)))


@image_studio.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before exiting; defaults to settings.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the expansion and generation job worker."""

    _run(
        lambda: STUDIO_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@image_studio.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before exiting; raise to wait out retry backoff.",
)
def run(
    db_path: Path | None,
    task_id: str,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Process one task end to end as a Prefect flow."""

    _run(
        lambda: STUDIO_CONTROLLER.run_task(
            RunTaskCommand(
                db_path=db_path,
                task_id=task_id,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@image_studio.group()
def files() -> None:
    """Local staging file commands."""


@files.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--max-age-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Delete staged files older than this; defaults to IMAGE_STUDIO_STAGING_MAX_AGE_HOURS.",
)
def files_cleanup(db_path: Path | None, max_age_hours: int | None) -> None:
    """Delete stale staged image files."""

    _run(
        lambda: STUDIO_CONTROLLER.cleanup_files(
            FilesCleanupCommand(db_path=db_path, max_age_hours=max_age_hours),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    image_studio()
