"""Domain models for studio tasks, sub-tasks, and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MAX_RETRY_ATTEMPTS = 3
DEFAULT_BATCH_SIZE = 1
MAX_BATCH_SIZE = 50
DEFAULT_VARIANT_COUNT = 3


class TaskStatus(str, Enum):
    """Parent task lifecycle states."""

    DRAFT = "draft"
    QUEUED = "queued"
    EXPANDING = "expanding"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILED = "partial_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubTaskStatus(str, Enum):
    """Sub-task execution states."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {SubTaskStatus.SUCCESS, SubTaskStatus.FAILED, SubTaskStatus.CANCELLED}


class ErrorCategory(str, Enum):
    """Normalized provider failure categories used by retry policy."""

    RATE_LIMITED = "RATE_LIMITED"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    INVALID_INPUT = "INVALID_INPUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class AspectRatio(str, Enum):
    """Supported output aspect ratios."""

    SQUARE = "1:1"
    LANDSCAPE_16_9 = "16:9"
    PORTRAIT_9_16 = "9:16"
    LANDSCAPE_4_3 = "4:3"
    PORTRAIT_3_4 = "3:4"


ASPECT_RATIO_DIMENSIONS: dict[AspectRatio, tuple[int, int]] = {
    AspectRatio.SQUARE: (1024, 1024),
    AspectRatio.LANDSCAPE_16_9: (1792, 1024),
    AspectRatio.PORTRAIT_9_16: (1024, 1792),
    AspectRatio.LANDSCAPE_4_3: (1365, 1024),
    AspectRatio.PORTRAIT_3_4: (1024, 1365),
}


class JobName(str, Enum):
    """Job kinds dispatched through the durable queue."""

    EXPAND_PROMPT = "expand-prompt"
    GENERATE_IMAGE = "generate-image"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class ExpandedPrompt:
    """One prompt variant produced from the task subject."""

    variant_id: str
    variant_name: str
    original_prompt: str
    expanded_prompt: str
    subject_slug: str

    def to_dict(self) -> dict[str, str]:
        return {
            "variant_id": self.variant_id,
            "variant_name": self.variant_name,
            "original_prompt": self.original_prompt,
            "expanded_prompt": self.expanded_prompt,
            "subject_slug": self.subject_slug,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExpandedPrompt:
        return cls(
            variant_id=str(payload["variant_id"]),
            variant_name=str(payload["variant_name"]),
            original_prompt=str(payload["original_prompt"]),
            expanded_prompt=str(payload["expanded_prompt"]),
            subject_slug=str(payload["subject_slug"]),
        )


@dataclass(slots=True)
class StyleTemplate:
    """Reusable positive/negative prompt modifier pair."""

    style_id: str
    name: str
    positive_prompt: str
    negative_prompt: str = ""
    description: str | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a draft task."""

    subject: str
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    count_per_prompt: int = DEFAULT_BATCH_SIZE
    include_base_style: bool = True
    variant_count: int = DEFAULT_VARIANT_COUNT
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    web_search_enabled: bool = False
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and pipeline logic."""

    task_id: str
    user_id: str
    subject: str
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    count_per_prompt: int
    include_base_style: bool
    variant_count: int
    aspect_ratio: AspectRatio
    web_search_enabled: bool
    expanded_prompts: list[ExpandedPrompt]
    status: TaskStatus
    progress: int
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SubTaskCreate:
    """Input payload for creating one pending sub-task."""

    task_id: str
    style_id: str
    model_id: str
    expanded_prompt: ExpandedPrompt
    final_prompt: str
    negative_prompt: str
    batch_index: int
    aspect_ratio: AspectRatio
    seed: int | None = None


@dataclass(slots=True)
class SubTaskView:
    """Readable sub-task view including diagnostics and lock fields."""

    sub_task_id: str
    task_id: str
    status: SubTaskStatus
    style_id: str
    model_id: str
    expanded_prompt: ExpandedPrompt
    final_prompt: str
    negative_prompt: str
    batch_index: int
    aspect_ratio: AspectRatio
    seed: int | None
    retry_count: int
    error_log: str | None
    error_category: ErrorCategory | None
    request_snapshot: dict[str, Any] | None
    response_snapshot: dict[str, Any] | None
    asset_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    locked_by: str | None
    lock_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AssetWrite:
    """Asset metadata captured when a generated image is handed off."""

    filename: str
    path: str
    mime_type: str
    size_bytes: int
    alt_text: str
    task_id: str
    sub_task_id: str
    subject_slug: str
    style_id: str
    model_id: str
    batch_index: int
    source_url: str
    generation_params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AssetView:
    """Stored asset entry."""

    asset_id: str
    filename: str
    path: str
    mime_type: str
    size_bytes: int
    alt_text: str
    task_id: str
    sub_task_id: str
    subject_slug: str
    style_id: str
    model_id: str
    batch_index: int
    source_url: str
    generation_params: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class JobView:
    """Durable queue job entry."""

    job_id: str
    job_name: JobName
    payload: dict[str, Any]
    status: JobStatus
    attempt: int
    run_after: datetime
    worker_id: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    sub_task_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StatusCounts:
    """Sub-task counts per status."""

    pending: int = 0
    processing: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.success + self.failed + self.cancelled

    @classmethod
    def from_statuses(cls, statuses: list[SubTaskStatus]) -> StatusCounts:
        counts = cls()
        for status in statuses:
            setattr(counts, status.value, getattr(counts, status.value) + 1)
        return counts


@dataclass(slots=True)
class TaskDetails:
    """Task with its sub-tasks, status counts and event stream."""

    task: TaskView
    sub_tasks: list[SubTaskView]
    counts: StatusCounts
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskListFilter:
    """Filters for task listing."""

    statuses: tuple[TaskStatus, ...] = ()
    date_range: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    sort: str = "newest"
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class CancelResult:
    """Outcome of a task cancellation."""

    task_id: str
    cancelled_sub_tasks: int
    resolved_sub_tasks: int
