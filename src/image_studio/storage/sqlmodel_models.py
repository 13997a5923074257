"""SQLModel ORM tables for studio storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudioTask(SQLModel, table=True):
    __tablename__ = "studio_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_studio_tasks_scope_time", "user_id", "created_at"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    subject: str = Field(sa_column=Column(Text, nullable=False))
    style_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    model_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    count_per_prompt: int = Field(default=1)
    include_base_style: bool = Field(default=True)
    variant_count: int = Field(default=3)
    aspect_ratio: str = Field(default="1:1")
    web_search_enabled: bool = Field(default=False)
    expanded_prompts_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    progress: int = Field(default=0)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudioSubTask(SQLModel, table=True):
    __tablename__ = "studio_sub_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_studio_sub_tasks_task_status", "task_id", "status"),
        UniqueConstraint(
            "task_id",
            "variant_id",
            "style_id",
            "model_id",
            "batch_index",
            name="uq_studio_sub_tasks_combination",
        ),
    )

    sub_task_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("studio_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    style_id: str
    model_id: str
    variant_id: str
    expanded_prompt_json: str = Field(sa_column=Column(Text, nullable=False))
    final_prompt: str = Field(sa_column=Column(Text, nullable=False))
    negative_prompt: str = Field(default="", sa_column=Column(Text, nullable=False))
    batch_index: int
    aspect_ratio: str
    seed: int | None = None
    retry_count: int = Field(default=0)
    error_log: str | None = Field(default=None, sa_column=Column(Text))
    error_category: str | None = Field(default=None, index=True)
    request_snapshot_json: str | None = Field(default=None, sa_column=Column(Text))
    response_snapshot_json: str | None = Field(default=None, sa_column=Column(Text))
    asset_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    locked_by: str | None = Field(default=None, index=True)
    lock_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StyleTemplateRow(SQLModel, table=True):
    __tablename__ = "style_templates"  # type: ignore[bad-override]

    style_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    positive_prompt: str = Field(sa_column=Column(Text, nullable=False))
    negative_prompt: str = Field(default="", sa_column=Column(Text, nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudioAsset(SQLModel, table=True):
    __tablename__ = "assets"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_assets_task_time", "task_id", "created_at"),)

    asset_id: str = Field(primary_key=True)
    filename: str = Field(index=True)
    path: str
    mime_type: str
    size_bytes: int
    alt_text: str = Field(sa_column=Column(Text, nullable=False))
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("studio_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sub_task_id: str = Field(index=True)
    subject_slug: str
    style_id: str
    model_id: str
    batch_index: int
    source_url: str = Field(sa_column=Column(Text, nullable=False))
    generation_params_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudioJob(SQLModel, table=True):
    __tablename__ = "studio_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_studio_jobs_queue", "status", "run_after", "created_at"),)

    job_id: str = Field(primary_key=True)
    job_name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudioTaskEvent(SQLModel, table=True):
    __tablename__ = "studio_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_studio_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("studio_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sub_task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
