"""Initial studio schema: tasks, sub-tasks, styles, assets, jobs, events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_display_name", "users", ["display_name"], unique=False)

    op.create_table(
        "studio_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("style_ids_json", sa.Text(), nullable=False),
        sa.Column("model_ids_json", sa.Text(), nullable=False),
        sa.Column("count_per_prompt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "include_base_style",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("variant_count", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("aspect_ratio", sa.String(), nullable=False, server_default="1:1"),
        sa.Column(
            "web_search_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("expanded_prompts_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_studio_tasks_user_id", "studio_tasks", ["user_id"], unique=False)
    op.create_index("ix_studio_tasks_status", "studio_tasks", ["status"], unique=False)
    op.create_index(
        "idx_studio_tasks_scope_time",
        "studio_tasks",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "studio_sub_tasks",
        sa.Column("sub_task_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("style_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("expanded_prompt_json", sa.Text(), nullable=False),
        sa.Column("final_prompt", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("aspect_ratio", sa.String(), nullable=False),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("request_snapshot_json", sa.Text(), nullable=True),
        sa.Column("response_snapshot_json", sa.Text(), nullable=True),
        sa.Column("asset_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["studio_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("sub_task_id"),
        sa.UniqueConstraint(
            "task_id",
            "variant_id",
            "style_id",
            "model_id",
            "batch_index",
            name="uq_studio_sub_tasks_combination",
        ),
    )
    op.create_index("ix_studio_sub_tasks_task_id", "studio_sub_tasks", ["task_id"], unique=False)
    op.create_index("ix_studio_sub_tasks_status", "studio_sub_tasks", ["status"], unique=False)
    op.create_index(
        "ix_studio_sub_tasks_error_category",
        "studio_sub_tasks",
        ["error_category"],
        unique=False,
    )
    op.create_index(
        "ix_studio_sub_tasks_locked_by",
        "studio_sub_tasks",
        ["locked_by"],
        unique=False,
    )
    op.create_index(
        "idx_studio_sub_tasks_task_status",
        "studio_sub_tasks",
        ["task_id", "status"],
        unique=False,
    )

    op.create_table(
        "style_templates",
        sa.Column("style_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("positive_prompt", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("style_id"),
    )
    op.create_index("ix_style_templates_name", "style_templates", ["name"], unique=False)

    op.create_table(
        "assets",
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("alt_text", sa.Text(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("sub_task_id", sa.String(), nullable=False),
        sa.Column("subject_slug", sa.String(), nullable=False),
        sa.Column("style_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("generation_params_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["studio_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("asset_id"),
    )
    op.create_index("ix_assets_filename", "assets", ["filename"], unique=False)
    op.create_index("ix_assets_task_id", "assets", ["task_id"], unique=False)
    op.create_index("ix_assets_sub_task_id", "assets", ["sub_task_id"], unique=False)
    op.create_index("idx_assets_task_time", "assets", ["task_id", "created_at"], unique=False)

    op.create_table(
        "studio_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_studio_jobs_job_name", "studio_jobs", ["job_name"], unique=False)
    op.create_index("ix_studio_jobs_status", "studio_jobs", ["status"], unique=False)
    op.create_index("ix_studio_jobs_worker_id", "studio_jobs", ["worker_id"], unique=False)
    op.create_index(
        "idx_studio_jobs_queue",
        "studio_jobs",
        ["status", "run_after", "created_at"],
        unique=False,
    )

    op.create_table(
        "studio_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("sub_task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["studio_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_studio_task_events_task_id",
        "studio_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_studio_task_events_sub_task_id",
        "studio_task_events",
        ["sub_task_id"],
        unique=False,
    )
    op.create_index(
        "ix_studio_task_events_event_type",
        "studio_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_studio_task_events_task_time",
        "studio_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("studio_task_events")
    op.drop_table("studio_jobs")
    op.drop_table("assets")
    op.drop_table("style_templates")
    op.drop_table("studio_sub_tasks")
    op.drop_table("studio_tasks")
    op.drop_table("users")
