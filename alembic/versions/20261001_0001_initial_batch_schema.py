"""Initial catalog and batch job schema (squashed baseline)."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("subscription_tier", sa.String(), server_default="free", nullable=False),
        sa.Column("brand_names_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("competitor_names_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("org_id"),
    )
    op.create_index("ix_organizations_name", "organizations", ["name"])
    op.create_index(
        "ix_organizations_subscription_tier",
        "organizations",
        ["subscription_tier"],
    )

    op.create_table(
        "prompts",
        sa.Column("prompt_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.org_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("prompt_id"),
    )
    op.create_index("ix_prompts_org_id", "prompts", ["org_id"])
    op.create_index("idx_prompts_org_active", "prompts", ["org_id", "active"])

    providers = op.create_table(
        "llm_providers",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )
    seeded_at = datetime(2026, 10, 1)
    op.bulk_insert(
        providers,
        [
            {"name": name, "enabled": True, "updated_at": seeded_at}
            for name in ("openai", "perplexity", "gemini", "google_ai_overview")
        ],
    )

    op.create_table(
        "batch_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_tasks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("completed_tasks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failed_tasks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("business_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("runner_id", sa.String(), nullable=True),
        sa.Column(
            "cancellation_requested",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column("metadata_json", sa.Text(), server_default="{}", nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.org_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
        sa.CheckConstraint(
            "completed_tasks + failed_tasks <= total_tasks",
            name="ck_batch_jobs_progress_within_total",
        ),
    )
    op.create_index("ix_batch_jobs_org_id", "batch_jobs", ["org_id"])
    op.create_index("ix_batch_jobs_status", "batch_jobs", ["status"])
    op.create_index(
        "idx_batch_jobs_status_heartbeat",
        "batch_jobs",
        ["status", "last_heartbeat_at"],
    )
    op.create_index(
        "idx_batch_jobs_org_business_date",
        "batch_jobs",
        ["org_id", "business_date"],
    )

    op.create_table(
        "batch_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("prompt_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["batch_jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["prompt_id"], ["prompts.prompt_id"]),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint(
            "job_id",
            "prompt_id",
            "provider",
            name="uq_batch_tasks_job_prompt_provider",
        ),
    )
    op.create_index("ix_batch_tasks_job_id", "batch_tasks", ["job_id"])
    op.create_index("ix_batch_tasks_prompt_id", "batch_tasks", ["prompt_id"])
    op.create_index("ix_batch_tasks_provider", "batch_tasks", ["provider"])
    op.create_index("ix_batch_tasks_status", "batch_tasks", ["status"])
    op.create_index("idx_batch_tasks_job_status", "batch_tasks", ["job_id", "status"])

    op.create_table(
        "batch_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["batch_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batch_job_events_job_id", "batch_job_events", ["job_id"])
    op.create_index("ix_batch_job_events_event_type", "batch_job_events", ["event_type"])

    op.create_table(
        "prompt_provider_responses",
        sa.Column("response_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("prompt_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("score", sa.Float(), server_default="0", nullable=False),
        sa.Column("org_brand_present", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("org_brand_prominence", sa.Integer(), nullable=True),
        sa.Column("brands_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("competitors_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("competitors_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("raw_response", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("token_in", sa.Integer(), server_default="0", nullable=False),
        sa.Column("token_out", sa.Integer(), server_default="0", nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["batch_jobs.job_id"]),
        sa.ForeignKeyConstraint(["task_id"], ["batch_tasks.task_id"]),
        sa.PrimaryKeyConstraint("response_id"),
        sa.UniqueConstraint(
            "job_id",
            "prompt_id",
            "provider",
            name="uq_prompt_provider_responses_job_prompt_provider",
        ),
    )
    op.create_index(
        "ix_prompt_provider_responses_job_id",
        "prompt_provider_responses",
        ["job_id"],
    )
    op.create_index(
        "ix_prompt_provider_responses_task_id",
        "prompt_provider_responses",
        ["task_id"],
    )
    op.create_index(
        "ix_prompt_provider_responses_org_id",
        "prompt_provider_responses",
        ["org_id"],
    )
    op.create_index(
        "ix_prompt_provider_responses_prompt_id",
        "prompt_provider_responses",
        ["prompt_id"],
    )
    op.create_index(
        "ix_prompt_provider_responses_provider",
        "prompt_provider_responses",
        ["provider"],
    )
    op.create_index(
        "ix_prompt_provider_responses_status",
        "prompt_provider_responses",
        ["status"],
    )
    op.create_index(
        "idx_prompt_provider_responses_org_run_at",
        "prompt_provider_responses",
        ["org_id", "run_at"],
    )


def downgrade() -> None:
    op.drop_table("prompt_provider_responses")
    op.drop_table("batch_job_events")
    op.drop_table("batch_tasks")
    op.drop_table("batch_jobs")
    op.drop_table("llm_providers")
    op.drop_table("prompts")
    op.drop_table("organizations")
