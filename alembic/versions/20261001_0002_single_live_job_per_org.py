"""Enforce at most one live batch job per organization."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Keep the newest live row per org, cancel older duplicates.
    op.execute(
        sa.text(
            """
            WITH ranked AS (
                SELECT
                    job_id,
                    ROW_NUMBER() OVER (
                        PARTITION BY org_id
                        ORDER BY created_at DESC, job_id DESC
                    ) AS rn
                FROM batch_jobs
                WHERE status IN ('pending', 'processing')
            )
            UPDATE batch_jobs
            SET
                status = 'cancelled',
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                error_summary = COALESCE(
                    error_summary,
                    'Auto-cancelled during migration: duplicate live jobs.'
                )
            WHERE job_id IN (SELECT job_id FROM ranked WHERE rn > 1)
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_batch_jobs_org_live
            ON batch_jobs (org_id)
            WHERE status IN ('pending', 'processing')
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_batch_jobs_org_live"))
