"""Create provider_configs, batch_jobs and generations tables.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "a0b1c2d3e4f5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "provider_configs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("endpoint", sa.String(500), nullable=True),
        sa.Column("model_id", sa.String(200), nullable=True),
        sa.Column("options", JSONB, server_default="{}", nullable=False),
        sa.Column("api_key", sa.LargeBinary, nullable=True),
        sa.Column("access_level", sa.String(20), server_default="authenticated", nullable=False),
        sa.Column("allowed_users", JSONB, server_default="[]", nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_provider_configs_owner_id", "provider_configs", ["owner_id"])

    op.create_table(
        "batch_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column(
            "provider_config_id",
            UUID(as_uuid=True),
            sa.ForeignKey("provider_configs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("requests", JSONB, nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("results", JSONB, server_default="[]", nullable=False),
        sa.Column("provider_job_id", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_completion", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'submitted', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_batch_jobs_status",
        ),
    )
    op.create_index("ix_batch_jobs_owner_id", "batch_jobs", ["owner_id"])
    op.create_index("ix_batch_jobs_status", "batch_jobs", ["status"])

    op.create_table(
        "generations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column(
            "provider_config_id",
            UUID(as_uuid=True),
            sa.ForeignKey("provider_configs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("prompt", sa.Text, nullable=False, server_default=""),
        sa.Column("negative_prompt", sa.Text, nullable=True),
        sa.Column("image_url", sa.Text, nullable=False),
        sa.Column("image_path", sa.String(500), nullable=True),
        sa.Column("settings", JSONB, server_default="{}", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_generations_owner_id", "generations", ["owner_id"])
    op.create_index("ix_generations_created_at", "generations", ["created_at"])


def downgrade() -> None:
    op.drop_table("generations")
    op.drop_table("batch_jobs")
    op.drop_table("provider_configs")
