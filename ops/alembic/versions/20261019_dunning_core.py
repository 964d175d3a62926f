"""Create dunning steps, logs and usage trackers

Revision ID: 20261019_dunning_core
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_dunning_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "dunning_steps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("school_id", sa.String(), nullable=False),
        sa.Column("day_offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("event_type", sa.String(16), nullable=False, server_default="DUE_DATE"),
        sa.Column("template_key", sa.String(), nullable=True),
        sa.Column("use_custom_message", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("event_type IN ('CREATION', 'DUE_DATE')", name="ck_dunning_steps_event_type"),
    )
    op.create_index("ix_dunning_steps_school_id", "dunning_steps", ["school_id"])

    op.create_table(
        "dunning_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("school_id", sa.String(), nullable=False),
        sa.Column("installment_id", sa.String(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('SUCCESS', 'FAILED')", name="ck_dunning_logs_status"),
    )
    op.create_index("ix_dunning_logs_school_id", "dunning_logs", ["school_id"])
    op.create_index("ix_dunning_logs_pair", "dunning_logs", ["installment_id", "step_id"])
    # At most one SUCCESS row per (installment, step); FAILED rows may repeat
    op.create_index(
        "uq_dunning_logs_success_pair",
        "dunning_logs",
        ["installment_id", "step_id"],
        unique=True,
        postgresql_where=sa.text("status = 'SUCCESS'"),
        sqlite_where=sa.text("status = 'SUCCESS'"),
    )

    op.create_table(
        "school_usage_trackers",
        sa.Column("school_id", sa.String(), primary_key=True),
        sa.Column("messages_sent_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("limit_messages", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_period_start", sa.Date(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("school_usage_trackers")
    op.drop_index("uq_dunning_logs_success_pair", table_name="dunning_logs")
    op.drop_index("ix_dunning_logs_pair", table_name="dunning_logs")
    op.drop_index("ix_dunning_logs_school_id", table_name="dunning_logs")
    op.drop_table("dunning_logs")
    op.drop_index("ix_dunning_steps_school_id", table_name="dunning_steps")
    op.drop_table("dunning_steps")
