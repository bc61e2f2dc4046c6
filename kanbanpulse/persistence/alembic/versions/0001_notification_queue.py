"""add persistent notification queue, runtime settings and preference tables

Revision ID: 0001_notification_queue
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_notification_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per pending (recipient, subject) slot; terminal rows are kept until the retention sweep.
    op.create_table(
        "notification_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("change_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("change_count >= 1", name="ck_notification_queue_change_count"),
        sa.CheckConstraint("scheduled_at >= first_seen_at", name="ck_notification_queue_scheduled_after_first_seen"),
    )
    op.create_index(
        "ix_notification_queue_status_scheduled",
        "notification_queue",
        ["status", "scheduled_at"],
    )
    op.create_index(
        "ix_notification_queue_recipient_subject_status",
        "notification_queue",
        ["recipient_id", "subject_id", "status"],
    )
    # Partial unique index closes the lookup-then-insert race on the coalescing key.
    op.create_index(
        "uq_notification_queue_pending_key",
        "notification_queue",
        ["recipient_id", "subject_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_notification_queue_updated_at", "notification_queue", ["updated_at"])
    op.create_index("ix_notification_queue_claim_token", "notification_queue", ["claim_token"])

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "user_notification_preferences",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column(
            "preferences_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_notification_preferences")
    op.drop_table("app_settings")
    op.drop_index("ix_notification_queue_claim_token", table_name="notification_queue")
    op.drop_index("ix_notification_queue_updated_at", table_name="notification_queue")
    op.drop_index("uq_notification_queue_pending_key", table_name="notification_queue")
    op.drop_index("ix_notification_queue_recipient_subject_status", table_name="notification_queue")
    op.drop_index("ix_notification_queue_status_scheduled", table_name="notification_queue")
    op.drop_table("notification_queue")
