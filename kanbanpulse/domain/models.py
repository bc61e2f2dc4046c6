from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")

STATUS_PENDING = "pending"
STATUS_CLAIMED = "claimed"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED)


class Base(DeclarativeBase):
    pass


class NotificationEntry(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        Index("ix_notification_queue_status_scheduled", "status", "scheduled_at"),
        Index("ix_notification_queue_recipient_subject_status", "recipient_id", "subject_id", "status"),
        # One pending row per coalescing key; concurrent enqueues collide here and fall back to update.
        Index(
            "uq_notification_queue_pending_key",
            "recipient_id",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_notification_queue_updated_at", "updated_at"),
        Index("ix_notification_queue_claim_token", "claim_token"),
        CheckConstraint("change_count >= 1", name="ck_notification_queue_change_count"),
        CheckConstraint("scheduled_at >= first_seen_at", name="ck_notification_queue_scheduled_after_first_seen"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    # Latest known render state; replaced on every coalesce.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    change_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def coalescing_key(self) -> tuple[str, str]:
        return (self.recipient_id, self.subject_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AppSetting(Base):
    __tablename__ = "app_settings"

    # Operator-editable runtime settings, e.g. NOTIFICATION_DELAY in minutes.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserNotificationPreference(Base):
    __tablename__ = "user_notification_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Category -> enabled flag; absent categories are enabled.
    preferences_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
