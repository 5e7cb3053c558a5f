"""SQLAlchemy 2.0 ORM table definitions for the membership state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that stays UTC-aware on SQLite.

    SQLite drops tzinfo on round-trip; naive values coming back are UTC by
    construction because every write goes through :func:`_utcnow`.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all membership tables."""


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


class MemberTable(Base):
    """Community members and their subscription lifecycle state.

    Rows are never deleted; ``removed`` is the soft-terminal status.
    """

    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    external_username: Mapped[str | None] = mapped_column(String(256), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    trial_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    subscription_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    subscription_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delinquent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    kicked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('trial', 'active', 'delinquent', 'removed')",
            name="ck_members_status",
        ),
        CheckConstraint(
            "payment_method IS NULL OR payment_method IN ('card_recurring', 'pix', 'boleto')",
            name="ck_members_payment_method",
        ),
        UniqueConstraint("tenant_id", "external_chat_id", name="uq_members_tenant_chat"),
        UniqueConstraint("tenant_id", "email", name="uq_members_tenant_email"),
        Index("ix_members_tenant_status", "tenant_id", "status"),
        Index("ix_members_subscription", "external_subscription_id"),
    )


# ---------------------------------------------------------------------------
# Job execution ledger
# ---------------------------------------------------------------------------


class JobExecutionTable(Base):
    """One row per scheduled or manual job run."""

    __tablename__ = "job_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'success', 'failed')",
            name="ck_job_executions_status",
        ),
        Index("ix_job_executions_name_started", "job_name", "started_at"),
        Index("ix_job_executions_status", "status"),
    )


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Inbound provider events keyed by the provider's delivery id.

    ``processed_at`` is stamped exactly once, in the same transaction as the
    handler's side effects.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    external_event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_webhook_events_external_id"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_webhook_events_status",
        ),
        Index("ix_webhook_events_unprocessed", "processed_at", "attempts", "created_at"),
    )


# ---------------------------------------------------------------------------
# Member notifications
# ---------------------------------------------------------------------------


class MemberNotificationTable(Base):
    """Messages sent to members, used to deduplicate daily reminders."""

    __tablename__ = "member_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="chat")
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_member_notifications_member_type", "member_id", "notification_type", "sent_at"),)
