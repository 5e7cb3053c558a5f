"""Create members, job_executions, webhook_events and member_notifications.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "members",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("external_chat_id", sa.BigInteger(), nullable=True),
        sa.Column("external_username", sa.String(256), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_subscription_id", sa.String(128), nullable=True),
        sa.Column("external_customer_id", sa.String(128), nullable=True),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delinquent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('trial', 'active', 'delinquent', 'removed')",
            name="ck_members_status",
        ),
        sa.CheckConstraint(
            "payment_method IS NULL OR payment_method IN ('card_recurring', 'pix', 'boleto')",
            name="ck_members_payment_method",
        ),
        sa.UniqueConstraint("tenant_id", "external_chat_id", name="uq_members_tenant_chat"),
        sa.UniqueConstraint("tenant_id", "email", name="uq_members_tenant_email"),
    )
    op.create_index("ix_members_tenant_status", "members", ["tenant_id", "status"])
    op.create_index("ix_members_subscription", "members", ["external_subscription_id"])

    op.create_table(
        "job_executions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("job_name", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("result", _JSON, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed')",
            name="ck_job_executions_status",
        ),
    )
    op.create_index("ix_job_executions_name_started", "job_executions", ["job_name", "started_at"])
    op.create_index("ix_job_executions_status", "job_executions", ["status"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("external_event_id", sa.String(256), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("outcome", _JSON, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("external_event_id", name="uq_webhook_events_external_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_webhook_events_status",
        ),
    )
    op.create_index(
        "ix_webhook_events_unprocessed",
        "webhook_events",
        ["processed_at", "attempts", "created_at"],
    )

    op.create_table(
        "member_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(32), nullable=False, server_default="chat"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_member_notifications_member_type",
        "member_notifications",
        ["member_id", "notification_type", "sent_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_member_notifications_member_type", table_name="member_notifications")
    op.drop_table("member_notifications")
    op.drop_index("ix_webhook_events_unprocessed", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_job_executions_status", table_name="job_executions")
    op.drop_index("ix_job_executions_name_started", table_name="job_executions")
    op.drop_table("job_executions")
    op.drop_index("ix_members_subscription", table_name="members")
    op.drop_index("ix_members_tenant_status", table_name="members")
    op.drop_table("members")
