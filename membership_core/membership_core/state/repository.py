"""Repository layer wrapping async SQLAlchemy access to the state tables.

Each repository is a thin façade over one table.  Callers own the session
and its transaction; repositories only ``flush`` so that several writes can
commit atomically.  Store errors propagate as ``SQLAlchemyError`` and are
translated to result codes by the service layer.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from membership_core.models.job import JobExecutionStatus
from membership_core.models.member import MemberStatus
from membership_core.models.webhook import WebhookEventStatus
from membership_core.state.tables import (
    JobExecutionTable,
    MemberNotificationTable,
    MemberTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)

# Sentinel meaning "use the repository's configured tenant".  An explicit
# ``None`` disables tenant filtering for that call.
_UNSET: Any = object()


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The ORM table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Columns of the unique index used for conflict detection.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# MemberRepository
# ---------------------------------------------------------------------------


class MemberRepository:
    """CRUD and compare-and-set operations on the ``members`` table.

    Parameters
    ----------
    session:
        An active async session.
    tenant_id:
        Tenant applied to every read and write.  ``None`` means the
        deployment is single-tenant and no filter is added.
    """

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _tenant_clause(self, tenant_id: Any = _UNSET) -> list[Any]:
        effective = self._tenant_id if tenant_id is _UNSET else tenant_id
        if effective is None:
            return []
        return [MemberTable.tenant_id == effective]

    async def create(self, *, status: MemberStatus, **fields: Any) -> MemberTable:
        """Insert a new member.  Unique violations raise ``IntegrityError``."""
        values = {key: (value.value if isinstance(value, Enum) else value) for key, value in fields.items()}
        row = MemberTable(tenant_id=self._tenant_id, status=status.value, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, member_id: str, *, tenant_id: Any = _UNSET) -> MemberTable | None:
        stmt = select(MemberTable).where(
            MemberTable.id == member_id,
            *self._tenant_clause(tenant_id),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_chat_id(self, chat_id: int, *, tenant_id: Any = _UNSET) -> MemberTable | None:
        stmt = select(MemberTable).where(
            MemberTable.external_chat_id == chat_id,
            *self._tenant_clause(tenant_id),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str, *, tenant_id: Any = _UNSET) -> MemberTable | None:
        """Case-insensitive lookup by email address."""
        stmt = select(MemberTable).where(
            func.lower(MemberTable.email) == email.strip().lower(),
            *self._tenant_clause(tenant_id),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def update_status(
        self,
        member_id: str,
        expected_status: MemberStatus,
        patch: dict[str, Any],
    ) -> MemberTable | None:
        """Apply *patch* only if the member is still in *expected_status*.

        Issues a single ``UPDATE ... WHERE id = ? AND status = ? RETURNING``.
        Returns the updated row, or ``None`` when no row matched (the member
        does not exist or another writer changed its status first).
        """
        values = {key: (value.value if isinstance(value, Enum) else value) for key, value in patch.items()}
        values["updated_at"] = _now()
        stmt = (
            update(MemberTable)
            .where(
                MemberTable.id == member_id,
                MemberTable.status == expected_status.value,
                *self._tenant_clause(),
            )
            .values(**values)
            .returning(MemberTable)
        )
        result = await self._session.scalars(stmt, execution_options={"populate_existing": True})
        row = result.one_or_none()
        if row is None:
            logger.info(
                "CAS update missed for member %s (expected status %s)",
                member_id,
                expected_status.value,
            )
        return row

    async def list_for_reconciliation(self) -> list[MemberTable]:
        """Active members bound to an external subscription, in stable order."""
        stmt = (
            select(MemberTable)
            .where(
                MemberTable.status == MemberStatus.ACTIVE.value,
                MemberTable.external_subscription_id.is_not(None),
                *self._tenant_clause(),
            )
            .order_by(MemberTable.created_at, MemberTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_due_for_removal(self, now: datetime, grace: timedelta) -> list[MemberTable]:
        """Delinquent members past the grace period and trials that have ended."""
        stmt = (
            select(MemberTable)
            .where(
                or_(
                    (MemberTable.status == MemberStatus.DELINQUENT.value)
                    & (or_(MemberTable.delinquent_at.is_(None), MemberTable.delinquent_at <= now - grace)),
                    (MemberTable.status == MemberStatus.TRIAL.value) & (MemberTable.trial_ends_at <= now),
                ),
                *self._tenant_clause(),
            )
            .order_by(MemberTable.created_at, MemberTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_expiring_subscriptions(
        self,
        now: datetime,
        horizon: timedelta,
        payment_methods: list[str],
    ) -> list[MemberTable]:
        """Active members on the given payment methods whose period ends within *horizon*."""
        stmt = (
            select(MemberTable)
            .where(
                MemberTable.status == MemberStatus.ACTIVE.value,
                MemberTable.payment_method.in_(payment_methods),
                MemberTable.subscription_ends_at > now,
                MemberTable.subscription_ends_at <= now + horizon,
                *self._tenant_clause(),
            )
            .order_by(MemberTable.subscription_ends_at, MemberTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_trials_ending(self, now: datetime, horizon: timedelta) -> list[MemberTable]:
        """Trial members whose trial ends after *now* and within *horizon*."""
        stmt = (
            select(MemberTable)
            .where(
                MemberTable.status == MemberStatus.TRIAL.value,
                MemberTable.trial_ends_at > now,
                MemberTable.trial_ends_at <= now + horizon,
                *self._tenant_clause(),
            )
            .order_by(MemberTable.trial_ends_at, MemberTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# JobExecutionRepository
# ---------------------------------------------------------------------------


class JobExecutionRepository:
    """Append-and-finalise access to the ``job_executions`` ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, job_name: str, started_at: datetime | None = None) -> JobExecutionTable:
        row = JobExecutionTable(
            job_name=job_name,
            status=JobExecutionStatus.RUNNING.value,
            started_at=started_at or _now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, execution_id: str) -> JobExecutionTable | None:
        result = await self._session.execute(select(JobExecutionTable).where(JobExecutionTable.id == execution_id))
        return result.scalar_one_or_none()

    async def finalize(
        self,
        execution_id: str,
        status: JobExecutionStatus,
        *,
        finished_at: datetime,
        duration_ms: int | None,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Finalise a running record.  Returns ``False`` if it was not running."""
        stmt = (
            update(JobExecutionTable)
            .where(
                JobExecutionTable.id == execution_id,
                JobExecutionTable.status == JobExecutionStatus.RUNNING.value,
            )
            .values(
                status=status.value,
                finished_at=finished_at,
                duration_ms=duration_ms,
                result=result,
                error_message=error_message,
            )
        )
        res = await self._session.execute(stmt)
        return res.rowcount > 0  # type: ignore[union-attr]

    async def latest_per_job(self) -> list[JobExecutionTable]:
        """Most recent execution of every job name, ordered by job name."""
        latest = (
            select(
                JobExecutionTable.job_name,
                func.max(JobExecutionTable.started_at).label("max_started"),
            )
            .group_by(JobExecutionTable.job_name)
            .subquery()
        )
        stmt = (
            select(JobExecutionTable)
            .join(
                latest,
                (JobExecutionTable.job_name == latest.c.job_name)
                & (JobExecutionTable.started_at == latest.c.max_started),
            )
            .order_by(JobExecutionTable.job_name)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(self, limit: int = 50, job_name: str | None = None) -> list[JobExecutionTable]:
        stmt = select(JobExecutionTable)
        if job_name is not None:
            stmt = stmt.where(JobExecutionTable.job_name == job_name)
        stmt = stmt.order_by(JobExecutionTable.started_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def fail_stuck(self, cutoff: datetime, message: str) -> list[tuple[str, str]]:
        """Mark ``running`` rows started before *cutoff* as failed.

        Returns ``(id, job_name)`` pairs of the rows that were changed.
        """
        now = _now()
        stmt = (
            update(JobExecutionTable)
            .where(
                JobExecutionTable.status == JobExecutionStatus.RUNNING.value,
                JobExecutionTable.started_at < cutoff,
            )
            .values(
                status=JobExecutionStatus.FAILED.value,
                finished_at=now,
                error_message=message,
            )
            .returning(JobExecutionTable.id, JobExecutionTable.job_name)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Idempotency records for inbound provider events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_sighting(
        self,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> WebhookEventTable:
        """Insert the event if unseen and return the stored record either way."""
        now = _now()
        await _dialect_insert_nothing(
            self._session,
            WebhookEventTable,
            values={
                "external_event_id": external_event_id,
                "event_type": event_type,
                "payload": payload,
                "status": WebhookEventStatus.PENDING.value,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["external_event_id"],
        )
        row = await self.get_by_external_id(external_event_id)
        assert row is not None  # noqa: S101
        return row

    async def get_by_external_id(self, external_event_id: str) -> WebhookEventTable | None:
        stmt = (
            select(WebhookEventTable)
            .where(WebhookEventTable.external_event_id == external_event_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, event_id: str) -> WebhookEventTable | None:
        result = await self._session.execute(select(WebhookEventTable).where(WebhookEventTable.id == event_id))
        return result.scalar_one_or_none()

    async def mark_processed(self, event_id: str, outcome: dict[str, Any] | None) -> bool:
        """Stamp ``processed_at`` once.  ``False`` when already stamped."""
        now = _now()
        stmt = (
            update(WebhookEventTable)
            .where(
                WebhookEventTable.id == event_id,
                WebhookEventTable.processed_at.is_(None),
            )
            .values(
                processed_at=now,
                status=WebhookEventStatus.COMPLETED.value,
                outcome=outcome,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[union-attr]

    async def record_failure(self, event_id: str, error: str, max_attempts: int) -> tuple[int, str] | None:
        """Increment ``attempts`` and store *error* on an unprocessed event.

        The status flips to ``failed`` once attempts reach *max_attempts*.
        Returns ``(attempts, status)``, or ``None`` if the event was processed
        in the meantime.
        """
        next_attempts = WebhookEventTable.attempts + 1
        stmt = (
            update(WebhookEventTable)
            .where(
                WebhookEventTable.id == event_id,
                WebhookEventTable.processed_at.is_(None),
            )
            .values(
                attempts=next_attempts,
                last_error=error[:2000],
                status=case(
                    (next_attempts >= max_attempts, WebhookEventStatus.FAILED.value),
                    else_=WebhookEventStatus.PENDING.value,
                ),
                updated_at=_now(),
            )
            .returning(WebhookEventTable.attempts, WebhookEventTable.status)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), str(row[1])

    async def list_unprocessed(self, max_attempts: int, limit: int) -> list[WebhookEventTable]:
        """Retryable events, oldest first."""
        stmt = (
            select(WebhookEventTable)
            .where(
                WebhookEventTable.processed_at.is_(None),
                WebhookEventTable.attempts < max_attempts,
            )
            .order_by(WebhookEventTable.created_at, WebhookEventTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# NotificationRepository
# ---------------------------------------------------------------------------


class NotificationRepository:
    """Log of messages sent to members."""

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def record(self, member_id: str, notification_type: str, channel: str = "chat") -> None:
        self._session.add(
            MemberNotificationTable(
                member_id=member_id,
                tenant_id=self._tenant_id,
                notification_type=notification_type,
                channel=channel,
                sent_at=_now(),
            )
        )
        await self._session.flush()

    async def has_notification_since(self, member_id: str, notification_type: str, since: datetime) -> bool:
        stmt = select(func.count()).where(
            MemberNotificationTable.member_id == member_id,
            MemberNotificationTable.notification_type == notification_type,
            MemberNotificationTable.sent_at >= since,
        )
        result = await self._session.execute(stmt)
        return (result.scalar_one() or 0) > 0
