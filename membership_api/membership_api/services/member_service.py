"""Member lifecycle operations.

Every status change is validated against the transition table and then
applied with a compare-and-set on the status that was read, so two writers
racing on the same member can never both win.  All operations return an
:class:`OperationResult`; store failures surface as ``STORE_ERROR``.
"""

from __future__ import annotations

import functools
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, ParamSpec

from membership_core.config import Settings
from membership_core.lifecycle.state_machine import (
    allowed_transitions,
    can_reactivate,
    can_transition,
)
from membership_core.models.member import (
    Member,
    MemberCreate,
    MemberStatus,
    SubscriptionData,
)
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.state.repository import MemberRepository
from membership_core.state.tables import MemberTable
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

P = ParamSpec("P")


def _store_guard(
    fn: Callable[P, Awaitable[OperationResult]],
) -> Callable[P, Awaitable[OperationResult]]:
    """Translate unexpected ``SQLAlchemyError`` into a ``STORE_ERROR`` result."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> OperationResult:
        try:
            return await fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("%s failed with a store error: %s", fn.__name__, exc, exc_info=True)
            return OperationResult.fail(ErrorCode.STORE_ERROR, str(exc))

    return wrapper


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class MemberService:
    """Business operations on members for one tenant scope.

    Parameters
    ----------
    session:
        Session whose transaction the caller commits or rolls back.
    settings:
        Supplies the tenant scope and the trial/subscription lengths.
    clock:
        Current-time source, injected by tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock
        self._repo = MemberRepository(session, tenant_id=settings.tenant_id)

    @property
    def repository(self) -> MemberRepository:
        return self._repo

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _not_found(member_id: str) -> OperationResult:
        return OperationResult.fail(ErrorCode.MEMBER_NOT_FOUND, f"member {member_id} not found", member_id=member_id)

    def _subscription_period(self, start: datetime) -> dict[str, Any]:
        return {
            "subscription_started_at": start,
            "subscription_ends_at": start + timedelta(days=self._settings.subscription_days),
        }

    async def _compare_and_set(
        self,
        row: MemberTable,
        patch: dict[str, Any],
        operation: str,
    ) -> OperationResult:
        expected = MemberStatus(row.status)
        member_id = row.id
        updated = await self._repo.update_status(member_id, expected, patch)
        if updated is None:
            if await self._repo.get_by_id(member_id) is None:
                return self._not_found(member_id)
            logger.warning("%s lost a race on member %s (expected %s)", operation, member_id, expected.value)
            return OperationResult.fail(
                ErrorCode.RACE_CONDITION,
                "member status changed during update",
                member_id=member_id,
                expected_status=expected.value,
            )
        logger.info("%s: member %s %s -> %s", operation, member_id, expected.value, updated.status)
        return OperationResult.ok(Member.model_validate(updated))

    def _invalid_transition(self, row: MemberTable, target: MemberStatus) -> OperationResult:
        logger.warning("Invalid transition for member %s: %s -> %s", row.id, row.status, target.value)
        return OperationResult.fail(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"cannot move member from '{row.status}' to '{target.value}'",
            member_id=row.id,
            current_status=row.status,
            allowed=allowed_transitions(row.status),
        )

    # -- lookups -------------------------------------------------------------

    @_store_guard
    async def get_member(self, member_id: str) -> OperationResult:
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)
        return OperationResult.ok(Member.model_validate(row))

    @_store_guard
    async def get_member_by_chat_id(self, chat_id: int) -> OperationResult:
        row = await self._repo.get_by_external_chat_id(chat_id)
        if row is None:
            return OperationResult.fail(ErrorCode.MEMBER_NOT_FOUND, f"no member with chat id {chat_id}")
        return OperationResult.ok(Member.model_validate(row))

    @_store_guard
    async def get_member_by_email(self, email: str) -> OperationResult:
        row = await self._repo.get_by_email(email)
        if row is None:
            return OperationResult.fail(ErrorCode.MEMBER_NOT_FOUND, "no member with that email")
        return OperationResult.ok(Member.model_validate(row))

    # -- creation ------------------------------------------------------------

    @_store_guard
    async def create_trial_member(self, data: MemberCreate, trial_days: int | None = None) -> OperationResult:
        """Start a trial for a member joining the community for the first time."""
        if data.external_chat_id is not None and await self._repo.get_by_external_chat_id(data.external_chat_id):
            return OperationResult.fail(
                ErrorCode.MEMBER_ALREADY_EXISTS,
                f"member with chat id {data.external_chat_id} already exists",
            )
        now = self._clock()
        days = trial_days if trial_days is not None else self._settings.trial_days
        try:
            row = await self._repo.create(
                status=MemberStatus.TRIAL,
                external_chat_id=data.external_chat_id,
                external_username=data.external_username,
                email=data.email,
                trial_started_at=now,
                trial_ends_at=now + timedelta(days=days),
            )
        except IntegrityError:
            await self._session.rollback()
            return OperationResult.fail(ErrorCode.MEMBER_ALREADY_EXISTS, "member already exists")
        logger.info("Created trial member %s (%d days)", row.id, days)
        return OperationResult.ok(Member.model_validate(row))

    @_store_guard
    async def create_active_member(self, email: str, subscription: SubscriptionData) -> OperationResult:
        """Create a member who paid before ever joining the community."""
        now = self._clock()
        try:
            row = await self._repo.create(
                status=MemberStatus.ACTIVE,
                email=email,
                external_subscription_id=subscription.subscription_id,
                external_customer_id=subscription.customer_id,
                payment_method=subscription.payment_method,
                last_payment_at=now,
                **self._subscription_period(now),
            )
        except IntegrityError:
            await self._session.rollback()
            return OperationResult.fail(ErrorCode.MEMBER_ALREADY_EXISTS, f"member with email {email} already exists")
        logger.info("Created active member %s", row.id)
        return OperationResult.ok(Member.model_validate(row))

    # -- transitions ---------------------------------------------------------

    @_store_guard
    async def update_status(
        self,
        member_id: str,
        new_status: MemberStatus,
        note: str | None = None,
        *,
        expected_status: MemberStatus | None = None,
    ) -> OperationResult:
        """Move a member along one edge of the transition table.

        With *expected_status* the change only applies if the member is still
        in the status the caller last saw; otherwise it is a race.
        """
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)
        if expected_status is not None and row.status != expected_status.value:
            logger.info("Member %s is %s, expected %s", member_id, row.status, expected_status.value)
            return OperationResult.fail(
                ErrorCode.RACE_CONDITION,
                "member status changed since it was read",
                member_id=member_id,
                expected_status=expected_status.value,
            )
        if not can_transition(row.status, new_status):
            return self._invalid_transition(row, new_status)

        now = self._clock()
        patch: dict[str, Any] = {"status": new_status}
        if new_status is MemberStatus.DELINQUENT:
            patch["delinquent_at"] = now
        elif new_status is MemberStatus.REMOVED:
            patch["kicked_at"] = now
        elif new_status is MemberStatus.ACTIVE:
            patch["delinquent_at"] = None
        if note:
            patch["notes"] = _append_note(row.notes, note)
        return await self._compare_and_set(row, patch, "update_status")

    @_store_guard
    async def activate_member(self, member_id: str, subscription: SubscriptionData) -> OperationResult:
        """Record a payment: trial/delinquent become active with a fresh period.

        An already-active member only has its subscription data refreshed,
        still conditioned on the member being active.
        """
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)

        now = self._clock()
        binding = {
            "external_subscription_id": subscription.subscription_id or row.external_subscription_id,
            "external_customer_id": subscription.customer_id or row.external_customer_id,
            "payment_method": subscription.payment_method or row.payment_method,
            "last_payment_at": now,
        }
        if row.status == MemberStatus.ACTIVE.value:
            return await self._compare_and_set(row, binding, "activate_member")
        if not can_transition(row.status, MemberStatus.ACTIVE):
            return self._invalid_transition(row, MemberStatus.ACTIVE)

        patch = {
            "status": MemberStatus.ACTIVE,
            "delinquent_at": None,
            **binding,
            **self._subscription_period(now),
        }
        return await self._compare_and_set(row, patch, "activate_member")

    @_store_guard
    async def renew_subscription(self, member_id: str) -> OperationResult:
        """Extend the paid period; a delinquent member becomes active again."""
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)

        now = self._clock()
        period = timedelta(days=self._settings.subscription_days)
        if row.status == MemberStatus.ACTIVE.value:
            current_end = row.subscription_ends_at or now
            patch: dict[str, Any] = {
                "subscription_ends_at": max(current_end, now) + period,
                "last_payment_at": now,
            }
        elif row.status == MemberStatus.DELINQUENT.value:
            patch = {
                "status": MemberStatus.ACTIVE,
                "delinquent_at": None,
                "last_payment_at": now,
                **self._subscription_period(now),
            }
        else:
            return OperationResult.fail(
                ErrorCode.INVALID_MEMBER_STATUS,
                f"cannot renew a member in '{row.status}' status",
                member_id=row.id,
                current_status=row.status,
            )
        return await self._compare_and_set(row, patch, "renew_subscription")

    async def mark_delinquent(
        self,
        member_id: str,
        *,
        expected_status: MemberStatus | None = None,
    ) -> OperationResult:
        return await self.update_status(member_id, MemberStatus.DELINQUENT, expected_status=expected_status)

    async def mark_removed(
        self,
        member_id: str,
        reason: str,
        *,
        expected_status: MemberStatus | None = None,
    ) -> OperationResult:
        return await self.update_status(
            member_id,
            MemberStatus.REMOVED,
            note=f"Removed at {self._clock().isoformat()}: {reason}",
            expected_status=expected_status,
        )

    @_store_guard
    async def reactivate(self, member_id: str, subscription: SubscriptionData | None = None) -> OperationResult:
        """Bring a removed member back as active after a new payment.

        This is the only way out of ``removed`` and is deliberately not an
        entry of the transition table.
        """
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)
        if not can_reactivate(row.status):
            return OperationResult.fail(
                ErrorCode.INVALID_MEMBER_STATUS,
                f"member is in '{row.status}' status, expected 'removed'",
                member_id=row.id,
                current_status=row.status,
            )

        now = self._clock()
        subscription = subscription or SubscriptionData()
        note = f"Reactivated at {now.isoformat()}"
        if subscription.subscription_id:
            note += f" (subscription {subscription.subscription_id})"
        patch: dict[str, Any] = {
            "status": MemberStatus.ACTIVE,
            "kicked_at": None,
            "delinquent_at": None,
            "last_payment_at": now,
            "external_subscription_id": subscription.subscription_id or row.external_subscription_id,
            "external_customer_id": subscription.customer_id or row.external_customer_id,
            "payment_method": subscription.payment_method or row.payment_method,
            "notes": _append_note(row.notes, note),
            **self._subscription_period(now),
        }
        return await self._compare_and_set(row, patch, "reactivate")

    # -- queries -------------------------------------------------------------

    @_store_guard
    async def members_for_reconciliation(self) -> OperationResult:
        rows = await self._repo.list_for_reconciliation()
        return OperationResult.ok([Member.model_validate(row) for row in rows])

    @_store_guard
    async def members_due_for_removal(self) -> OperationResult:
        """Delinquent members past the grace period plus expired trials."""
        rows = await self._repo.list_due_for_removal(
            self._clock(),
            timedelta(days=self._settings.delinquent_grace_days),
        )
        return OperationResult.ok([Member.model_validate(row) for row in rows])

    @_store_guard
    async def members_due_for_renewal_reminder(self) -> OperationResult:
        """Manual-payment members whose period ends within the reminder horizon."""
        days = self._settings.renewal_reminder_days
        if not days:
            return OperationResult.ok([])
        rows = await self._repo.list_expiring_subscriptions(
            self._clock(),
            timedelta(days=max(days) + 1),
            list(self._settings.manual_payment_methods),
        )
        return OperationResult.ok([Member.model_validate(row) for row in rows])

    @_store_guard
    async def members_due_for_trial_reminder(self) -> OperationResult:
        """Trial members whose trial ends within the reminder horizon."""
        days = self._settings.trial_reminder_days
        if not days:
            return OperationResult.ok([])
        rows = await self._repo.list_trials_ending(self._clock(), timedelta(days=max(days) + 1))
        return OperationResult.ok([Member.model_validate(row) for row in rows])

    @_store_guard
    async def can_rejoin_group(self, member_id: str) -> OperationResult:
        """Removed members may rejoin within the rejoin window after their kick."""
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)
        if row.status != MemberStatus.REMOVED.value:
            return OperationResult.ok({"can_rejoin": False, "reason": "not_removed"})
        if row.kicked_at is None:
            return OperationResult.ok({"can_rejoin": False, "reason": "no_kicked_at"})
        hours = (self._clock() - row.kicked_at).total_seconds() / 3600
        return OperationResult.ok(
            {
                "can_rejoin": hours < self._settings.rejoin_window_hours,
                "hours_since_kick": round(hours, 2),
            }
        )

    @_store_guard
    async def trial_days_remaining(self, member_id: str) -> OperationResult:
        """Whole days left in a trial, rounded up; zero once it has ended."""
        row = await self._repo.get_by_id(member_id)
        if row is None:
            return self._not_found(member_id)
        if row.status != MemberStatus.TRIAL.value or row.trial_ends_at is None:
            return OperationResult.fail(
                ErrorCode.INVALID_MEMBER_STATUS,
                f"member is in '{row.status}' status, expected 'trial'",
                member_id=row.id,
            )
        seconds = (row.trial_ends_at - self._clock()).total_seconds()
        return OperationResult.ok(max(0, math.ceil(seconds / 86400)))
