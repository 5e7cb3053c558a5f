"""Scheduled membership jobs and the runner that guards them.

Every job goes through :meth:`JobRunner.run`: the in-process job lock makes
the run single-flight, and the execution ledger records its outcome and
alerts when it raises.  A run that finds its job already in progress
returns ``{"success": True, "skipped": True}`` without doing any work and
without a ledger row.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from membership_core.config import Settings
from membership_core.models.member import Member, MemberStatus
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.runtime.state import RuntimeState
from membership_core.state.database import session_scope
from membership_core.state.repository import NotificationRepository, WebhookEventRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_api.services.alert_service import AlertService
from membership_api.services.chat_gateway import ChatGateway
from membership_api.services.job_execution_service import JobExecutionLedger
from membership_api.services.member_service import MemberService
from membership_api.services.reconciliation_service import ReconciliationEngine
from membership_api.services.webhook_gate import WebhookIdempotencyGate

logger = logging.getLogger(__name__)

KICK_EXPIRED = "membership:kick-expired"
RENEWAL_REMINDERS = "membership:renewal-reminders"
TRIAL_REMINDERS = "membership:trial-reminders"
RECONCILIATION = "membership:reconciliation"
PROCESS_WEBHOOKS = "membership:process-webhooks"
CLEANUP_STUCK_JOBS = "membership:cleanup-stuck-jobs"

RENEWAL_REMINDER_NOTIFICATION = "renewal_reminder"
TRIAL_REMINDER_NOTIFICATION = "trial_reminder"

JobFn = Callable[[], Awaitable[dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UnknownJobError(KeyError):
    """Raised when a job name has no registered implementation."""


@dataclass
class JobContext:
    """Collaborators shared by every job."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    runtime: RuntimeState
    alerts: AlertService
    ledger: JobExecutionLedger
    chat: ChatGateway
    gate: WebhookIdempotencyGate
    reconciliation: ReconciliationEngine
    community_chat_id: int | None = None
    clock: Callable[[], datetime] = _utcnow


def farewell_message(member: Member, reason: str, checkout_url: str | None) -> str:
    greeting = f"Hi @{member.external_username}," if member.external_username else "Hi,"
    if reason == "trial_expired":
        body = "your free trial has ended and your access to the community was closed."
    else:
        body = "we could not confirm your payment, so your access to the community was closed."
    lines = [greeting, body]
    if checkout_url:
        lines.append(f"You can come back at any time by subscribing here: {checkout_url}")
    return "\n\n".join(lines)


def renewal_reminder_message(days_left: int, checkout_url: str | None) -> str:
    when = "tomorrow" if days_left == 1 else f"in {days_left} days"
    lines = [f"Your subscription ends {when}. Renew now to keep your access."]
    if checkout_url:
        lines.append(f"Renew here: {checkout_url}")
    return "\n\n".join(lines)


def trial_reminder_message(member: Member, days_left: int, checkout_url: str | None) -> str:
    greeting = f"Hi @{member.external_username}," if member.external_username else "Hi,"
    when = "tomorrow" if days_left == 1 else f"in {days_left} days"
    lines = [greeting, f"your free trial ends {when}. Subscribe to keep your access to the community."]
    if checkout_url:
        lines.append(f"Subscribe here: {checkout_url}")
    return "\n\n".join(lines)


class MembershipJobs:
    """The job implementations.  Each returns a JSON-safe summary dict."""

    def __init__(self, ctx: JobContext) -> None:
        self._ctx = ctx

    # -- kick expired --------------------------------------------------------

    async def kick_expired(self) -> dict[str, Any]:
        """Remove delinquent members past the grace period and expired trials.

        The member is claimed as ``removed`` with a compare-and-set before
        the kick, so a member whose payment landed after the query is never
        kicked.
        """
        ctx = self._ctx
        counts = {"kicked": 0, "already_removed": 0, "failed": 0, "skipped": 0}
        if ctx.community_chat_id is None:
            logger.error("Community chat id is not configured; no member can be removed")
            await ctx.alerts.notify(
                "CONFIGURATION ERROR: the community chat id is not configured. Expired members cannot be removed."
            )
            return {"success": False, **counts, "error": ErrorCode.CONFIG_MISSING.value}

        async with session_scope(ctx.session_factory) as session:
            due = await MemberService(session, ctx.settings, clock=ctx.clock).members_due_for_removal()
        if not due.success:
            message = due.error.message if due.error else "member query failed"
            logger.error("kick-expired could not load members: %s", message)
            return {"success": False, **counts, "error": message}

        members: list[Member] = due.data
        logger.info("kick-expired: %d member(s) due for removal", len(members))
        for member in members:
            outcome = await self._kick_one(member, ctx.community_chat_id)
            counts[outcome] += 1

        logger.info(
            "kick-expired complete: kicked=%d already_removed=%d failed=%d skipped=%d",
            counts["kicked"],
            counts["already_removed"],
            counts["failed"],
            counts["skipped"],
        )
        return {"success": True, **counts}

    async def _kick_one(self, member: Member, community_chat_id: int) -> str:
        ctx = self._ctx
        reason = "trial_expired" if member.status is MemberStatus.TRIAL else "payment_failed"

        async with session_scope(ctx.session_factory) as session:
            claimed = await MemberService(session, ctx.settings, clock=ctx.clock).mark_removed(
                member.id, reason, expected_status=member.status
            )
        if not claimed.success:
            if claimed.error_code == ErrorCode.RACE_CONDITION.value:
                logger.info("Member %s changed status before removal; skipping", member.id)
                return "skipped"
            logger.error("Could not mark member %s as removed: %s", member.id, claimed.error_code)
            return "failed"

        if member.external_chat_id is None:
            logger.warning("Member %s has no chat id; marked removed without a kick", member.id)
            return "already_removed"

        farewell = await ctx.chat.send_private_message(
            member.external_chat_id,
            farewell_message(member, reason, ctx.settings.checkout_url),
        )
        if not farewell.success and farewell.error_code != ErrorCode.USER_BLOCKED_BOT.value:
            logger.warning("Farewell message to member %s failed: %s", member.id, farewell.error_code)

        kicked = await ctx.chat.kick_member(member.external_chat_id, community_chat_id)
        if kicked.success:
            logger.info("Member %s removed from the community (%s)", member.id, reason, extra={"member_id": member.id})
            return "kicked"
        if kicked.error_code == ErrorCode.USER_NOT_IN_GROUP.value:
            logger.info("Member %s was no longer in the community", member.id)
            return "already_removed"

        logger.error("Kick of member %s failed: %s", member.id, kicked.error_code)
        await ctx.alerts.kick_failure_alert(
            member.id,
            member.external_username,
            member.external_chat_id,
            kicked.error_code or ErrorCode.CHAT_ERROR.value,
            kicked.error.message if kicked.error else "",
        )
        return "failed"

    # -- reminders -----------------------------------------------------------

    def _local_day(self) -> tuple[ZoneInfo, datetime]:
        tz = ZoneInfo(self._ctx.settings.scheduler_timezone)
        now_local = self._ctx.clock().astimezone(tz)
        return tz, now_local.replace(hour=0, minute=0, second=0, microsecond=0)

    async def renewal_reminders(self) -> dict[str, Any]:
        """Remind manual-payment members before their period ends, once per day."""
        ctx = self._ctx
        counts = {"sent": 0, "skipped": 0, "failed": 0}
        async with session_scope(ctx.session_factory) as session:
            due = await MemberService(session, ctx.settings, clock=ctx.clock).members_due_for_renewal_reminder()
        if not due.success:
            message = due.error.message if due.error else "member query failed"
            return {"success": False, **counts, "error": message}

        tz, start_of_day = self._local_day()
        targets = set(ctx.settings.renewal_reminder_days)

        for member in due.data:
            if member.subscription_ends_at is None:
                continue
            days_left = (member.subscription_ends_at.astimezone(tz).date() - start_of_day.date()).days
            if days_left not in targets:
                continue
            outcome = await self._remind_one(
                member,
                RENEWAL_REMINDER_NOTIFICATION,
                renewal_reminder_message(days_left, ctx.settings.checkout_url),
                start_of_day,
            )
            counts[outcome] += 1

        logger.info(
            "renewal-reminders complete: sent=%d skipped=%d failed=%d",
            counts["sent"],
            counts["skipped"],
            counts["failed"],
        )
        return {"success": True, **counts}

    async def trial_reminders(self) -> dict[str, Any]:
        """Remind trial members in the last days of their trial, once per day."""
        ctx = self._ctx
        counts = {"sent": 0, "skipped": 0, "failed": 0}
        async with session_scope(ctx.session_factory) as session:
            due = await MemberService(session, ctx.settings, clock=ctx.clock).members_due_for_trial_reminder()
        if not due.success:
            message = due.error.message if due.error else "member query failed"
            return {"success": False, **counts, "error": message}

        tz, start_of_day = self._local_day()
        targets = set(ctx.settings.trial_reminder_days)

        for member in due.data:
            if member.trial_ends_at is None:
                continue
            days_left = (member.trial_ends_at.astimezone(tz).date() - start_of_day.date()).days
            if days_left not in targets:
                continue
            outcome = await self._remind_one(
                member,
                TRIAL_REMINDER_NOTIFICATION,
                trial_reminder_message(member, days_left, ctx.settings.checkout_url),
                start_of_day,
            )
            counts[outcome] += 1

        logger.info(
            "trial-reminders complete: sent=%d skipped=%d failed=%d",
            counts["sent"],
            counts["skipped"],
            counts["failed"],
        )
        return {"success": True, **counts}

    async def _remind_one(self, member: Member, notification_type: str, text: str, since: datetime) -> str:
        ctx = self._ctx
        if member.external_chat_id is None:
            return "skipped"
        async with session_scope(ctx.session_factory) as session:
            notifications = NotificationRepository(session, tenant_id=ctx.settings.tenant_id)
            if await notifications.has_notification_since(member.id, notification_type, since):
                return "skipped"

        sent = await ctx.chat.send_private_message(member.external_chat_id, text)
        if not sent.success:
            if sent.error_code == ErrorCode.USER_BLOCKED_BOT.value:
                return "skipped"
            logger.warning("%s to member %s failed: %s", notification_type, member.id, sent.error_code)
            return "failed"

        async with session_scope(ctx.session_factory) as session:
            await NotificationRepository(session, tenant_id=ctx.settings.tenant_id).record(member.id, notification_type)
        return "sent"

    # -- webhook sweep -------------------------------------------------------

    async def process_webhooks(self) -> dict[str, Any]:
        """Re-drive stored events that have not been processed yet."""
        ctx = self._ctx
        async with session_scope(ctx.session_factory) as session:
            rows = await WebhookEventRepository(session).list_unprocessed(
                ctx.settings.webhook_max_attempts,
                ctx.settings.webhook_sweep_batch_size,
            )
            event_ids = [row.id for row in rows]

        processed = 0
        failed = 0
        for event_id in event_ids:
            result: OperationResult = await ctx.gate.reprocess(event_id)
            if result.success:
                processed += 1
            else:
                failed += 1
        if event_ids:
            logger.info("process-webhooks: processed=%d failed=%d", processed, failed)
        return {"success": True, "processed": processed, "failed": failed}

    # -- ledger housekeeping -------------------------------------------------

    async def cleanup_stuck_jobs(self) -> dict[str, Any]:
        max_age = timedelta(minutes=self._ctx.settings.stuck_job_max_age_minutes)
        return await self._ctx.ledger.cleanup_stuck_jobs(max_age)

    async def reconciliation(self) -> dict[str, Any]:
        return await self._ctx.reconciliation.reconcile()


class JobRunner:
    """Run registered jobs under the job lock and the execution ledger."""

    def __init__(self, ctx: JobContext, jobs: MembershipJobs | None = None) -> None:
        self._ctx = ctx
        jobs = jobs or MembershipJobs(ctx)
        self._registry: dict[str, JobFn] = {
            KICK_EXPIRED: jobs.kick_expired,
            RENEWAL_REMINDERS: jobs.renewal_reminders,
            TRIAL_REMINDERS: jobs.trial_reminders,
            RECONCILIATION: jobs.reconciliation,
            PROCESS_WEBHOOKS: jobs.process_webhooks,
            CLEANUP_STUCK_JOBS: jobs.cleanup_stuck_jobs,
        }

    @property
    def job_names(self) -> list[str]:
        return sorted(self._registry)

    def register(self, job_name: str, fn: JobFn) -> None:
        self._registry[job_name] = fn

    async def run(self, job_name: str) -> dict[str, Any]:
        """Run *job_name* once.

        Raises
        ------
        UnknownJobError
            If no job is registered under *job_name*.
        """
        fn = self._registry.get(job_name)
        if fn is None:
            raise UnknownJobError(job_name)
        return await self._ctx.runtime.job_lock.run_exclusive(
            job_name,
            lambda: self._ctx.ledger.with_execution_logging(job_name, fn),
        )
