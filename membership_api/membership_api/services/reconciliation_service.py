"""Detect drift between local member state and the subscription provider.

Every active member bound to an external subscription is looked up at the
provider, one call at a time with a pause between calls.  The engine only
reports: desynchronised members go into one batched operator alert and a
high provider failure rate raises a critical alert.  No member is changed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from membership_core.config import Settings
from membership_core.models.member import Member
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.runtime.job_lock import JobLock
from membership_core.state.database import session_scope
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_api.services.alert_service import AlertService
from membership_api.services.member_service import MemberService

logger = logging.getLogger(__name__)

JOB_NAME = "membership:reconciliation"

_CANCELED_STATUSES = frozenset({"canceled", "cancelled"})
_PAYMENT_STATUSES = frozenset({"expired", "defaulted", "suspended"})

ACTION_REMOVE = "Check whether the member should be removed"
ACTION_PAYMENT = "Check the member's payment"
ACTION_NOT_FOUND = "Subscription does not exist at the provider; check whether the member should be removed"


class SubscriptionLookup(Protocol):
    async def get_subscription(self, subscription_id: str | None) -> OperationResult: ...


@dataclass(frozen=True)
class Classification:
    desynced: bool
    action: str | None = None


def classify_external_status(external_status: str | None) -> Classification:
    """Compare an active member against the provider's subscription status.

    Unknown statuses count as synced; only statuses that clearly contradict
    ``active`` are reported.
    """
    normalized = (external_status or "").strip().lower()
    if normalized in _CANCELED_STATUSES:
        return Classification(desynced=True, action=ACTION_REMOVE)
    if normalized in _PAYMENT_STATUSES:
        return Classification(desynced=True, action=ACTION_PAYMENT)
    return Classification(desynced=False)


@dataclass
class DesyncedMember:
    member: Member
    external_status: str
    suggested_action: str


def top_error_codes(codes: list[str], limit: int = 3) -> list[tuple[str, int]]:
    """Most frequent codes, highest count first; ties keep first-seen order."""
    counts = Counter(codes)
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]


class ReconciliationEngine:
    """Periodic provider reconciliation, guarded by the in-process job lock.

    Parameters
    ----------
    session_factory:
        Used once to load the members to check.
    provider:
        Subscription lookup client.
    alerts:
        Receives the desync and critical failure alerts.
    job_lock:
        Shared single-flight lock.
    settings:
        Rate limit, failure ratio and progress interval.
    sleep:
        Awaitable delay used for rate limiting, injected by tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: SubscriptionLookup,
        alerts: AlertService,
        job_lock: JobLock,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._alerts = alerts
        self._job_lock = job_lock
        self._settings = settings
        self._sleep = sleep

    async def run(self) -> dict[str, Any]:
        """Run one reconciliation pass unless one is already in progress."""
        return await self._job_lock.run_exclusive(JOB_NAME, self.reconcile)

    async def _load_members(self) -> OperationResult:
        async with session_scope(self._session_factory) as session:
            return await MemberService(session, self._settings).members_for_reconciliation()

    async def reconcile(self) -> dict[str, Any]:
        """One unguarded pass; callers that schedule it hold the job lock."""
        stats = {"total": 0, "synced": 0, "desynced": 0, "failed": 0}
        try:
            loaded = await self._load_members()
        except Exception as exc:
            logger.error("Reconciliation could not load members: %s", exc, exc_info=True)
            return {"success": False, "error": str(exc)}
        if not loaded.success:
            message = loaded.error.message if loaded.error else "member load failed"
            logger.error("Reconciliation could not load members: %s", message)
            return {"success": False, "error": message}

        members: list[Member] = loaded.data
        stats["total"] = len(members)
        if not members:
            logger.info("Reconciliation: no active members to check")
            return {"success": True, **stats}

        logger.info("Reconciliation: checking %d member(s)", len(members))
        desynced: list[DesyncedMember] = []
        error_codes: list[str] = []
        delay = self._settings.reconciliation_rate_limit_ms / 1000
        progress_every = self._settings.reconciliation_progress_every

        for index, member in enumerate(members, start=1):
            if index % progress_every == 0:
                logger.info("Reconciliation progress: %d/%d", index, len(members))
            if delay > 0:
                await self._sleep(delay)

            try:
                lookup = await self._provider.get_subscription(member.external_subscription_id)
            except Exception as exc:
                logger.error("Provider lookup for member %s raised: %s", member.id, exc, exc_info=True)
                lookup = OperationResult.fail(ErrorCode.PROVIDER_API_ERROR, str(exc) or exc.__class__.__name__)
            if not lookup.success:
                code = lookup.error_code or ErrorCode.PROVIDER_API_ERROR.value
                if code == ErrorCode.SUBSCRIPTION_NOT_FOUND.value:
                    stats["desynced"] += 1
                    desynced.append(DesyncedMember(member, "NOT_FOUND", ACTION_NOT_FOUND))
                else:
                    stats["failed"] += 1
                    error_codes.append(code)
                continue

            external_status = str((lookup.data or {}).get("status", ""))
            verdict = classify_external_status(external_status)
            if verdict.desynced:
                stats["desynced"] += 1
                desynced.append(DesyncedMember(member, external_status, verdict.action or ""))
            else:
                stats["synced"] += 1

        if desynced:
            await self._send_desync_alert(desynced)
        if stats["failed"] / stats["total"] > self._settings.reconciliation_critical_failure_ratio:
            await self._send_critical_alert(stats, error_codes)

        logger.info(
            "Reconciliation complete: total=%d synced=%d desynced=%d failed=%d",
            stats["total"],
            stats["synced"],
            stats["desynced"],
            stats["failed"],
            extra={"job": JOB_NAME},
        )
        return {"success": True, **stats}

    def _today(self) -> str:
        return datetime.now(UTC).astimezone(ZoneInfo(self._settings.scheduler_timezone)).date().isoformat()

    async def _send_desync_alert(self, desynced: list[DesyncedMember]) -> None:
        blocks = [
            "\n".join(
                [
                    f"@{entry.member.external_username or 'no_username'} ({entry.member.external_chat_id})",
                    f"   Local: {entry.member.status.value} | Provider: {entry.external_status}",
                    f"   Action: {entry.suggested_action}",
                ]
            )
            for entry in desynced
        ]
        message = "\n".join(
            [
                "DESYNC DETECTED",
                f"Job: reconciliation ({self._today()})",
                f"{len(desynced)} member(s) differ from the provider:",
                "",
                "\n\n".join(blocks),
                "",
                "Manual review required.",
            ]
        )
        await self._alerts.notify(message)
        logger.warning("Reconciliation found %d desynced member(s)", len(desynced))

    async def _send_critical_alert(self, stats: dict[str, int], error_codes: list[str]) -> None:
        failure_rate = stats["failed"] / stats["total"] * 100
        top = ", ".join(f"{code}: {count}" for code, count in top_error_codes(error_codes)) or "N/A"
        message = "\n".join(
            [
                "CRITICAL: RECONCILIATION FAILURES",
                f"Job: reconciliation ({self._today()})",
                "The subscription provider API is failing.",
                f"Checked: {stats['total']}",
                f"Failed: {stats['failed']} ({failure_rate:.1f}%)",
                f"Synced: {stats['synced']}",
                f"Top errors: {top}",
            ]
        )
        await self._alerts.notify(message)
        logger.error("Reconciliation failure rate %.1f%% (top errors: %s)", failure_rate, top)
