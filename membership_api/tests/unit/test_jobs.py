"""Unit tests for the membership jobs and the job runner."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from membership_core.models.member import Member, MemberStatus
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.models.webhook import InboundWebhookEvent

from membership_api.services.jobs import (
    CLEANUP_STUCK_JOBS,
    KICK_EXPIRED,
    JobContext,
    JobRunner,
    MembershipJobs,
    UnknownJobError,
    farewell_message,
    renewal_reminder_message,
    trial_reminder_message,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)
COMMUNITY = -100555


@pytest.fixture
def make_context(services):
    def _build(**overrides) -> JobContext:
        fields = {
            "settings": services.settings,
            "session_factory": services.session_factory,
            "runtime": services.runtime,
            "alerts": services.alerts,
            "ledger": services.ledger,
            "chat": services.chat,
            "gate": services.gate,
            "reconciliation": services.reconciliation,
            "community_chat_id": COMMUNITY,
            "clock": lambda: NOW,
        }
        fields.update(overrides)
        return JobContext(**fields)

    return _build


@pytest.fixture
def jobs(make_context) -> MembershipJobs:
    return MembershipJobs(make_context())


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_trial_farewell_mentions_checkout(self) -> None:
        member = Member(id="m1", status=MemberStatus.TRIAL, external_username="ana")

        text = farewell_message(member, "trial_expired", "https://pay.example.com")

        assert text.startswith("Hi @ana,")
        assert "free trial has ended" in text
        assert "https://pay.example.com" in text

    def test_payment_farewell_without_checkout(self) -> None:
        member = Member(id="m1", status=MemberStatus.DELINQUENT)

        text = farewell_message(member, "payment_failed", None)

        assert text.startswith("Hi,")
        assert "could not confirm your payment" in text
        assert "subscribing here" not in text

    def test_renewal_reminder_wording(self) -> None:
        assert "tomorrow" in renewal_reminder_message(1, None)
        assert "in 3 days" in renewal_reminder_message(3, "https://pay.example.com")

    def test_trial_reminder_wording(self) -> None:
        member = Member(id="m1", status=MemberStatus.TRIAL, external_username="ana")

        assert "trial ends tomorrow" in trial_reminder_message(member, 1, None)
        assert "trial ends in 3 days" in trial_reminder_message(member, 3, "https://pay.example.com")


# ---------------------------------------------------------------------------
# kick-expired
# ---------------------------------------------------------------------------


class TestKickExpired:
    @pytest.mark.asyncio
    async def test_due_members_are_claimed_then_kicked(self, jobs, seed_member, load_member, chat) -> None:
        delinquent = await seed_member(
            MemberStatus.DELINQUENT, external_chat_id=201, delinquent_at=NOW - timedelta(days=1)
        )
        trial = await seed_member(MemberStatus.TRIAL, external_chat_id=202, trial_ends_at=NOW - timedelta(hours=1))
        no_chat = await seed_member(MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(days=1))
        active = await seed_member(MemberStatus.ACTIVE, external_chat_id=204)

        result = await jobs.kick_expired()

        assert result == {"success": True, "kicked": 2, "already_removed": 1, "failed": 0, "skipped": 0}
        assert sorted(chat.kicked) == [(201, COMMUNITY), (202, COMMUNITY)]
        assert sorted(chat_id for chat_id, _ in chat.messages) == [201, 202]
        for member_id in (delinquent, trial, no_chat):
            row = await load_member(member_id)
            assert row.status == "removed"
            assert row.kicked_at == NOW
        assert (await load_member(active)).status == "active"

    @pytest.mark.asyncio
    async def test_member_not_in_group_counts_as_removed(self, jobs, seed_member, chat, sink) -> None:
        await seed_member(MemberStatus.DELINQUENT, external_chat_id=301, delinquent_at=NOW - timedelta(days=1))
        chat.kick_results[301] = OperationResult.fail(ErrorCode.USER_NOT_IN_GROUP, "user not found")

        result = await jobs.kick_expired()

        assert result["already_removed"] == 1
        assert result["failed"] == 0
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_kick_failure_alerts_the_operator(self, jobs, seed_member, load_member, chat, sink) -> None:
        member_id = await seed_member(
            MemberStatus.DELINQUENT,
            external_chat_id=401,
            external_username="bob",
            delinquent_at=NOW - timedelta(days=1),
        )
        chat.kick_results[401] = OperationResult.fail(ErrorCode.BOT_NO_PERMISSION, "not enough rights")

        result = await jobs.kick_expired()

        assert result["failed"] == 1
        assert len(sink.messages) == 1
        assert "@bob" in sink.messages[0]
        assert "BOT_NO_PERMISSION" in sink.messages[0]
        assert "already marked removed" in sink.messages[0]
        assert "by hand" in sink.messages[0]
        assert (await load_member(member_id)).status == "removed"

    @pytest.mark.asyncio
    async def test_member_who_paid_meanwhile_is_not_kicked(self, jobs, seed_member, load_member, chat) -> None:
        member_id = await seed_member(MemberStatus.ACTIVE, external_chat_id=501)
        stale = Member(id=member_id, status=MemberStatus.DELINQUENT, external_chat_id=501)

        outcome = await jobs._kick_one(stale, COMMUNITY)

        assert outcome == "skipped"
        assert chat.kicked == []
        assert (await load_member(member_id)).status == "active"

    @pytest.mark.asyncio
    async def test_missing_community_chat_id(self, make_context, seed_member, chat, sink) -> None:
        await seed_member(MemberStatus.DELINQUENT, external_chat_id=601, delinquent_at=NOW - timedelta(days=1))
        jobs = MembershipJobs(make_context(community_chat_id=None))

        result = await jobs.kick_expired()

        assert result["success"] is False
        assert result["error"] == ErrorCode.CONFIG_MISSING.value
        assert chat.kicked == []
        assert "CONFIGURATION ERROR" in sink.messages[0]


# ---------------------------------------------------------------------------
# renewal-reminders
# ---------------------------------------------------------------------------


class TestRenewalReminders:
    @pytest.mark.asyncio
    async def test_reminder_sent_once_per_day(self, jobs, seed_member, chat) -> None:
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=701,
            payment_method="pix",
            subscription_ends_at=NOW + timedelta(days=3),
        )

        first = await jobs.renewal_reminders()
        second = await jobs.renewal_reminders()

        assert first == {"success": True, "sent": 1, "skipped": 0, "failed": 0}
        assert second == {"success": True, "sent": 0, "skipped": 1, "failed": 0}
        assert len(chat.messages) == 1
        assert "in 3 days" in chat.messages[0][1]

    @pytest.mark.asyncio
    async def test_only_configured_days_and_manual_methods(self, jobs, seed_member, chat) -> None:
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=711,
            payment_method="boleto",
            subscription_ends_at=NOW + timedelta(days=2),
        )
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=712,
            payment_method="card_recurring",
            subscription_ends_at=NOW + timedelta(days=1),
        )
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=713,
            payment_method="boleto",
            subscription_ends_at=NOW + timedelta(days=1),
        )

        result = await jobs.renewal_reminders()

        assert result["sent"] == 1
        assert [chat_id for chat_id, _ in chat.messages] == [713]
        assert "tomorrow" in chat.messages[0][1]

    @pytest.mark.asyncio
    async def test_blocked_bot_is_skipped(self, jobs, seed_member, chat) -> None:
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=721,
            payment_method="pix",
            subscription_ends_at=NOW + timedelta(days=5),
        )
        chat.message_results[721] = OperationResult.fail(ErrorCode.USER_BLOCKED_BOT, "bot was blocked by the user")

        result = await jobs.renewal_reminders()

        assert result == {"success": True, "sent": 0, "skipped": 1, "failed": 0}


# ---------------------------------------------------------------------------
# trial-reminders
# ---------------------------------------------------------------------------


class TestTrialReminders:
    @pytest.mark.asyncio
    async def test_reminder_sent_once_per_day(self, jobs, seed_member, chat) -> None:
        await seed_member(
            MemberStatus.TRIAL,
            external_chat_id=801,
            external_username="ana",
            trial_ends_at=NOW + timedelta(days=2),
        )

        first = await jobs.trial_reminders()
        second = await jobs.trial_reminders()

        assert first == {"success": True, "sent": 1, "skipped": 0, "failed": 0}
        assert second == {"success": True, "sent": 0, "skipped": 1, "failed": 0}
        assert len(chat.messages) == 1
        assert chat.messages[0][0] == 801
        assert "trial ends in 2 days" in chat.messages[0][1]

    @pytest.mark.asyncio
    async def test_only_configured_days_and_trial_members(self, jobs, seed_member, chat) -> None:
        await seed_member(MemberStatus.TRIAL, external_chat_id=811, trial_ends_at=NOW + timedelta(days=4))
        await seed_member(MemberStatus.TRIAL, external_chat_id=812, trial_ends_at=NOW + timedelta(days=1))
        await seed_member(MemberStatus.TRIAL, external_chat_id=813, trial_ends_at=NOW - timedelta(hours=3))
        await seed_member(MemberStatus.ACTIVE, external_chat_id=814, trial_ends_at=NOW + timedelta(days=1))

        result = await jobs.trial_reminders()

        assert result["sent"] == 1
        assert [chat_id for chat_id, _ in chat.messages] == [812]
        assert "tomorrow" in chat.messages[0][1]

    @pytest.mark.asyncio
    async def test_renewal_reminder_does_not_suppress_trial_reminder(self, jobs, seed_member, chat) -> None:
        await seed_member(MemberStatus.TRIAL, external_chat_id=821, trial_ends_at=NOW + timedelta(days=3))
        await seed_member(
            MemberStatus.ACTIVE,
            external_chat_id=822,
            payment_method="pix",
            subscription_ends_at=NOW + timedelta(days=3),
        )

        renewal = await jobs.renewal_reminders()
        trial = await jobs.trial_reminders()

        assert renewal["sent"] == 1
        assert trial["sent"] == 1
        assert sorted(chat_id for chat_id, _ in chat.messages) == [821, 822]

    @pytest.mark.asyncio
    async def test_blocked_bot_is_skipped(self, jobs, seed_member, chat) -> None:
        await seed_member(MemberStatus.TRIAL, external_chat_id=831, trial_ends_at=NOW + timedelta(days=3))
        chat.message_results[831] = OperationResult.fail(ErrorCode.USER_BLOCKED_BOT, "bot was blocked by the user")

        result = await jobs.trial_reminders()

        assert result == {"success": True, "sent": 0, "skipped": 1, "failed": 0}


# ---------------------------------------------------------------------------
# process-webhooks
# ---------------------------------------------------------------------------


class TestProcessWebhooks:
    @pytest.mark.asyncio
    async def test_sweep_redrives_failed_events(self, jobs, services, seed_member) -> None:
        event = InboundWebhookEvent(
            external_event_id="evt_sweep",
            event_type="subscription_renewed",
            payload={"customer": {"email": "sweep@example.com"}},
        )
        failed = await services.gate.process(event)
        assert not failed.success

        await seed_member(MemberStatus.DELINQUENT, email="sweep@example.com")
        result = await jobs.process_webhooks()
        again = await jobs.process_webhooks()

        assert result == {"success": True, "processed": 1, "failed": 0}
        assert again == {"success": True, "processed": 0, "failed": 0}


# ---------------------------------------------------------------------------
# JobRunner
# ---------------------------------------------------------------------------


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_run_records_execution(self, make_context, services) -> None:
        runner = JobRunner(make_context())

        result = await runner.run(CLEANUP_STUCK_JOBS)

        assert result["success"] is True
        [execution] = await services.ledger.recent_executions()
        assert execution.job_name == CLEANUP_STUCK_JOBS
        assert execution.status.value == "success"

    @pytest.mark.asyncio
    async def test_unknown_job(self, make_context) -> None:
        runner = JobRunner(make_context())

        with pytest.raises(UnknownJobError):
            await runner.run("membership:nope")

    @pytest.mark.asyncio
    async def test_running_job_is_skipped_without_ledger_row(self, make_context, services) -> None:
        runner = JobRunner(make_context())
        work = AsyncMock(return_value={"success": True})
        runner.register(KICK_EXPIRED, work)
        services.runtime.job_lock.acquire(KICK_EXPIRED)

        result = await runner.run(KICK_EXPIRED)

        assert result == {"success": True, "skipped": True}
        work.assert_not_awaited()
        assert await services.ledger.recent_executions() == []

    @pytest.mark.asyncio
    async def test_failing_job_raises_and_releases_lock(self, make_context, services, sink) -> None:
        runner = JobRunner(make_context())
        runner.register("custom", AsyncMock(side_effect=RuntimeError("exploded")))

        with pytest.raises(RuntimeError):
            await runner.run("custom")

        assert not services.runtime.job_lock.is_running("custom")
        [execution] = await services.ledger.recent_executions()
        assert execution.status.value == "failed"
        assert "JOB FAILED" in sink.messages[0]

    @pytest.mark.asyncio
    async def test_job_names(self, make_context) -> None:
        runner = JobRunner(make_context())

        assert runner.job_names == [
            "membership:cleanup-stuck-jobs",
            "membership:kick-expired",
            "membership:process-webhooks",
            "membership:reconciliation",
            "membership:renewal-reminders",
            "membership:trial-reminders",
        ]
