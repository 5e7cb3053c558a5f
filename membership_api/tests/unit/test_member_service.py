"""Unit tests for MemberService lifecycle operations."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from membership_core.models.member import MemberCreate, MemberStatus, PaymentMethod, SubscriptionData
from membership_core.models.results import ErrorCode
from sqlalchemy.exc import OperationalError

from membership_api.services.member_service import MemberService

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def service(session_factory, settings):
    async with session_factory() as session:
        yield MemberService(session, settings, clock=lambda: NOW)


async def _create(service: MemberService, status: MemberStatus, **fields) -> str:
    row = await service.repository.create(status=status, **fields)
    return row.id


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreation:
    @pytest.mark.asyncio
    async def test_trial_member_gets_trial_window(self, service) -> None:
        result = await service.create_trial_member(MemberCreate(external_chat_id=101, external_username="ana"))

        assert result.success
        member = result.data
        assert member.status is MemberStatus.TRIAL
        assert member.trial_started_at == NOW
        assert member.trial_ends_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_trial_days_override(self, service) -> None:
        result = await service.create_trial_member(MemberCreate(external_chat_id=102), trial_days=3)

        assert result.data.trial_ends_at == NOW + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_duplicate_chat_id_rejected(self, service) -> None:
        await service.create_trial_member(MemberCreate(external_chat_id=103))

        result = await service.create_trial_member(MemberCreate(external_chat_id=103))

        assert not result.success
        assert result.error_code == ErrorCode.MEMBER_ALREADY_EXISTS.value

    @pytest.mark.asyncio
    async def test_active_member_from_payment(self, service) -> None:
        subscription = SubscriptionData(subscription_id="sub_1", customer_id="cus_1", payment_method=PaymentMethod.PIX)

        result = await service.create_active_member("ana@example.com", subscription)

        member = result.data
        assert member.status is MemberStatus.ACTIVE
        assert member.external_subscription_id == "sub_1"
        assert member.payment_method is PaymentMethod.PIX
        assert member.subscription_ends_at == NOW + timedelta(days=30)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_missing_member(self, service) -> None:
        result = await service.update_status("nope", MemberStatus.ACTIVE)

        assert result.error_code == ErrorCode.MEMBER_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_invalid_transition_lists_allowed_targets(self, service) -> None:
        member_id = await _create(service, MemberStatus.TRIAL)

        result = await service.update_status(member_id, MemberStatus.DELINQUENT)

        assert result.error_code == ErrorCode.INVALID_STATUS_TRANSITION.value
        assert result.error.details["allowed"] == ["active", "removed"]

    @pytest.mark.asyncio
    async def test_removed_is_terminal(self, service) -> None:
        member_id = await _create(service, MemberStatus.REMOVED)

        result = await service.update_status(member_id, MemberStatus.ACTIVE)

        assert result.error_code == ErrorCode.INVALID_STATUS_TRANSITION.value

    @pytest.mark.asyncio
    async def test_expected_status_mismatch_is_a_race(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE)

        result = await service.update_status(
            member_id,
            MemberStatus.REMOVED,
            expected_status=MemberStatus.DELINQUENT,
        )

        assert result.error_code == ErrorCode.RACE_CONDITION.value
        current = await service.get_member(member_id)
        assert current.data.status is MemberStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_is_a_race(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE)

        with patch.object(service.repository, "update_status", AsyncMock(return_value=None)):
            result = await service.mark_delinquent(member_id)

        assert result.error_code == ErrorCode.RACE_CONDITION.value
        assert result.error.details["expected_status"] == "active"

    @pytest.mark.asyncio
    async def test_mark_delinquent_stamps_time(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE)

        result = await service.mark_delinquent(member_id)

        assert result.data.status is MemberStatus.DELINQUENT
        assert result.data.delinquent_at == NOW

    @pytest.mark.asyncio
    async def test_mark_removed_records_reason(self, service) -> None:
        member_id = await _create(service, MemberStatus.DELINQUENT, notes="joined via invite")

        result = await service.mark_removed(member_id, "payment_failed")

        member = result.data
        assert member.status is MemberStatus.REMOVED
        assert member.kicked_at == NOW
        assert member.notes.startswith("joined via invite\n")
        assert member.notes.endswith("payment_failed")

    @pytest.mark.asyncio
    async def test_store_error_is_reported(self, service) -> None:
        boom = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(service.repository, "get_by_id", AsyncMock(side_effect=boom)):
            result = await service.get_member("m1")

        assert result.error_code == ErrorCode.STORE_ERROR.value


class TestPayments:
    @pytest.mark.asyncio
    async def test_activate_delinquent_member(self, service) -> None:
        member_id = await _create(service, MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(days=2))

        result = await service.activate_member(
            member_id, SubscriptionData(subscription_id="sub_9", payment_method=PaymentMethod.BOLETO)
        )

        member = result.data
        assert member.status is MemberStatus.ACTIVE
        assert member.delinquent_at is None
        assert member.external_subscription_id == "sub_9"
        assert member.subscription_started_at == NOW
        assert member.subscription_ends_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_activate_active_member_only_refreshes_binding(self, service) -> None:
        ends = NOW + timedelta(days=12)
        member_id = await _create(
            service, MemberStatus.ACTIVE, external_subscription_id="sub_old", subscription_ends_at=ends
        )

        result = await service.activate_member(member_id, SubscriptionData(customer_id="cus_2"))

        member = result.data
        assert member.status is MemberStatus.ACTIVE
        assert member.external_subscription_id == "sub_old"
        assert member.external_customer_id == "cus_2"
        assert member.subscription_ends_at == ends

    @pytest.mark.asyncio
    async def test_activate_removed_member_is_invalid(self, service) -> None:
        member_id = await _create(service, MemberStatus.REMOVED)

        result = await service.activate_member(member_id, SubscriptionData())

        assert result.error_code == ErrorCode.INVALID_STATUS_TRANSITION.value

    @pytest.mark.asyncio
    async def test_renew_extends_from_current_end(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE, subscription_ends_at=NOW + timedelta(days=5))

        result = await service.renew_subscription(member_id)

        assert result.data.subscription_ends_at == NOW + timedelta(days=35)
        assert result.data.last_payment_at == NOW

    @pytest.mark.asyncio
    async def test_renew_lapsed_period_starts_from_now(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE, subscription_ends_at=NOW - timedelta(days=2))

        result = await service.renew_subscription(member_id)

        assert result.data.subscription_ends_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_renew_delinquent_member_reactivates_period(self, service) -> None:
        member_id = await _create(service, MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(days=1))

        result = await service.renew_subscription(member_id)

        assert result.data.status is MemberStatus.ACTIVE
        assert result.data.delinquent_at is None

    @pytest.mark.asyncio
    async def test_renew_trial_member_is_invalid(self, service) -> None:
        member_id = await _create(service, MemberStatus.TRIAL)

        result = await service.renew_subscription(member_id)

        assert result.error_code == ErrorCode.INVALID_MEMBER_STATUS.value


class TestReactivate:
    @pytest.mark.asyncio
    async def test_removed_member_comes_back_active(self, service) -> None:
        member_id = await _create(
            service,
            MemberStatus.REMOVED,
            kicked_at=NOW - timedelta(days=3),
            notes="Removed at earlier: refund",
        )

        result = await service.reactivate(member_id, SubscriptionData(subscription_id="sub_new"))

        member = result.data
        assert member.status is MemberStatus.ACTIVE
        assert member.kicked_at is None
        assert member.external_subscription_id == "sub_new"
        assert member.subscription_ends_at == NOW + timedelta(days=30)
        assert "Reactivated at" in member.notes
        assert "(subscription sub_new)" in member.notes

    @pytest.mark.parametrize("status", [MemberStatus.TRIAL, MemberStatus.ACTIVE, MemberStatus.DELINQUENT])
    @pytest.mark.asyncio
    async def test_only_removed_members_reactivate(self, service, status) -> None:
        member_id = await _create(service, status)

        result = await service.reactivate(member_id)

        assert result.error_code == ErrorCode.INVALID_MEMBER_STATUS.value


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_members_due_for_removal(self, service) -> None:
        delinquent = await _create(service, MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(hours=1))
        expired_trial = await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW - timedelta(minutes=5))
        await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW + timedelta(days=1))
        await _create(service, MemberStatus.ACTIVE, subscription_ends_at=NOW - timedelta(days=1))

        result = await service.members_due_for_removal()

        assert {member.id for member in result.data} == {delinquent, expired_trial}

    @pytest.mark.asyncio
    async def test_grace_period_delays_removal(self, session_factory, make_settings) -> None:
        settings = make_settings(delinquent_grace_days=3)
        async with session_factory() as session:
            service = MemberService(session, settings, clock=lambda: NOW)
            await _create(service, MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(days=1))
            old = await _create(service, MemberStatus.DELINQUENT, delinquent_at=NOW - timedelta(days=4))

            result = await service.members_due_for_removal()

        assert [member.id for member in result.data] == [old]

    @pytest.mark.asyncio
    async def test_members_due_for_renewal_reminder(self, service) -> None:
        pix = await _create(
            service, MemberStatus.ACTIVE, payment_method="pix", subscription_ends_at=NOW + timedelta(days=3)
        )
        await _create(
            service, MemberStatus.ACTIVE, payment_method="card_recurring", subscription_ends_at=NOW + timedelta(days=3)
        )
        await _create(
            service, MemberStatus.ACTIVE, payment_method="boleto", subscription_ends_at=NOW + timedelta(days=9)
        )

        result = await service.members_due_for_renewal_reminder()

        assert [member.id for member in result.data] == [pix]

    @pytest.mark.asyncio
    async def test_members_due_for_trial_reminder(self, service) -> None:
        soon = await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW + timedelta(days=2))
        await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW + timedelta(days=6))
        await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW - timedelta(hours=2))

        result = await service.members_due_for_trial_reminder()

        assert [member.id for member in result.data] == [soon]

    @pytest.mark.asyncio
    async def test_members_for_reconciliation(self, service) -> None:
        bound = await _create(service, MemberStatus.ACTIVE, external_subscription_id="sub_1")
        await _create(service, MemberStatus.ACTIVE)
        await _create(service, MemberStatus.TRIAL, external_subscription_id="sub_2")

        result = await service.members_for_reconciliation()

        assert [member.id for member in result.data] == [bound]


class TestRejoinAndTrial:
    @pytest.mark.asyncio
    async def test_recently_kicked_member_can_rejoin(self, service) -> None:
        member_id = await _create(service, MemberStatus.REMOVED, kicked_at=NOW - timedelta(hours=2))

        result = await service.can_rejoin_group(member_id)

        assert result.data == {"can_rejoin": True, "hours_since_kick": 2.0}

    @pytest.mark.asyncio
    async def test_rejoin_window_elapsed(self, service) -> None:
        member_id = await _create(service, MemberStatus.REMOVED, kicked_at=NOW - timedelta(hours=30))

        result = await service.can_rejoin_group(member_id)

        assert result.data["can_rejoin"] is False

    @pytest.mark.asyncio
    async def test_rejoin_requires_removed_status(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE)

        result = await service.can_rejoin_group(member_id)

        assert result.data == {"can_rejoin": False, "reason": "not_removed"}

    @pytest.mark.asyncio
    async def test_rejoin_without_kick_time(self, service) -> None:
        member_id = await _create(service, MemberStatus.REMOVED)

        result = await service.can_rejoin_group(member_id)

        assert result.data == {"can_rejoin": False, "reason": "no_kicked_at"}

    @pytest.mark.asyncio
    async def test_trial_days_remaining_rounds_up(self, service) -> None:
        member_id = await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW + timedelta(days=2, hours=6))

        result = await service.trial_days_remaining(member_id)

        assert result.data == 3

    @pytest.mark.asyncio
    async def test_trial_days_remaining_never_negative(self, service) -> None:
        member_id = await _create(service, MemberStatus.TRIAL, trial_ends_at=NOW - timedelta(days=1))

        result = await service.trial_days_remaining(member_id)

        assert result.data == 0

    @pytest.mark.asyncio
    async def test_trial_days_remaining_for_active_member(self, service) -> None:
        member_id = await _create(service, MemberStatus.ACTIVE)

        result = await service.trial_days_remaining(member_id)

        assert result.error_code == ErrorCode.INVALID_MEMBER_STATUS.value
