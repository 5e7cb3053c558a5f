"""Unit tests for MemberRepository, including the compare-and-set update.

These tests use an in-memory SQLite database via aiosqlite so they run
without a PostgreSQL instance.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from membership_core.models.member import MemberStatus, PaymentMethod
from membership_core.state.repository import MemberRepository
from membership_core.state.tables import Base, MemberTable
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


# ---------------------------------------------------------------------------
# Create / lookup
# ---------------------------------------------------------------------------


class TestCreateAndLookup:
    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self, async_session) -> None:
        repo = MemberRepository(async_session)
        row = await repo.create(
            status=MemberStatus.TRIAL,
            external_chat_id=111,
            email="ana@example.com",
            payment_method=PaymentMethod.PIX,
        )

        assert row.id
        assert row.status == "trial"
        assert row.payment_method == "pix"
        assert row.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_lookups(self, async_session) -> None:
        repo = MemberRepository(async_session)
        row = await repo.create(
            status=MemberStatus.ACTIVE,
            external_chat_id=222,
            email="Bruno@Example.com",
            external_subscription_id="sub_1",
        )

        assert (await repo.get_by_id(row.id)).id == row.id
        assert (await repo.get_by_external_chat_id(222)).id == row.id
        assert (await repo.get_by_email("bruno@example.com ")).id == row.id
        assert await repo.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_chat_id_raises_integrity_error(self, async_session) -> None:
        repo = MemberRepository(async_session, tenant_id="t1")
        await repo.create(status=MemberStatus.TRIAL, external_chat_id=333)
        with pytest.raises(IntegrityError):
            await repo.create(status=MemberStatus.TRIAL, external_chat_id=333)


# ---------------------------------------------------------------------------
# Tenant scoping
# ---------------------------------------------------------------------------


class TestTenantScoping:
    @pytest.mark.asyncio
    async def test_configured_tenant_filters_reads(self, async_session) -> None:
        repo_a = MemberRepository(async_session, tenant_id="tenant-a")
        repo_b = MemberRepository(async_session, tenant_id="tenant-b")
        row = await repo_a.create(status=MemberStatus.TRIAL, external_chat_id=1)

        assert await repo_b.get_by_id(row.id) is None
        assert (await repo_a.get_by_id(row.id)).tenant_id == "tenant-a"

    @pytest.mark.asyncio
    async def test_explicit_none_disables_filter(self, async_session) -> None:
        repo_a = MemberRepository(async_session, tenant_id="tenant-a")
        repo_b = MemberRepository(async_session, tenant_id="tenant-b")
        row = await repo_a.create(status=MemberStatus.TRIAL, external_chat_id=1)

        assert (await repo_b.get_by_id(row.id, tenant_id=None)).id == row.id

    @pytest.mark.asyncio
    async def test_cas_respects_tenant(self, async_session) -> None:
        repo_a = MemberRepository(async_session, tenant_id="tenant-a")
        repo_b = MemberRepository(async_session, tenant_id="tenant-b")
        row = await repo_a.create(status=MemberStatus.TRIAL, external_chat_id=1)

        assert await repo_b.update_status(row.id, MemberStatus.TRIAL, {"status": MemberStatus.ACTIVE}) is None


# ---------------------------------------------------------------------------
# Compare-and-set
# ---------------------------------------------------------------------------


class TestUpdateStatusCAS:
    @pytest.mark.asyncio
    async def test_applies_when_status_matches(self, async_session) -> None:
        repo = MemberRepository(async_session)
        row = await repo.create(status=MemberStatus.ACTIVE, external_chat_id=10)
        now = datetime.now(UTC)

        updated = await repo.update_status(
            row.id,
            MemberStatus.ACTIVE,
            {"status": MemberStatus.DELINQUENT, "delinquent_at": now},
        )

        assert updated is not None
        assert updated.status == "delinquent"
        assert updated.delinquent_at is not None

    @pytest.mark.asyncio
    async def test_never_applies_after_concurrent_writer(self, async_session) -> None:
        repo = MemberRepository(async_session)
        row = await repo.create(status=MemberStatus.ACTIVE, external_chat_id=11)
        member_id = row.id

        # Another writer moves the member to removed behind our back.
        await async_session.execute(
            update(MemberTable)
            .where(MemberTable.id == member_id)
            .values(status="removed")
            .execution_options(synchronize_session=False)
        )

        result = await repo.update_status(
            member_id,
            MemberStatus.ACTIVE,
            {"status": MemberStatus.DELINQUENT},
        )

        assert result is None
        fresh = await repo.get_by_id(member_id)
        await async_session.refresh(fresh)
        assert fresh.status == "removed"

    @pytest.mark.asyncio
    async def test_missing_member_returns_none(self, async_session) -> None:
        repo = MemberRepository(async_session)
        assert await repo.update_status("nope", MemberStatus.ACTIVE, {"status": MemberStatus.REMOVED}) is None

    @pytest.mark.asyncio
    async def test_same_status_patch_updates_fields(self, async_session) -> None:
        repo = MemberRepository(async_session)
        row = await repo.create(status=MemberStatus.ACTIVE, external_chat_id=12)

        updated = await repo.update_status(row.id, MemberStatus.ACTIVE, {"external_subscription_id": "sub_new"})

        assert updated.external_subscription_id == "sub_new"
        assert updated.status == "active"


# ---------------------------------------------------------------------------
# Job queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_reconciliation_selects_active_with_subscription(self, async_session) -> None:
        repo = MemberRepository(async_session)
        a = await repo.create(status=MemberStatus.ACTIVE, external_chat_id=1, external_subscription_id="s1")
        await repo.create(status=MemberStatus.ACTIVE, external_chat_id=2)
        await repo.create(status=MemberStatus.TRIAL, external_chat_id=3, external_subscription_id="s3")
        await repo.create(status=MemberStatus.DELINQUENT, external_chat_id=4, external_subscription_id="s4")

        rows = await repo.list_for_reconciliation()

        assert [r.id for r in rows] == [a.id]

    @pytest.mark.asyncio
    async def test_due_for_removal(self, async_session) -> None:
        repo = MemberRepository(async_session)
        now = datetime.now(UTC)
        overdue = await repo.create(
            status=MemberStatus.DELINQUENT, external_chat_id=1, delinquent_at=now - timedelta(days=3)
        )
        await repo.create(status=MemberStatus.DELINQUENT, external_chat_id=2, delinquent_at=now)
        expired_trial = await repo.create(
            status=MemberStatus.TRIAL, external_chat_id=3, trial_ends_at=now - timedelta(hours=1)
        )
        await repo.create(status=MemberStatus.TRIAL, external_chat_id=4, trial_ends_at=now + timedelta(days=2))

        rows = await repo.list_due_for_removal(now, timedelta(days=2))

        assert {r.id for r in rows} == {overdue.id, expired_trial.id}

    @pytest.mark.asyncio
    async def test_expiring_subscriptions_filters_payment_method(self, async_session) -> None:
        repo = MemberRepository(async_session)
        now = datetime.now(UTC)
        pix = await repo.create(
            status=MemberStatus.ACTIVE,
            external_chat_id=1,
            payment_method=PaymentMethod.PIX,
            subscription_ends_at=now + timedelta(days=3),
        )
        await repo.create(
            status=MemberStatus.ACTIVE,
            external_chat_id=2,
            payment_method=PaymentMethod.CARD_RECURRING,
            subscription_ends_at=now + timedelta(days=3),
        )
        await repo.create(
            status=MemberStatus.ACTIVE,
            external_chat_id=3,
            payment_method=PaymentMethod.BOLETO,
            subscription_ends_at=now + timedelta(days=20),
        )

        rows = await repo.list_expiring_subscriptions(now, timedelta(days=6), ["pix", "boleto"])

        assert [r.id for r in rows] == [pix.id]

    @pytest.mark.asyncio
    async def test_trials_ending_within_horizon(self, async_session) -> None:
        repo = MemberRepository(async_session)
        now = datetime.now(UTC)
        ending = await repo.create(status=MemberStatus.TRIAL, external_chat_id=1, trial_ends_at=now + timedelta(days=2))
        await repo.create(status=MemberStatus.TRIAL, external_chat_id=2, trial_ends_at=now + timedelta(days=6))
        await repo.create(status=MemberStatus.TRIAL, external_chat_id=3, trial_ends_at=now - timedelta(hours=1))
        await repo.create(status=MemberStatus.ACTIVE, external_chat_id=4, trial_ends_at=now + timedelta(days=1))

        rows = await repo.list_trials_ending(now, timedelta(days=3))

        assert [r.id for r in rows] == [ending.id]
