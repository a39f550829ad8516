"""Tests for the usage gate and ledger."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeClock, seed_plan, seed_subscription
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from entitlements.errors import ValidationError
from entitlements.schemas import SubscriptionStatus
from entitlements.services.usage_gate import (
    REASON_ERROR_FAIL_CLOSED,
    REASON_ERROR_FAIL_OPEN,
    REASON_GRACE_PERIOD,
    REASON_LIMIT_EXCEEDED,
    REASON_NO_SUBSCRIPTION,
    UsageGate,
    normalize_counter,
)
from entitlements.state.database import session_scope
from entitlements.state.tables import SubscriptionTable


@pytest.fixture
def gate(session_factory, settings, clock) -> UsageGate:
    return UsageGate(session_factory, settings, clock=clock)


async def _set_grace(session_factory, until: datetime | None) -> None:
    async with session_scope(session_factory) as session:
        await session.execute(
            update(SubscriptionTable)
            .where(SubscriptionTable.tenant_id == "tenant-a")
            .values(grace_period_until=until)
        )


class TestNormalizeCounter:
    def test_accepts_names_and_columns(self) -> None:
        assert normalize_counter("reports") == "reports"
        assert normalize_counter("reports_sent") == "reports"
        assert normalize_counter("data_sources_connected") == "data_sources"

    def test_rejects_unknown(self) -> None:
        with pytest.raises(ValidationError):
            normalize_counter("seats")


class TestSubscriptionState:
    @pytest.mark.asyncio
    async def test_no_subscription_denied(self, gate) -> None:
        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is False
        assert decision.reason == REASON_NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_active_allowed_with_usage_and_limits(self, gate, session_factory) -> None:
        await seed_plan(session_factory)
        await seed_subscription(session_factory, status="active")

        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.usage.reports_sent == 0
        assert decision.limits.reports == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["canceled", "incomplete", "trialing", "past_due"])
    async def test_non_active_without_grace_denied(self, gate, session_factory, status: str) -> None:
        await seed_plan(session_factory)
        await seed_subscription(session_factory, status=status)

        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is False
        assert decision.reason == f"Subscription is {status}"
        assert decision.status is SubscriptionStatus(status)

    @pytest.mark.asyncio
    async def test_grace_period_boundary(self, session_factory, settings) -> None:
        clock = FakeClock()
        gate = UsageGate(session_factory, settings, clock=clock)
        await seed_plan(session_factory)
        await seed_subscription(session_factory, status="past_due")
        await _set_grace(session_factory, clock.now + timedelta(seconds=1))

        at_now = await gate.check_usage("tenant-a")
        clock.advance(seconds=2)
        after = await gate.check_usage("tenant-a")

        assert at_now.allowed is True
        assert at_now.reason == REASON_GRACE_PERIOD
        assert after.allowed is False
        assert after.reason == "Subscription is past_due"

    @pytest.mark.asyncio
    async def test_grace_still_enforces_quota(self, gate, session_factory, clock) -> None:
        await seed_plan(session_factory, max_reports=1)
        await seed_subscription(session_factory, status="past_due")
        await _set_grace(session_factory, clock.now + timedelta(days=3))
        await gate.increment_usage("tenant-a", "reports")

        decision = await gate.check_usage("tenant-a", "reports")

        assert decision.allowed is False
        assert decision.reason == REASON_LIMIT_EXCEEDED


class TestQuota:
    @pytest.mark.asyncio
    async def test_quota_boundary(self, gate, session_factory) -> None:
        await seed_plan(session_factory, max_reports=5)
        await seed_subscription(session_factory)
        await gate.increment_usage("tenant-a", "reports", 4)

        at_four = await gate.check_usage("tenant-a", "reports")
        new_value = await gate.increment_usage("tenant-a", "reports", 1)
        at_five = await gate.check_usage("tenant-a", "reports")

        assert at_four.allowed is True
        assert new_value == 5
        assert at_five.allowed is False
        assert at_five.reason == REASON_LIMIT_EXCEEDED
        assert at_five.limit_type == "reports"
        assert (at_five.used, at_five.limit) == (5, 5)
        assert at_five.upgrade_url == "/billing/upgrade"

    @pytest.mark.asyncio
    async def test_specific_usage_type_only_checks_that_counter(self, gate, session_factory) -> None:
        await seed_plan(session_factory, max_reports=10, max_clients=1)
        await seed_subscription(session_factory)
        await gate.increment_usage("tenant-a", "clients")

        assert (await gate.check_usage("tenant-a", "reports")).allowed is True
        denied = await gate.check_usage("tenant-a")
        assert denied.allowed is False
        assert denied.limit_type == "clients"

    @pytest.mark.asyncio
    async def test_null_limit_is_unlimited(self, gate, session_factory) -> None:
        await seed_plan(session_factory, max_reports=None)
        await seed_subscription(session_factory)
        await gate.increment_usage("tenant-a", "reports", 10_000)

        assert (await gate.check_usage("tenant-a", "reports")).allowed is True

    @pytest.mark.asyncio
    async def test_missing_plan_is_unlimited(self, gate, session_factory) -> None:
        await seed_subscription(session_factory, plan_id="legacy")

        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is True
        assert decision.limits.reports is None

    @pytest.mark.asyncio
    async def test_counters_reset_each_month(self, gate, session_factory, clock) -> None:
        await seed_plan(session_factory, max_reports=1)
        await seed_subscription(session_factory)
        await gate.increment_usage("tenant-a", "reports")
        assert (await gate.check_usage("tenant-a")).allowed is False

        clock.now = datetime(2026, 4, 1, 0, 0, 1, tzinfo=UTC)

        assert (await gate.check_usage("tenant-a")).allowed is True


class TestIncrementUsage:
    @pytest.mark.asyncio
    async def test_creates_row_lazily_and_returns_value(self, gate) -> None:
        assert await gate.increment_usage("tenant-a", "reports") == 1
        assert await gate.increment_usage("tenant-a", "reports", 2) == 3
        assert await gate.increment_usage("tenant-a", "data_sources") == 1

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, gate) -> None:
        await asyncio.gather(*(gate.increment_usage("tenant-a", "reports") for _ in range(20)))

        status = await gate.get_status("tenant-a")
        assert status.usage.reports_sent == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -3])
    async def test_rejects_non_positive_amount(self, gate, amount: int) -> None:
        with pytest.raises(ValidationError):
            await gate.increment_usage("tenant-a", "reports", amount)

    @pytest.mark.asyncio
    async def test_rejects_unknown_counter(self, gate) -> None:
        with pytest.raises(ValidationError):
            await gate.increment_usage("tenant-a", "seats")


class TestFailurePolicy:
    @staticmethod
    def _broken_factory():
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    @pytest.mark.asyncio
    async def test_fails_open_by_default(self, settings, clock) -> None:
        gate = UsageGate(self._broken_factory, settings, clock=clock)  # type: ignore[arg-type]

        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is True
        assert decision.reason == REASON_ERROR_FAIL_OPEN
        assert "connection refused" in decision.error

    @pytest.mark.asyncio
    async def test_fails_closed_when_configured(self, settings, clock) -> None:
        strict = settings.model_copy(update={"gate_fail_open": False})
        gate = UsageGate(self._broken_factory, strict, clock=clock)  # type: ignore[arg-type]

        decision = await gate.check_usage("tenant-a")

        assert decision.allowed is False
        assert decision.reason == REASON_ERROR_FAIL_CLOSED
        assert decision.error


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_without_subscription(self, gate) -> None:
        status = await gate.get_status("tenant-a")

        assert status.has_subscription is False
        assert status.subscription is None

    @pytest.mark.asyncio
    async def test_with_subscription(self, gate, session_factory) -> None:
        await seed_plan(session_factory, max_reports=5)
        await seed_subscription(session_factory, status="trialing")
        await gate.increment_usage("tenant-a", "reports", 2)

        status = await gate.get_status("tenant-a")

        assert status.has_subscription is True
        assert status.subscription.status is SubscriptionStatus.TRIALING
        assert status.subscription.external_subscription_id == "sub_123"
        assert status.limits.reports == 5
        assert status.usage.reports_sent == 2
