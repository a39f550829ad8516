"""Usage ledger and admission gate for metered operations.

``check_usage`` decides, before an expensive operation runs, whether the
tenant's subscription state and current-month counters permit it.
``increment_usage`` records the operation afterwards with a single atomic
statement at the storage layer.

Plan limits of ``None`` mean unlimited.  A tenant in an unexpired grace
window is admitted regardless of status but is still held to plan limits.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings
from entitlements.errors import PersistenceError, ValidationError
from entitlements.schemas import (
    PlanLimits,
    SubscriptionStatus,
    SubscriptionStatusResponse,
    SubscriptionView,
    UsageDecision,
    UsageSnapshot,
)
from entitlements.state.database import session_scope
from entitlements.state.repository import (
    USAGE_COUNTERS,
    PlanRepository,
    SubscriptionRepository,
    UsageRepository,
    month_start,
)
from entitlements.state.tables import PlanTable, UsageRecordTable

logger = logging.getLogger(__name__)

REASON_NO_SUBSCRIPTION = "No active subscription"
REASON_GRACE_PERIOD = "In grace period"
REASON_LIMIT_EXCEEDED = "Plan limit exceeded"
REASON_ERROR_FAIL_OPEN = "Error checking usage, allowing request"
REASON_ERROR_FAIL_CLOSED = "Error checking usage, request denied"

# Counter name -> (usage attribute, plan limit attribute), in check order.
_BOUNDED_COUNTERS: dict[str, tuple[str, str]] = {
    "reports": ("reports_sent", "reports"),
    "clients": ("client_count", "clients"),
    "data_sources": ("data_sources_connected", "data_sources"),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _snapshot(record: UsageRecordTable | None) -> UsageSnapshot:
    if record is None:
        return UsageSnapshot()
    return UsageSnapshot(
        reports_sent=record.reports_sent,
        client_count=record.client_count,
        data_sources_connected=record.data_sources_connected,
    )


def _limits(plan: PlanTable | None) -> PlanLimits:
    if plan is None:
        return PlanLimits()
    return PlanLimits(
        reports=plan.max_reports_per_month,
        clients=plan.max_clients,
        data_sources=plan.max_data_sources,
    )


def normalize_counter(counter: str) -> str:
    """Return the public counter name for *counter* (name or column).

    Raises
    ------
    ValidationError
        If *counter* is not a known usage counter.
    """
    if counter in USAGE_COUNTERS:
        return counter
    for name, column in USAGE_COUNTERS.items():
        if counter == column:
            return name
    raise ValidationError(
        f"Unknown usage counter {counter!r}; expected one of {', '.join(USAGE_COUNTERS)}"
    )


class UsageGate:
    """Admission control and usage counting per tenant.

    Parameters
    ----------
    session_factory:
        Each call runs in its own short transaction.
    settings:
        Supplies the failure policy and upgrade URL.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EntitlementSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._fail_open = settings.gate_fail_open
        self._upgrade_url = settings.upgrade_url
        self._clock = clock

    async def check_usage(self, tenant_id: str, usage_type: str | None = None) -> UsageDecision:
        """Decide whether *tenant_id* may perform a metered operation.

        Parameters
        ----------
        tenant_id:
            Tenant requesting the operation.
        usage_type:
            Counter the operation consumes (``reports``, ``clients`` or
            ``data_sources``).  ``None`` checks every bounded counter.

        Returns
        -------
        UsageDecision
            The decision, with current usage and limits when they were read.
            Internal errors produce an allow (fail-open) or deny decision
            carrying ``error``, depending on ``gate_fail_open``.

        Raises
        ------
        ValidationError
            If *usage_type* is not a known counter.
        """
        counters = list(_BOUNDED_COUNTERS) if usage_type is None else [normalize_counter(usage_type)]

        try:
            return await self._decide(tenant_id, counters)
        except Exception as exc:
            if self._fail_open:
                logger.exception("Usage check failed for tenant=%s; allowing request", tenant_id)
                return UsageDecision(allowed=True, reason=REASON_ERROR_FAIL_OPEN, error=str(exc))
            logger.exception("Usage check failed for tenant=%s; denying request", tenant_id)
            return UsageDecision(allowed=False, reason=REASON_ERROR_FAIL_CLOSED, error=str(exc))

    async def _decide(self, tenant_id: str, counters: list[str]) -> UsageDecision:
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            subscription = await SubscriptionRepository(session).get_for_tenant(tenant_id)
            if subscription is None:
                logger.info("Usage denied for tenant=%s: no subscription", tenant_id)
                return UsageDecision(allowed=False, reason=REASON_NO_SUBSCRIPTION)

            status = SubscriptionStatus.coerce(subscription.status)
            if status is None:
                raise ValueError(f"Subscription for tenant {tenant_id} has unknown status {subscription.status!r}")
            grace_until = subscription.grace_period_until
            in_grace = grace_until is not None and now < grace_until

            if status is not SubscriptionStatus.ACTIVE and not in_grace:
                logger.info("Usage denied for tenant=%s: subscription is %s", tenant_id, status.value)
                return UsageDecision(
                    allowed=False,
                    reason=f"Subscription is {status.value}",
                    status=status,
                    grace_period_until=grace_until,
                )

            plan = await PlanRepository(session).get(subscription.plan_id)
            if plan is None:
                logger.warning(
                    "Plan %s for tenant=%s not found; treating limits as unlimited",
                    subscription.plan_id,
                    tenant_id,
                )
            record = await UsageRepository(session).get(tenant_id, month_start(now))

        usage = _snapshot(record)
        limits = _limits(plan)

        for counter in counters:
            usage_attr, limit_attr = _BOUNDED_COUNTERS[counter]
            used: int = getattr(usage, usage_attr)
            limit: int | None = getattr(limits, limit_attr)
            if limit is not None and used >= limit:
                logger.warning(
                    "Quota exceeded: tenant=%s %s=%d/%d",
                    tenant_id,
                    counter,
                    used,
                    limit,
                )
                return UsageDecision(
                    allowed=False,
                    reason=REASON_LIMIT_EXCEEDED,
                    status=status,
                    limit_type=counter,
                    used=used,
                    limit=limit,
                    usage=usage,
                    limits=limits,
                    grace_period_until=grace_until,
                    upgrade_url=self._upgrade_url,
                )

        return UsageDecision(
            allowed=True,
            reason=REASON_GRACE_PERIOD if status is not SubscriptionStatus.ACTIVE else None,
            status=status,
            usage=usage,
            limits=limits,
            grace_period_until=grace_until,
        )

    async def increment_usage(self, tenant_id: str, counter: str = "reports", amount: int = 1) -> int:
        """Atomically add *amount* to a current-month counter.

        Returns the counter's new value.

        Raises
        ------
        ValidationError
            If *counter* is unknown or *amount* is not positive.
        PersistenceError
            If the increment could not be stored.
        """
        name = normalize_counter(counter)
        if amount < 1:
            raise ValidationError("Usage increment amount must be at least 1")

        month = month_start(self._clock())
        try:
            async with session_scope(self._session_factory) as session:
                value = await UsageRepository(session).increment(tenant_id, month, USAGE_COUNTERS[name], amount)
        except SQLAlchemyError as exc:
            logger.error("Usage increment failed for tenant=%s counter=%s: %s", tenant_id, name, exc)
            raise PersistenceError(f"Could not record usage for tenant {tenant_id}") from exc

        logger.info("Usage incremented: tenant=%s %s=%d (+%d)", tenant_id, name, value, amount)
        return value

    async def get_status(self, tenant_id: str) -> SubscriptionStatusResponse:
        """Return the current subscription, its plan limits and this month's usage."""
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            subscription = await SubscriptionRepository(session).get_for_tenant(tenant_id)
            record = await UsageRepository(session).get(tenant_id, month_start(now))
            plan = await PlanRepository(session).get(subscription.plan_id) if subscription is not None else None

        if subscription is None:
            return SubscriptionStatusResponse(tenant_id=tenant_id, has_subscription=False, usage=_snapshot(record))

        view = SubscriptionView(
            plan_id=subscription.plan_id,
            status=SubscriptionStatus.coerce(subscription.status) or SubscriptionStatus.INCOMPLETE,
            external_subscription_id=subscription.external_subscription_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            grace_period_until=subscription.grace_period_until,
            canceled_at=subscription.canceled_at,
        )
        return SubscriptionStatusResponse(
            tenant_id=tenant_id,
            has_subscription=True,
            subscription=view,
            limits=_limits(plan),
            usage=_snapshot(record),
        )
