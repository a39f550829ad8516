"""Subscription lifecycle transitions driven by provider events.

States: ``trialing``, ``active``, ``past_due``/``grace``, ``canceled``,
``incomplete``.  Every inbound transition is keyed by the provider's
subscription id, never by tenant id, so that a tenant who churns and
resubscribes is never updated through a stale event.

All transitions converge on the same end state when reapplied:

* ``payment_succeeded``: ``status=active``, grace cleared, one payment
  history row per provider payment id.
* ``payment_failed``: grace window opened (an unexpired window is kept),
  status untouched.
* ``subscription_cancelled``: ``status=canceled``; the first ``canceled_at``
  is kept.
* ``subscription_updated``: provider-reported fields are merged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings
from entitlements.schemas import ProviderEvent, SubscriptionStatus, TransitionResult
from entitlements.state.database import session_scope
from entitlements.state.repository import (
    PaymentHistoryRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)
from entitlements.state.tables import SubscriptionTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Transition(str, Enum):
    """Canonical state-machine transitions."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CREATED = "subscription_created"


# Provider event type names (dotted and underscored spellings) per transition.
_EVENT_ALIASES: dict[str, Transition] = {
    "payment_succeeded": Transition.PAYMENT_SUCCEEDED,
    "payment.succeeded": Transition.PAYMENT_SUCCEEDED,
    "invoice_paid": Transition.PAYMENT_SUCCEEDED,
    "invoice.paid": Transition.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": Transition.PAYMENT_SUCCEEDED,
    "payment_failed": Transition.PAYMENT_FAILED,
    "payment.failed": Transition.PAYMENT_FAILED,
    "invoice_payment_failed": Transition.PAYMENT_FAILED,
    "invoice.payment_failed": Transition.PAYMENT_FAILED,
    "subscription_cancelled": Transition.SUBSCRIPTION_CANCELLED,
    "subscription_canceled": Transition.SUBSCRIPTION_CANCELLED,
    "subscription.cancelled": Transition.SUBSCRIPTION_CANCELLED,
    "subscription.canceled": Transition.SUBSCRIPTION_CANCELLED,
    "customer.subscription.deleted": Transition.SUBSCRIPTION_CANCELLED,
    "subscription_updated": Transition.SUBSCRIPTION_UPDATED,
    "subscription.updated": Transition.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": Transition.SUBSCRIPTION_UPDATED,
    "subscription_created": Transition.SUBSCRIPTION_CREATED,
    "subscription.created": Transition.SUBSCRIPTION_CREATED,
    "customer.subscription.created": Transition.SUBSCRIPTION_CREATED,
}


def resolve_transition(event_type: str) -> Transition | None:
    """Map a provider event type onto a transition, or ``None`` if unknown."""
    return _EVENT_ALIASES.get(event_type.strip().lower())


def parse_timestamp(value: Any) -> datetime | None:
    """Parse epoch seconds or an ISO-8601 string into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=UTC)
        if isinstance(value, str) and value.strip():
            text = value.strip()
            if text.isdigit():
                return datetime.fromtimestamp(int(text), tz=UTC)
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except (OverflowError, OSError, ValueError):
        logger.warning("Unparseable timestamp in provider payload: %r", value)
    return None


def parse_amount(value: Any) -> Decimal | None:
    """Parse a provider amount into a ``Decimal``, or ``None`` if it is not numeric.

    Accepts numbers, numeric strings with an optional trailing currency code
    (``"49.99 USD"``) and money objects carrying ``value`` or ``amount``.
    """
    if isinstance(value, dict):
        value = value.get("value", value.get("amount"))
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        parts = value.split()
        if not parts:
            return None
        value = parts[0]
    elif not isinstance(value, (int, float, Decimal)):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_str(*candidates: Any) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _event_object(payload: dict[str, Any]) -> dict[str, Any]:
    """Return ``data.object`` if present, else ``data``."""
    data = _as_dict(payload.get("data"))
    obj = data.get("object")
    return obj if isinstance(obj, dict) else data


def extract_subscription_id(transition: Transition, payload: dict[str, Any]) -> str | None:
    """Locate the provider subscription id an event refers to.

    Payment events usually wrap an invoice or payment object that references
    the subscription; subscription events wrap the subscription itself.
    """
    data = _as_dict(payload.get("data"))
    obj = _event_object(payload)
    if transition in (Transition.PAYMENT_SUCCEEDED, Transition.PAYMENT_FAILED):
        return _first_str(
            obj.get("subscription"),
            obj.get("subscription_id"),
            data.get("subscription_id"),
            payload.get("subscription_id"),
            payload.get("subscription"),
            obj.get("id"),
        )
    return _first_str(
        obj.get("id"),
        obj.get("subscription_id"),
        data.get("subscription_id"),
        payload.get("subscription_id"),
        payload.get("subscription"),
    )


class SubscriptionStateMachine:
    """Applies provider events to the tenant's current subscription row.

    Parameters
    ----------
    session_factory:
        Each :meth:`apply` call runs in its own transaction.
    settings:
        Supplies ``grace_period_days``.
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
        self._grace_period = timedelta(days=settings.grace_period_days)
        self._clock = clock

    async def initialize(
        self,
        tenant_id: str,
        *,
        plan_id: str,
        status: SubscriptionStatus,
        external_subscription_id: str,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        audit_payload: dict[str, Any] | None = None,
    ) -> None:
        """Create or replace the tenant's current subscription.

        This is the synthetic ``subscription_created`` transition: the row is
        upserted on tenant id, grace is cleared, and a local audit row is
        appended to the event ledger in the same transaction.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            await SubscriptionRepository(session).upsert_current(
                tenant_id,
                plan_id=plan_id,
                status=status.value,
                external_subscription_id=external_subscription_id,
                current_period_start=current_period_start,
                current_period_end=current_period_end,
                now=now,
            )
            await WebhookEventRepository(session).append_local(
                Transition.SUBSCRIPTION_CREATED.value,
                tenant_id,
                {
                    "external_subscription_id": external_subscription_id,
                    "plan_id": plan_id,
                    "status": status.value,
                    **(audit_payload or {}),
                },
                now,
            )
        logger.info(
            "Subscription initialized: tenant=%s subscription=%s status=%s plan=%s",
            tenant_id,
            external_subscription_id,
            status.value,
            plan_id,
        )

    async def apply(self, event: ProviderEvent) -> TransitionResult:
        """Route *event* to its transition handler and apply it."""
        transition = resolve_transition(event.event_type)
        if transition is None:
            logger.info("Ignoring unhandled provider event type=%s id=%s", event.event_type, event.event_id)
            return TransitionResult(
                transition=event.event_type,
                tenant_id=event.tenant_id,
                applied=False,
                detail="unhandled event type",
            )

        subscription_id = extract_subscription_id(transition, event.payload)

        if transition is Transition.SUBSCRIPTION_CREATED:
            logger.info(
                "Provider reported subscription created: subscription=%s event=%s",
                subscription_id,
                event.event_id,
            )
            return TransitionResult(
                transition=transition.value,
                external_subscription_id=subscription_id,
                tenant_id=event.tenant_id,
                applied=False,
                detail="subscriptions are initialized locally at creation",
            )

        if subscription_id is None:
            logger.warning(
                "Provider event %s (%s) carries no subscription id",
                event.event_id,
                event.event_type,
            )
            return TransitionResult(
                transition=transition.value,
                tenant_id=event.tenant_id,
                applied=False,
                detail="no subscription id in payload",
            )

        async with session_scope(self._session_factory) as session:
            subscriptions = SubscriptionRepository(session)
            row = await subscriptions.get_by_external_id(subscription_id)
            if row is None:
                logger.warning(
                    "Provider event %s references unknown subscription %s",
                    event.event_id,
                    subscription_id,
                )
                return TransitionResult(
                    transition=transition.value,
                    external_subscription_id=subscription_id,
                    tenant_id=event.tenant_id,
                    applied=False,
                    detail="unknown subscription",
                )

            now = self._clock()
            if transition is Transition.PAYMENT_SUCCEEDED:
                detail = await self._payment_succeeded(session, row, subscription_id, event, now)
            elif transition is Transition.PAYMENT_FAILED:
                detail = await self._payment_failed(session, row, subscription_id, event, now)
            elif transition is Transition.SUBSCRIPTION_CANCELLED:
                detail = await self._cancelled(session, row, subscription_id, now)
            else:
                detail = await self._updated(session, row, subscription_id, event, now)

            tenant_id = row.tenant_id

        logger.info(
            "Applied %s to subscription=%s tenant=%s: %s",
            transition.value,
            subscription_id,
            tenant_id,
            detail,
            extra={"event_id": event.event_id, "tenant_id": tenant_id, "external_subscription_id": subscription_id},
        )
        return TransitionResult(
            transition=transition.value,
            external_subscription_id=subscription_id,
            tenant_id=tenant_id,
            applied=True,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _payment_succeeded(
        self,
        session: AsyncSession,
        row: SubscriptionTable,
        subscription_id: str,
        event: ProviderEvent,
        now: datetime,
    ) -> str:
        await SubscriptionRepository(session).update_by_external_id(
            subscription_id,
            {"status": SubscriptionStatus.ACTIVE.value, "grace_period_until": None},
            now,
        )

        data = _as_dict(event.payload.get("data"))
        obj = _event_object(event.payload)
        object_id = obj.get("id") if obj.get("id") != subscription_id else None
        payment_id = _first_str(obj.get("payment_id"), data.get("payment_id"), object_id, event.event_id)
        raw_amount = obj.get("amount_paid", data.get("amount", event.payload.get("amount")))
        amount = parse_amount(raw_amount)
        if amount is None and raw_amount is not None:
            logger.warning(
                "Unparseable payment amount %r in event %s; recording without amount",
                raw_amount,
                event.event_id,
            )
        currency = _first_str(obj.get("currency"), data.get("currency"))

        # The payment row sits in a savepoint so it can never undo the activation.
        try:
            async with session.begin_nested():
                recorded = await PaymentHistoryRepository(session).record(
                    external_payment_id=str(payment_id),
                    tenant_id=row.tenant_id,
                    plan_id=row.plan_id,
                    amount_paid=amount,
                    currency=currency,
                    processed_at=now,
                )
        except SQLAlchemyError:
            logger.exception(
                "Payment %s for tenant=%s not recorded; subscription %s still activated",
                payment_id,
                row.tenant_id,
                subscription_id,
            )
            return "activated; payment not recorded"
        return "activated; payment recorded" if recorded else "activated; payment already recorded"

    async def _payment_failed(
        self,
        session: AsyncSession,
        row: SubscriptionTable,
        subscription_id: str,
        event: ProviderEvent,
        now: datetime,
    ) -> str:
        grace_until = row.grace_period_until
        if grace_until is None or grace_until <= now:
            grace_until = now + self._grace_period
            await SubscriptionRepository(session).update_by_external_id(
                subscription_id,
                {"grace_period_until": grace_until},
                now,
            )
            detail = "grace period started"
        else:
            detail = "grace period already running"

        await WebhookEventRepository(session).append_local(
            Transition.PAYMENT_FAILED.value,
            row.tenant_id,
            {
                "external_subscription_id": subscription_id,
                "provider_event_id": event.event_id,
                "grace_period_until": grace_until.isoformat(),
            },
            now,
        )
        logger.warning(
            "Payment failed for tenant=%s subscription=%s; grace until %s",
            row.tenant_id,
            subscription_id,
            grace_until.isoformat(),
        )
        return detail

    async def _cancelled(
        self,
        session: AsyncSession,
        row: SubscriptionTable,
        subscription_id: str,
        now: datetime,
    ) -> str:
        if row.status == SubscriptionStatus.CANCELED.value and row.canceled_at is not None:
            return "already canceled"
        await SubscriptionRepository(session).update_by_external_id(
            subscription_id,
            {"status": SubscriptionStatus.CANCELED.value, "canceled_at": now},
            now,
        )
        return "canceled"

    async def _updated(
        self,
        session: AsyncSession,
        row: SubscriptionTable,
        subscription_id: str,
        event: ProviderEvent,
        now: datetime,
    ) -> str:
        obj = _event_object(event.payload)
        values: dict[str, Any] = {}

        if "status" in obj:
            status = SubscriptionStatus.coerce(obj.get("status"))
            if status is None:
                logger.warning(
                    "Ignoring unknown provider status %r for subscription %s",
                    obj.get("status"),
                    subscription_id,
                )
            else:
                values["status"] = status.value

        period_start = parse_timestamp(obj.get("current_period_start"))
        if period_start is not None:
            values["current_period_start"] = period_start
        period_end = parse_timestamp(obj.get("current_period_end"))
        if period_end is not None:
            values["current_period_end"] = period_end

        if "cancel_at_period_end" in obj:
            if obj.get("cancel_at_period_end"):
                values["canceled_at"] = period_end or row.current_period_end
            else:
                values["canceled_at"] = None

        if not values:
            return "no recognised fields"

        await SubscriptionRepository(session).update_by_external_id(subscription_id, values, now)
        return "merged " + ", ".join(sorted(values))
