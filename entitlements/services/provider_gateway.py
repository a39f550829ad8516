"""Outbound billing operations against the payment provider.

Builds provider request bodies for customers and subscriptions, sends them
through the :class:`~entitlements.services.retry.EndpointResolver`, and
records the returned external identifiers locally.

INVARIANT: Once the provider has created an object, a local persistence
failure is logged and reported via ``persisted=False``; it never turns the
operation into a failure.  The provider object exists and the next
reconciliation picks it up.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings
from entitlements.errors import PersistenceError, PreconditionError, UpstreamError, ValidationError
from entitlements.schemas import (
    CustomerResult,
    ProviderEvent,
    SubscriptionResult,
    SubscriptionStatus,
    TransitionResult,
)
from entitlements.services.retry import EndpointResolver, extract_external_id
from entitlements.services.subscription_machine import (
    SubscriptionStateMachine,
    Transition,
    parse_timestamp,
)
from entitlements.state.database import session_scope
from entitlements.state.repository import SubscriptionRepository, TenantRepository

logger = logging.getLogger(__name__)

_CUSTOMER_ID_KEYS = ("id", "customer_id")
_SUBSCRIPTION_ID_KEYS = ("id", "subscription_id")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProviderGateway:
    """Create and reconcile provider billing objects for tenants.

    Parameters
    ----------
    resolver:
        Shared endpoint resolver bound to the provider.
    session_factory:
        Used for tenant reads and identifier writes.
    state_machine:
        Initializes the local subscription row after creation.
    settings:
        Candidate paths, metadata source and defaults.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        resolver: EndpointResolver,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        settings: EntitlementSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._resolver = resolver
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        tenant_id: str,
        *,
        email: str | None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CustomerResult:
        """Create a provider customer for *tenant_id* and remember its id.

        Raises
        ------
        ValidationError
            If *tenant_id* or *email* is missing.
        UpstreamError
            If every candidate endpoint failed or the response carried no id.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required to create a customer")
        if not email:
            raise ValidationError("Customer email is required")

        body: dict[str, Any] = {
            "email": email,
            "name": name,
            "phone": phone,
            "metadata": {
                **(metadata or {}),
                "tenant_id": tenant_id,
                "source": self._settings.metadata_source,
            },
        }

        logger.info("Creating provider customer for tenant=%s", tenant_id)
        result = await self._resolver.request("POST", self._settings.customer_paths, body=body)
        if not result.ok:
            raise UpstreamError("Provider customer creation failed on every endpoint", result.failures)

        customer_id = extract_external_id(result.data, _CUSTOMER_ID_KEYS)
        if customer_id is None:
            logger.warning("Provider customer response carried no id: %r", result.data)
            raise UpstreamError("Provider response did not contain a customer id")

        persisted = await self._persist_customer_id(tenant_id, customer_id)
        return CustomerResult(
            tenant_id=tenant_id,
            external_customer_id=customer_id,
            endpoint_used=result.endpoint_used,
            persisted=persisted,
            customer=result.data if isinstance(result.data, dict) else {},
        )

    async def _persist_customer_id(self, tenant_id: str, customer_id: str) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                updated = await TenantRepository(session).set_external_customer_id(tenant_id, customer_id)
        except SQLAlchemyError as exc:
            logger.warning(
                "Provider customer %s created but not stored for tenant=%s: %s",
                customer_id,
                tenant_id,
                exc,
            )
            return False

        if not updated:
            logger.warning(
                "Provider customer %s created but tenant=%s does not exist locally",
                customer_id,
                tenant_id,
            )
            return False

        logger.info("Stored provider customer %s for tenant=%s", customer_id, tenant_id)
        return True

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        tenant_id: str,
        plan_price_ref: str | None,
        external_customer_id: str | None = None,
        *,
        trial_days: int | None = None,
        plan_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionResult:
        """Create a provider subscription and initialize the local row.

        Parameters
        ----------
        tenant_id:
            Tenant being subscribed.
        plan_price_ref:
            Provider price identifier.  Required.
        external_customer_id:
            Provider customer id; looked up on the tenant row when omitted.
        trial_days:
            Trial length; defaults to ``default_trial_days``.
        plan_id:
            Local plan identifier stored on the subscription row.  Falls back
            to *plan_price_ref*.

        Raises
        ------
        ValidationError
            If the price reference is missing or *trial_days* is negative.
        PreconditionError
            If no customer id was given and the tenant has none stored.
        PersistenceError
            If the tenant row could not be read.
        UpstreamError
            If every candidate endpoint failed or the response carried no id.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required to create a subscription")
        if not plan_price_ref:
            raise ValidationError("A plan price reference is required to create a subscription")
        if trial_days is None:
            trial_days = self._settings.default_trial_days
        if trial_days < 0:
            raise ValidationError("trial_days must not be negative")

        if not external_customer_id:
            external_customer_id = await self._lookup_customer_id(tenant_id)

        now = self._clock()
        trial_ends = now + timedelta(days=trial_days)
        body: dict[str, Any] = {
            "customer": external_customer_id,
            "items": [{"price": plan_price_ref}],
            "trial_period_days": trial_days,
            "metadata": {
                **(metadata or {}),
                "tenant_id": tenant_id,
                "plan_id": plan_id or self._settings.default_plan_id,
                "source": self._settings.metadata_source,
            },
            "payment_behavior": "default_incomplete",
        }

        logger.info("Creating provider subscription for tenant=%s price=%s", tenant_id, plan_price_ref)
        result = await self._resolver.request("POST", self._settings.subscription_paths, body=body)
        if not result.ok:
            raise UpstreamError("Provider subscription creation failed on every endpoint", result.failures)

        subscription = result.data if isinstance(result.data, dict) else {}
        subscription_id = extract_external_id(subscription, _SUBSCRIPTION_ID_KEYS)
        if subscription_id is None:
            logger.warning("Provider subscription response carried no id: %r", result.data)
            raise UpstreamError("Provider response did not contain a subscription id")

        fields = subscription.get("data") if isinstance(subscription.get("data"), dict) else subscription
        status = SubscriptionStatus.coerce(fields.get("status")) or SubscriptionStatus.INCOMPLETE
        period_start = parse_timestamp(fields.get("current_period_start")) or now
        period_end = parse_timestamp(fields.get("current_period_end")) or trial_ends

        persisted = True
        try:
            await self._state_machine.initialize(
                tenant_id,
                plan_id=plan_id or plan_price_ref,
                status=status,
                external_subscription_id=subscription_id,
                current_period_start=period_start,
                current_period_end=period_end,
                audit_payload={
                    "price": plan_price_ref,
                    "trial_period_days": trial_days,
                    "endpoint_used": result.endpoint_used,
                },
            )
        except SQLAlchemyError as exc:
            persisted = False
            logger.warning(
                "Provider subscription %s created but not stored for tenant=%s: %s",
                subscription_id,
                tenant_id,
                exc,
            )

        return SubscriptionResult(
            tenant_id=tenant_id,
            external_subscription_id=subscription_id,
            status=status,
            trial_ends=trial_ends,
            endpoint_used=result.endpoint_used,
            persisted=persisted,
        )

    async def _lookup_customer_id(self, tenant_id: str) -> str:
        try:
            async with session_scope(self._session_factory) as session:
                tenant = await TenantRepository(session).get(tenant_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read tenant {tenant_id}: {exc}") from exc

        if tenant is None:
            raise PreconditionError(f"Tenant {tenant_id} does not exist")
        if not tenant.external_customer_id:
            raise PreconditionError(
                f"Tenant {tenant_id} has no provider customer id; create the customer first"
            )
        return tenant.external_customer_id

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_subscription(self, tenant_id: str) -> TransitionResult:
        """Re-derive the tenant's subscription state from the provider.

        Fetches the provider's view of the current subscription and applies
        it as a ``subscription_updated`` transition.  Used to repair state
        after a webhook whose handler failed post-acknowledgement.

        Raises
        ------
        PreconditionError
            If the tenant has no subscription with a provider id.
        PersistenceError
            If the subscription row could not be read.
        UpstreamError
            If every lookup endpoint failed.
        """
        try:
            async with session_scope(self._session_factory) as session:
                row = await SubscriptionRepository(session).get_for_tenant(tenant_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read subscription for tenant {tenant_id}: {exc}") from exc

        if row is None or not row.external_subscription_id:
            raise PreconditionError(f"Tenant {tenant_id} has no provider subscription to reconcile")
        subscription_id = row.external_subscription_id

        result = await self._resolver.request(
            "GET",
            self._settings.subscription_lookup_paths,
            path_params={"subscription_id": subscription_id},
        )
        if not result.ok:
            raise UpstreamError("Provider subscription lookup failed on every endpoint", result.failures)

        body = result.data if isinstance(result.data, dict) else {}
        provider_view = body.get("data") if isinstance(body.get("data"), dict) else body
        provider_view = {**provider_view, "id": subscription_id}

        event = ProviderEvent(
            event_id=f"reconcile_{uuid.uuid4().hex}",
            event_type=Transition.SUBSCRIPTION_UPDATED.value,
            tenant_id=tenant_id,
            payload={"type": Transition.SUBSCRIPTION_UPDATED.value, "data": {"object": provider_view}},
            received_at=self._clock(),
            deduplicable=False,
        )
        outcome = await self._state_machine.apply(event)
        logger.info(
            "Reconciled subscription=%s tenant=%s from %s: %s",
            subscription_id,
            tenant_id,
            result.endpoint_used,
            outcome.detail,
        )
        return outcome
