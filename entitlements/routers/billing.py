"""Billing endpoints: provider customers, subscriptions, reconciliation and status."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from entitlements.dependencies import GatewayDep, TenantDep, UsageGateDep
from entitlements.schemas import CustomerResult, SubscriptionResult, SubscriptionStatusResponse, TransitionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateCustomerRequest(BaseModel):
    """Request body for ``POST /billing/customers``."""

    email: str | None = Field(default=None, description="Billing contact email.  Required.")
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateSubscriptionRequest(BaseModel):
    """Request body for ``POST /billing/subscriptions``."""

    price_id: str | None = Field(default=None, description="Provider price identifier.  Required.")
    customer_id: str | None = Field(
        default=None,
        description="Provider customer id; defaults to the one stored for the tenant.",
    )
    plan_id: str | None = None
    trial_days: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/customers", response_model=CustomerResult)
async def create_customer(
    body: CreateCustomerRequest,
    tenant_id: TenantDep,
    gateway: GatewayDep,
) -> CustomerResult:
    """Create the provider customer for the calling tenant."""
    return await gateway.create_customer(
        tenant_id,
        email=body.email,
        name=body.name,
        phone=body.phone,
        metadata=body.metadata,
    )


@router.post("/subscriptions", response_model=SubscriptionResult)
async def create_subscription(
    body: CreateSubscriptionRequest,
    tenant_id: TenantDep,
    gateway: GatewayDep,
) -> SubscriptionResult:
    """Create a provider subscription and initialize the local record."""
    return await gateway.create_subscription(
        tenant_id,
        body.price_id,
        body.customer_id,
        trial_days=body.trial_days,
        plan_id=body.plan_id,
        metadata=body.metadata,
    )


@router.post("/subscriptions/reconcile", response_model=TransitionResult)
async def reconcile_subscription(tenant_id: TenantDep, gateway: GatewayDep) -> TransitionResult:
    """Re-derive the tenant's subscription state from the provider."""
    return await gateway.reconcile_subscription(tenant_id)


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(tenant_id: TenantDep, gate: UsageGateDep) -> SubscriptionStatusResponse:
    """Return the current subscription, plan limits and this month's usage."""
    return await gate.get_status(tenant_id)
