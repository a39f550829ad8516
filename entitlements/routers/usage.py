"""Usage gate endpoints consumed by metered features before and after they run."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from entitlements.dependencies import TenantDep, UsageGateDep
from entitlements.schemas import UsageDecision

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


class IncrementRequest(BaseModel):
    """Request body for ``POST /usage/increment``."""

    counter: str = Field(default="reports", description="reports, clients or data_sources.")
    amount: int = Field(default=1, ge=1)


class IncrementResponse(BaseModel):
    """Counter value after an increment."""

    tenant_id: str
    counter: str
    value: int


@router.get("/check", response_model=UsageDecision)
async def check_usage(
    tenant_id: TenantDep,
    gate: UsageGateDep,
    usage_type: str | None = Query(default=None, description="Counter to check; all when omitted."),
) -> UsageDecision:
    """Admit or deny a metered operation.

    Always 200: the decision is carried in ``allowed`` and ``reason``.
    """
    return await gate.check_usage(tenant_id, usage_type)


@router.post("/increment", response_model=IncrementResponse)
async def increment_usage(
    body: IncrementRequest,
    tenant_id: TenantDep,
    gate: UsageGateDep,
) -> IncrementResponse:
    """Record a completed metered operation."""
    value = await gate.increment_usage(tenant_id, body.counter, body.amount)
    return IncrementResponse(tenant_id=tenant_id, counter=body.counter, value=value)
