"""Inbound payment-provider webhook endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request

from entitlements.dependencies import IngestorDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhook")
async def receive_provider_webhook(request: Request, ingestor: IngestorDep) -> dict[str, Any]:
    """Verify, deduplicate and apply one provider event.

    The raw body is passed through untouched because the signature is
    computed over the exact bytes sent.  Signature failures map to 401,
    unparseable bodies to 400 and ledger write failures to 503 through the
    application's ``BillingError`` handler.  Handler failures after the
    event is recorded still return 200.
    """
    body = await request.body()
    result = await ingestor.ingest(body, request.headers)
    response: dict[str, Any] = {
        "status": result.status.value,
        "event_id": result.event_id,
        "event_type": result.event_type,
        "tenant_id": result.tenant_id,
    }
    if result.transition is not None:
        response["applied"] = result.transition.applied
    return response
