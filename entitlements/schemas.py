"""Pydantic models exchanged between the engine's components and its HTTP surface."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a tenant's current subscription."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE = "grace"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"

    @classmethod
    def coerce(cls, value: Any) -> SubscriptionStatus | None:
        """Map a provider-reported status onto a known state, or ``None``."""
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized == "cancelled":
            normalized = "canceled"
        try:
            return cls(normalized)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Endpoint resolver
# ---------------------------------------------------------------------------


class PathFailure(BaseModel):
    """Last error observed against one candidate path."""

    path: str
    url: str
    attempts: int
    status_code: int | None = None
    error: str
    body: Any = None


class ResolverResult(BaseModel):
    """Outcome of a call attempted across an ordered list of candidate paths."""

    ok: bool
    data: Any = None
    endpoint_used: str | None = None
    status_code: int | None = None
    candidate_paths: list[str] = Field(default_factory=list)
    failures: dict[str, PathFailure] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider gateway
# ---------------------------------------------------------------------------


class CustomerResult(BaseModel):
    """Result of ``create_customer``."""

    tenant_id: str
    external_customer_id: str
    endpoint_used: str | None = None
    persisted: bool
    customer: dict[str, Any] = Field(default_factory=dict)


class SubscriptionResult(BaseModel):
    """Result of ``create_subscription``."""

    tenant_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    trial_ends: datetime
    endpoint_used: str | None = None
    persisted: bool


# ---------------------------------------------------------------------------
# Webhooks and transitions
# ---------------------------------------------------------------------------


class ProviderEvent(BaseModel):
    """A verified, parsed inbound provider event."""

    event_id: str
    event_type: str
    tenant_id: str | None = None
    payload: dict[str, Any]
    received_at: datetime
    # False when the provider omitted an id and one was synthesized.
    deduplicable: bool = True


class TransitionResult(BaseModel):
    """What a state-machine handler did with one event."""

    transition: str
    external_subscription_id: str | None = None
    tenant_id: str | None = None
    applied: bool
    detail: str | None = None


class IngestStatus(str, Enum):
    """Outcome of a single webhook delivery."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"


class IngestResult(BaseModel):
    """Response of the webhook ingestor for one delivery."""

    status: IngestStatus
    event_id: str
    event_type: str
    tenant_id: str | None = None
    deduplicable: bool = True
    transition: TransitionResult | None = None
    handler_error: str | None = None


# ---------------------------------------------------------------------------
# Usage ledger and gate
# ---------------------------------------------------------------------------


class UsageSnapshot(BaseModel):
    """Current-month counters for one tenant."""

    reports_sent: int = 0
    client_count: int = 0
    data_sources_connected: int = 0


class PlanLimits(BaseModel):
    """Plan ceilings; ``None`` means unlimited."""

    reports: int | None = None
    clients: int | None = None
    data_sources: int | None = None


class UsageDecision(BaseModel):
    """Admission decision returned by the usage gate."""

    allowed: bool
    reason: str | None = None
    status: SubscriptionStatus | None = None
    limit_type: str | None = None
    used: int | None = None
    limit: int | None = None
    usage: UsageSnapshot | None = None
    limits: PlanLimits | None = None
    grace_period_until: datetime | None = None
    upgrade_url: str | None = None
    error: str | None = None


class SubscriptionView(BaseModel):
    """Read model of a tenant's current subscription."""

    plan_id: str
    status: SubscriptionStatus
    external_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    grace_period_until: datetime | None = None
    canceled_at: datetime | None = None


class SubscriptionStatusResponse(BaseModel):
    """Subscription, plan limits and current usage for one tenant."""

    tenant_id: str
    has_subscription: bool
    subscription: SubscriptionView | None = None
    limits: PlanLimits | None = None
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
