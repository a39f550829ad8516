"""State persistence layer for subscriptions, usage and the event ledger."""

from entitlements.state.database import create_tables, get_engine, get_session_factory, session_scope
from entitlements.state.repository import (
    PaymentHistoryRepository,
    PlanRepository,
    SubscriptionRepository,
    TenantRepository,
    UsageRepository,
    WebhookEventRepository,
)

__all__ = [
    "PaymentHistoryRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "TenantRepository",
    "UsageRepository",
    "WebhookEventRepository",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
