"""SQLAlchemy 2.0 ORM table definitions for the entitlement state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by migrations, the repository
layer and ``create_tables()``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    PostgreSQL stores ``timestamptz`` natively.  SQLite drops tzinfo, so
    values are normalised to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all entitlement tables."""


# ---------------------------------------------------------------------------
# Tenants and plans (owned by onboarding; billing fields only written here)
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Agency/organisation using the platform."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_tenants_external_customer", "external_customer_id"),)


class PlanTable(Base):
    """Billing tier reference data.  ``None`` limits mean unlimited."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    max_reports_per_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_clients: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_data_sources: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """The current billing relationship per tenant.

    At most one row per tenant: the primary key is ``tenant_id`` and
    creation goes through ``ON CONFLICT (tenant_id) DO UPDATE``.  Rows are
    never deleted; cancellation sets ``status = 'canceled'``.
    """

    __tablename__ = "subscriptions"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="incomplete")
    external_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_period_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_subscriptions_external", "external_subscription_id"),)


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageRecordTable(Base):
    """Per-tenant, per-calendar-month counters.

    ``month`` is the first day of the month.  Counters only change through
    the atomic increment in :class:`~entitlements.state.repository.UsageRepository`.
    """

    __tablename__ = "usage_records"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    reports_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    client_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data_sources_connected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "month"),)


# ---------------------------------------------------------------------------
# Webhook / audit ledger
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """One row per processed provider event, plus locally originated audit rows.

    ``event_id`` is unique and is the only mechanism preventing duplicate
    application of a provider event.  Local audit rows (``source='local'``)
    carry no event id.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="provider")
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        Index("ix_webhook_events_tenant_received", "tenant_id", "received_at"),
    )


class PaymentHistoryTable(Base):
    """Successful payments applied to a subscription."""

    __tablename__ = "payment_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_paid: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("external_payment_id", name="uq_payment_history_external_payment"),
        Index("ix_payment_history_tenant", "tenant_id"),
    )
