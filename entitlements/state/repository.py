"""Repository classes providing access to the entitlement state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``session_scope`` context manager).
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.state.tables import (
    PaymentHistoryTable,
    PlanTable,
    SubscriptionTable,
    TenantTable,
    UsageRecordTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)

# Public counter names mapped onto ``usage_records`` columns.
USAGE_COUNTERS: dict[str, str] = {
    "reports": "reports_sent",
    "clients": "client_count",
    "data_sources": "data_sources_connected",
}


def month_start(moment: datetime) -> date:
    """Return the first day of the UTC calendar month containing *moment*."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.date().replace(day=1)


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific ``INSERT`` construct supporting ``ON CONFLICT``."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names overwritten from the proposed row when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    ``result.rowcount`` is 1 when the row was inserted and 0 when a row with
    the same key already existed.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def _dialect_increment(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    increment_columns: list[str],
    touch: dict[str, Any] | None = None,
) -> Any:
    """Insert *values* or, on conflict, add them onto the stored counters.

    The addition happens inside the database in one statement
    (``SET col = col + EXCLUDED.col``) so concurrent increments are never
    lost.
    """
    stmt = _dialect_insert(session, table).values(**values)
    set_: dict[str, Any] = {
        col: getattr(table, col) + getattr(stmt.excluded, col) for col in increment_columns
    }
    if touch:
        set_.update(touch)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Read tenants and write their billing-owned fields."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> TenantTable | None:
        return await self._session.get(TenantTable, tenant_id)

    async def create(self, tenant_id: str, name: str, plan_id: str | None = None) -> TenantTable:
        """Insert a tenant row.  Tenants are normally owned by onboarding."""
        row = TenantTable(id=tenant_id, name=name, plan_id=plan_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_external_customer_id(self, tenant_id: str, external_customer_id: str) -> bool:
        """Store the provider customer id.  Returns ``False`` if the tenant does not exist."""
        stmt = (
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(external_customer_id=external_customer_id, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PlanRepository
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read-mostly access to plan reference data."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> PlanTable | None:
        return await self._session.get(PlanTable, plan_id)

    async def upsert(
        self,
        plan_id: str,
        name: str,
        max_reports_per_month: int | None = None,
        max_clients: int | None = None,
        max_data_sources: int | None = None,
    ) -> None:
        """Insert or replace a plan's limits."""
        await _dialect_upsert(
            self._session,
            PlanTable,
            values={
                "id": plan_id,
                "name": name,
                "max_reports_per_month": max_reports_per_month,
                "max_clients": max_clients,
                "max_data_sources": max_data_sources,
            },
            index_elements=["id"],
            update_columns=["name", "max_reports_per_month", "max_clients", "max_data_sources"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """The single current subscription row per tenant."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_for_tenant(self, tenant_id: str) -> SubscriptionTable | None:
        return await self._session.get(SubscriptionTable, tenant_id)

    async def get_by_external_id(self, external_subscription_id: str) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.external_subscription_id == external_subscription_id
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def upsert_current(
        self,
        tenant_id: str,
        *,
        plan_id: str,
        status: str,
        external_subscription_id: str,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        now: datetime,
    ) -> None:
        """Create or replace the tenant's current subscription.

        A replaced row keeps its ``created_at``; grace and cancellation
        markers are cleared because they belonged to the previous
        subscription.
        """
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values={
                "tenant_id": tenant_id,
                "plan_id": plan_id,
                "status": status,
                "external_subscription_id": external_subscription_id,
                "current_period_start": current_period_start,
                "current_period_end": current_period_end,
                "grace_period_until": None,
                "canceled_at": None,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id"],
            update_columns=[
                "plan_id",
                "status",
                "external_subscription_id",
                "current_period_start",
                "current_period_end",
                "grace_period_until",
                "canceled_at",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def update_by_external_id(
        self,
        external_subscription_id: str,
        values: dict[str, Any],
        now: datetime,
    ) -> int:
        """Apply *values* to the row keyed by the provider subscription id.

        Values may be SQL expressions (e.g. ``func.coalesce``) so that
        read-modify-write rules are evaluated by the database.  Returns the
        number of rows updated.
        """
        stmt = (
            update(SubscriptionTable)
            .where(SubscriptionTable.external_subscription_id == external_subscription_id)
            .values(**values, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# UsageRepository
# ---------------------------------------------------------------------------


class UsageRepository:
    """Monthly usage counters.  Rows are created lazily on first increment."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str, month: date) -> UsageRecordTable | None:
        return await self._session.get(UsageRecordTable, (tenant_id, month))

    async def increment(
        self,
        tenant_id: str,
        month: date,
        column: str,
        amount: int = 1,
    ) -> int:
        """Atomically add *amount* to *column* and return the new value."""
        if column not in USAGE_COUNTERS.values():
            raise ValueError(f"Unknown usage counter column: {column!r}")

        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "month": month,
            "reports_sent": 0,
            "client_count": 0,
            "data_sources_connected": 0,
            "updated_at": now,
        }
        values[column] = amount

        await _dialect_increment(
            self._session,
            UsageRecordTable,
            values=values,
            index_elements=["tenant_id", "month"],
            increment_columns=[column],
            touch={"updated_at": now},
        )
        await self._session.flush()

        stmt = select(getattr(UsageRecordTable, column)).where(
            UsageRecordTable.tenant_id == tenant_id,
            UsageRecordTable.month == month,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Append-only ledger of provider events and local audit rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        event_id: str,
        event_type: str,
        tenant_id: str | None,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> bool:
        """Record a provider event.

        Returns ``True`` if this call inserted the row and ``False`` if the
        event id was already present.  The check and the insert are one
        statement, so exactly one of several concurrent callers wins.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            WebhookEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "tenant_id": tenant_id,
                "source": "provider",
                "payload": payload,
                "received_at": received_at,
            },
            index_elements=["event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def append_local(
        self,
        event_type: str,
        tenant_id: str | None,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> WebhookEventTable:
        """Append an engine-originated audit row (no provider event id)."""
        row = WebhookEventTable(
            event_id=None,
            event_type=event_type,
            tenant_id=tenant_id,
            source="local",
            payload=payload,
            received_at=received_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, event_id: str) -> WebhookEventTable | None:
        stmt = select(WebhookEventTable).where(WebhookEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str, limit: int = 100) -> list[WebhookEventTable]:
        """Return the most recent ledger rows for *tenant_id*, newest first."""
        stmt = (
            select(WebhookEventTable)
            .where(WebhookEventTable.tenant_id == tenant_id)
            .order_by(WebhookEventTable.received_at.desc(), WebhookEventTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PaymentHistoryRepository
# ---------------------------------------------------------------------------


class PaymentHistoryRepository:
    """Successful payments, at most one row per provider payment id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        external_payment_id: str,
        tenant_id: str,
        plan_id: str | None,
        amount_paid: Any,
        currency: str | None,
        processed_at: datetime,
    ) -> bool:
        """Insert a payment row.  Returns ``False`` if it was already recorded."""
        result = await _dialect_upsert_nothing(
            self._session,
            PaymentHistoryTable,
            values={
                "external_payment_id": external_payment_id,
                "tenant_id": tenant_id,
                "plan_id": plan_id,
                "amount_paid": amount_paid,
                "currency": currency,
                "status": "completed",
                "processed_at": processed_at,
            },
            index_elements=["external_payment_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_for_tenant(self, tenant_id: str) -> list[PaymentHistoryTable]:
        stmt = (
            select(PaymentHistoryTable)
            .where(PaymentHistoryTable.tenant_id == tenant_id)
            .order_by(PaymentHistoryTable.processed_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
