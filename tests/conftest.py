"""Shared fixtures for entitlement engine tests.

Provides a file-backed SQLite database (aiosqlite) per test, settings with
a deterministic webhook secret, a controllable clock, and helpers to seed
tenants, plans and subscriptions and to sign webhook bodies.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings
from entitlements.services.subscription_machine import SubscriptionStateMachine
from entitlements.state.database import create_tables, get_local_engine, get_session_factory, session_scope
from entitlements.state.repository import PlanRepository, SubscriptionRepository, TenantRepository

WEBHOOK_SECRET = "whsec_test_secret"
PROVIDER_URL = "https://provider.test"


# ---------------------------------------------------------------------------
# Time and sleep doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> EntitlementSettings:
    """Settings pointing at a temp SQLite file and a fake provider."""
    return EntitlementSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}",
        provider_base_url=PROVIDER_URL,
        provider_api_key="sk_test_123",
        provider_backoff_base=0.01,
        provider_backoff_max=0.05,
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created."""
    eng = get_local_engine(tmp_path / "entitlements.db")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_machine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: EntitlementSettings,
    clock: FakeClock,
) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(session_factory, settings, clock=clock)


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------


async def seed_tenant(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str = "tenant-a",
    *,
    external_customer_id: str | None = None,
) -> None:
    async with session_scope(session_factory) as session:
        repo = TenantRepository(session)
        await repo.create(tenant_id, name=f"Agency {tenant_id}")
        if external_customer_id:
            await repo.set_external_customer_id(tenant_id, external_customer_id)


async def seed_plan(
    session_factory: async_sessionmaker[AsyncSession],
    plan_id: str = "starter",
    *,
    max_reports: int | None = 5,
    max_clients: int | None = 3,
    max_data_sources: int | None = 2,
) -> None:
    async with session_scope(session_factory) as session:
        await PlanRepository(session).upsert(
            plan_id,
            name=plan_id.title(),
            max_reports_per_month=max_reports,
            max_clients=max_clients,
            max_data_sources=max_data_sources,
        )


async def seed_subscription(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str = "tenant-a",
    *,
    plan_id: str = "starter",
    status: str = "active",
    external_subscription_id: str = "sub_123",
    now: datetime | None = None,
) -> None:
    now = now or datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)
    async with session_scope(session_factory) as session:
        await SubscriptionRepository(session).upsert_current(
            tenant_id,
            plan_id=plan_id,
            status=status,
            external_subscription_id=external_subscription_id,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            now=now,
        )


async def load_subscription(session_factory: async_sessionmaker[AsyncSession], tenant_id: str = "tenant-a") -> Any:
    async with session_scope(session_factory) as session:
        return await SubscriptionRepository(session).get_for_tenant(tenant_id)


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------


def webhook_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signed_headers(body: bytes, header: str = "x-webhook-signature") -> dict[str, str]:
    return {header: sign(body), "content-type": "application/json"}
