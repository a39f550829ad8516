"""FastAPI dependency injection for settings, the database and engine services.

The gateway, ingestor, state machine and gate are stateless service objects
constructed once at startup and shared by every request.
"""

from __future__ import annotations

import logging
import re
from typing import Annotated

import httpx
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings, load_settings
from entitlements.services.provider_gateway import ProviderGateway
from entitlements.services.retry import EndpointResolver, RetryConfig
from entitlements.services.subscription_machine import SubscriptionStateMachine
from entitlements.services.usage_gate import UsageGate
from entitlements.services.webhook_ingestor import WebhookIngestor
from entitlements.state.database import get_engine
from entitlements.state.database import get_session_factory as _make_session_factory

logger = logging.getLogger(__name__)

_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: EntitlementSettings | None = None


def get_settings() -> EntitlementSettings:
    """Return the cached :class:`EntitlementSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: EntitlementSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


# ---------------------------------------------------------------------------
# Engine services
# ---------------------------------------------------------------------------

_resolver: EndpointResolver | None = None
_gateway: ProviderGateway | None = None
_ingestor: WebhookIngestor | None = None
_usage_gate: UsageGate | None = None


def init_services(
    settings: EntitlementSettings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Construct and cache the shared service objects."""
    global _resolver, _gateway, _ingestor, _usage_gate  # noqa: PLW0603
    _resolver = EndpointResolver(
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key.get_secret_value(),
        config=RetryConfig(
            max_retries=settings.provider_max_retries,
            base_delay=settings.provider_backoff_base,
            max_delay=settings.provider_backoff_max,
        ),
        timeout=settings.provider_timeout,
        http_client=http_client,
    )
    state_machine = SubscriptionStateMachine(session_factory, settings)
    _gateway = ProviderGateway(_resolver, session_factory, state_machine, settings)
    _ingestor = WebhookIngestor(session_factory, state_machine, settings)
    _usage_gate = UsageGate(session_factory, settings)


async def dispose_services() -> None:
    """Close the provider HTTP client and drop the cached services."""
    global _resolver, _gateway, _ingestor, _usage_gate  # noqa: PLW0603
    if _resolver is not None:
        await _resolver.close()
    _resolver = None
    _gateway = None
    _ingestor = None
    _usage_gate = None


def _not_initialised(name: str) -> RuntimeError:
    return RuntimeError(f"{name} has not been initialised. Ensure init_services() is called during application startup.")


def get_gateway() -> ProviderGateway:
    if _gateway is None:
        raise _not_initialised("Provider gateway")
    return _gateway


def get_ingestor() -> WebhookIngestor:
    if _ingestor is None:
        raise _not_initialised("Webhook ingestor")
    return _ingestor


def get_usage_gate() -> UsageGate:
    if _usage_gate is None:
        raise _not_initialised("Usage gate")
    return _usage_gate


GatewayDep = Annotated[ProviderGateway, Depends(get_gateway)]
IngestorDep = Annotated[WebhookIngestor, Depends(get_ingestor)]
UsageGateDep = Annotated[UsageGate, Depends(get_usage_gate)]

# ---------------------------------------------------------------------------
# Tenant identity
# ---------------------------------------------------------------------------


def get_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> str:
    """Return the validated ``X-Tenant-ID`` header value."""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    if not _TENANT_ID_RE.match(x_tenant_id):
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-ID")
    return x_tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]
