"""HTTP routers for the entitlement service."""

from __future__ import annotations

from entitlements.routers import billing, usage, webhooks

__all__ = ["billing", "usage", "webhooks"]
