"""Middleware components for the entitlement service."""

from __future__ import annotations

from entitlements.middleware.json_formatter import JSONFormatter
from entitlements.middleware.logging import RequestLoggingMiddleware

__all__ = ["JSONFormatter", "RequestLoggingMiddleware"]
