"""Structured request-logging middleware."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = logging.getLogger("entitlements.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset(
    {
        "authorization",
        "cookie",
        "x-api-key",
        "dodo-signature",
        "dodo_signature",
        "x-dodo-signature",
        "x-webhook-signature",
        "webhook-signature",
        "x-signature",
    }
)
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"
_TENANT_HEADER: str = "X-Tenant-ID"


def _safe_headers(request: Request, sensitive: frozenset[str]) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    out: dict[str, str] = {}
    for key, value in request.headers.items():
        out[key] = _MASK if key.lower() in sensitive else value
    return out


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code and duration.

    Each request is tagged with a ``correlation_id`` (taken from the
    incoming ``X-Correlation-ID`` header or generated as a UUID-4) and the
    ``X-Tenant-ID`` it was made for.  The correlation ID is echoed as a
    response header.

    Parameters
    ----------
    app:
        The wrapped ASGI application.
    sensitive_headers:
        Additional header names to mask, e.g. configured webhook signature
        headers.
    """

    def __init__(self, app: ASGIApp, sensitive_headers: Iterable[str] = ()) -> None:
        super().__init__(app)
        self._sensitive = _SENSITIVE_HEADERS | {name.lower() for name in sensitive_headers}

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER, "") or str(uuid.uuid4())

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": request.headers.get(_TENANT_HEADER) or "anonymous",
                "headers": _safe_headers(request, self._sensitive),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
