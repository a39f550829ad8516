"""Single-line JSON log formatter for log aggregation.

Activate by setting ``ENTITLEMENTS_STRUCTURED_LOGGING=true``.  The
application then replaces the root handlers with one ``StreamHandler``
using this formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "entitlements.services.webhook_ingestor",
        "message": "Processed webhook event evt_1 (invoice.paid) tenant=t1",
        "event_id": "evt_1",         // event / subscription ids when passed as ``extra``
        "tenant_id": "t1",
        "correlation_id": "...",     // lifted from ``request`` when present
        "request": { ... },          // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_LIFTED_REQUEST_FIELDS: tuple[str, ...] = ("correlation_id", "tenant_id")
_RECORD_CONTEXT_FIELDS: tuple[str, ...] = ("tenant_id", "event_id", "external_subscription_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        if isinstance(request_data, dict):
            # Lifted to the top level so aggregators can filter without parsing ``request``.
            for key in _LIFTED_REQUEST_FIELDS:
                if request_data.get(key) is not None:
                    payload[key] = request_data[key]
        if request_data is not None:
            payload["request"] = request_data

        # Service code may pass ``extra={"tenant_id": ..., "event_id": ...}``.
        for key in _RECORD_CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
