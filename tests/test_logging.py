"""Tests for the JSON log formatter and the request-logging middleware."""

from __future__ import annotations

import json
import logging
import sys

import httpx
import pytest
from fastapi import FastAPI

from entitlements.middleware.json_formatter import JSONFormatter
from entitlements.middleware.logging import RequestLoggingMiddleware


def _record(msg: str = "message", level: int = logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="entitlements.test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields_on_one_line(self) -> None:
        output = JSONFormatter().format(_record("grace period started", logging.WARNING))

        assert "\n" not in output
        data = json.loads(output)
        assert data["level"] == "WARNING"
        assert data["logger"] == "entitlements.test"
        assert data["message"] == "grace period started"
        assert data["timestamp"].endswith("+00:00")
        assert "request" not in data

    def test_request_context_included_and_ids_lifted(self) -> None:
        request = {"path": "/webhook", "tenant_id": "tenant-a", "correlation_id": "corr-1"}

        data = json.loads(JSONFormatter().format(_record(request=request)))

        assert data["request"] == request
        assert data["tenant_id"] == "tenant-a"
        assert data["correlation_id"] == "corr-1"

    def test_event_context_from_extra(self) -> None:
        record = _record("Applied payment_succeeded", event_id="evt_1", external_subscription_id="sub_123")

        data = json.loads(JSONFormatter().format(record))

        assert data["event_id"] == "evt_1"
        assert data["external_subscription_id"] == "sub_123"
        assert "tenant_id" not in data

    def test_exception_traceback_included(self) -> None:
        try:
            raise RuntimeError("handler exploded")
        except RuntimeError:
            exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(_record("failed", logging.ERROR, exc_info=exc_info)))

        assert "Traceback" in data["exc_info"]
        assert "RuntimeError: handler exploded" in data["exc_info"]


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware, sensitive_headers=["x-provider-signature"])

    @app.post("/webhook")
    async def webhook() -> dict[str, str]:
        return {"status": "processed"}

    return app


class TestRequestLoggingMiddleware:
    @pytest.mark.asyncio
    async def test_masks_signature_headers_and_tags_tenant(self, app, caplog) -> None:
        caplog.set_level(logging.INFO, logger="entitlements.access")
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/webhook",
                headers={
                    "x-webhook-signature": "abc123",
                    "x-provider-signature": "def456",
                    "dodo-signature": "ghi789",
                    "X-Tenant-ID": "tenant-a",
                },
            )

        assert response.status_code == 200
        (record,) = [r for r in caplog.records if r.name == "entitlements.access"]
        logged = record.request
        assert logged["headers"]["x-webhook-signature"] == "***"
        assert logged["headers"]["x-provider-signature"] == "***"
        assert logged["headers"]["dodo-signature"] == "***"
        assert logged["tenant_id"] == "tenant-a"
        assert logged["status_code"] == 200

    @pytest.mark.asyncio
    async def test_correlation_id_echoed_or_generated(self, app) -> None:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            echoed = await client.post("/webhook", headers={"X-Correlation-ID": "corr-1"})
            generated = await client.post("/webhook")

        assert echoed.headers["X-Correlation-ID"] == "corr-1"
        assert len(generated.headers["X-Correlation-ID"]) == 36
