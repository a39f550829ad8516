"""Tests for the endpoint resolver: candidate paths, retries and backoff.

Uses httpx.MockTransport for deterministic HTTP simulation.
"""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest
from conftest import RecordingSleep

from entitlements.services.retry import (
    EndpointResolver,
    RetryConfig,
    _compute_delay,
    extract_external_id,
    minimum_backoff,
)

BASE_URL = "https://provider.test"


def _routed_transport(routes: dict[str, list[int | Exception]], calls: list[str]) -> httpx.MockTransport:
    """Return a transport answering each path with the next scripted outcome.

    An ``int`` outcome is returned as that status code; an exception is
    raised.  The last outcome for a path repeats.
    """
    counters: dict[str, int] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(path)
        script = routes.get(path, [404])
        idx = min(counters.get(path, 0), len(script) - 1)
        counters[path] = counters.get(path, 0) + 1
        outcome = script[idx]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"id": "obj_1", "path": path})

    return httpx.MockTransport(handler)


def _resolver(
    transport: httpx.MockTransport,
    sleep: RecordingSleep | None = None,
    config: RetryConfig | None = None,
) -> EndpointResolver:
    return EndpointResolver(
        BASE_URL,
        "sk_test_123",
        config=config or RetryConfig(max_retries=3, base_delay=1.0, max_delay=10.0),
        http_client=httpx.AsyncClient(transport=transport),
        sleep=sleep or RecordingSleep(),
    )


# ---------------------------------------------------------------------------
# Backoff schedule
# ---------------------------------------------------------------------------


class TestComputeDelay:
    def test_exponential_growth(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=10.0)
        assert [_compute_delay(a, config) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=10.0)
        assert _compute_delay(5, config) == 10.0

    def test_jitter_stays_within_bounds(self) -> None:
        config = RetryConfig(base_delay=2.0, max_delay=60.0, jitter=True)
        for _ in range(50):
            delay = _compute_delay(1, config)
            assert 2.0 <= delay <= 6.0

    def test_minimum_backoff_skips_sleep_after_last_attempt(self) -> None:
        config = RetryConfig(max_retries=3, base_delay=1.0, max_delay=10.0)
        # Per path: sleep 1s after attempt 1, 2s after attempt 2, none after 3.
        assert minimum_backoff(config, 2) == 6.0

    def test_zero_retries_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(max_retries=0)


# ---------------------------------------------------------------------------
# Response id normalisation
# ---------------------------------------------------------------------------


class TestExtractExternalId:
    def test_top_level_id(self) -> None:
        assert extract_external_id({"id": "cus_1"}) == "cus_1"

    def test_alternate_key(self) -> None:
        assert extract_external_id({"customer_id": "cus_2"}, ("id", "customer_id")) == "cus_2"

    def test_nested_under_data(self) -> None:
        assert extract_external_id({"data": {"id": "cus_3"}}) == "cus_3"

    def test_nested_alternate_key(self) -> None:
        body = {"data": {"customer_id": "cus_4"}}
        assert extract_external_id(body, ("id", "customer_id")) == "cus_4"

    def test_numeric_id_becomes_string(self) -> None:
        assert extract_external_id({"id": 42}) == "42"

    def test_missing_or_non_dict(self) -> None:
        assert extract_external_id({"object": "customer"}) is None
        assert extract_external_id(["cus_1"]) is None
        assert extract_external_id(None) is None


# ---------------------------------------------------------------------------
# Resolver behaviour
# ---------------------------------------------------------------------------


class TestEndpointResolver:
    @pytest.mark.asyncio
    async def test_first_path_success_short_circuits(self) -> None:
        calls: list[str] = []
        resolver = _resolver(_routed_transport({"/v1/customers": [201]}, calls))

        result = await resolver.request("POST", ["/v1/customers", "/customers"], body={"email": "a@b.c"})

        assert result.ok is True
        assert result.endpoint_used == "/v1/customers"
        assert result.status_code == 201
        assert result.data["id"] == "obj_1"
        assert calls == ["/v1/customers"]

    @pytest.mark.asyncio
    async def test_client_error_moves_to_next_path_without_retrying(self) -> None:
        calls: list[str] = []
        sleep = RecordingSleep()
        resolver = _resolver(_routed_transport({"/a": [404], "/b": [200]}, calls), sleep=sleep)

        result = await resolver.request("POST", ["/a", "/b"], body={})

        assert result.ok is True
        assert result.endpoint_used == "/b"
        assert calls == ["/a", "/b"]
        assert sleep.delays == []
        assert result.failures["/a"].status_code == 404
        assert result.failures["/a"].attempts == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_on_same_path(self) -> None:
        calls: list[str] = []
        sleep = RecordingSleep()
        resolver = _resolver(_routed_transport({"/a": [503, 500, 200]}, calls), sleep=sleep)

        result = await resolver.request("POST", ["/a", "/b"], body={})

        assert result.ok is True
        assert result.endpoint_used == "/a"
        assert calls == ["/a", "/a", "/a"]
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_reports_last_error_per_path(self) -> None:
        calls: list[str] = []
        sleep = RecordingSleep()
        boom = httpx.ConnectError("connection refused")
        resolver = _resolver(_routed_transport({"/a": [boom], "/b": [boom]}, calls), sleep=sleep)

        result = await resolver.request("POST", ["/a", "/b"], body={})

        assert result.ok is False
        assert set(result.failures) == {"/a", "/b"}
        for failure in result.failures.values():
            assert failure.attempts == 3
            assert "ConnectError" in failure.error
            assert failure.status_code is None
        assert calls == ["/a"] * 3 + ["/b"] * 3
        assert sleep.delays == [1.0, 2.0, 1.0, 2.0]
        assert sum(sleep.delays) >= minimum_backoff(resolver.config, 2)

    @pytest.mark.asyncio
    async def test_exhaustion_takes_at_least_the_backoff_schedule(self) -> None:
        calls: list[str] = []
        config = RetryConfig(max_retries=3, base_delay=0.02, max_delay=1.0)
        transport = _routed_transport({"/a": [httpx.ConnectError("down")], "/b": [httpx.ConnectError("down")]}, calls)
        resolver = EndpointResolver(
            BASE_URL,
            "sk_test_123",
            config=config,
            http_client=httpx.AsyncClient(transport=transport),
        )

        started = time.monotonic()
        result = await resolver.request("GET", ["/a", "/b"])
        elapsed = time.monotonic() - started

        assert result.ok is False
        assert elapsed >= minimum_backoff(config, 2)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self) -> None:
        calls: list[str] = []
        timeout = httpx.ReadTimeout("read timed out")
        resolver = _resolver(_routed_transport({"/a": [timeout, 200]}, calls))

        result = await resolver.request("POST", ["/a"], body={})

        assert result.ok is True
        assert calls == ["/a", "/a"]
        assert "Timeout" in result.failures["/a"].error

    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_json_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "cus_1"})

        resolver = _resolver(httpx.MockTransport(handler))
        await resolver.request("POST", ["/v1/customers"], body={"email": "a@b.c"})

        assert seen[0].headers["authorization"] == "Bearer sk_test_123"
        assert json.loads(seen[0].content) == {"email": "a@b.c"}
        assert str(seen[0].url) == f"{BASE_URL}/v1/customers"

    @pytest.mark.asyncio
    async def test_path_params_are_substituted(self) -> None:
        calls: list[str] = []
        resolver = _resolver(_routed_transport({"/v1/subscriptions/sub_9": [200]}, calls))

        result = await resolver.request(
            "GET",
            ["/v1/subscriptions/{subscription_id}"],
            path_params={"subscription_id": "sub_9"},
        )

        assert result.ok is True
        assert result.endpoint_used == "/v1/subscriptions/sub_9"

    @pytest.mark.asyncio
    async def test_non_json_error_body_is_kept_as_text(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="bad request")

        resolver = _resolver(httpx.MockTransport(handler))
        result = await resolver.request("POST", ["/a"], body={})

        assert result.ok is False
        assert result.failures["/a"].body == "bad request"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(30)
            return httpx.Response(200, json={})

        resolver = _resolver(httpx.MockTransport(handler))
        task = asyncio.create_task(resolver.request("POST", ["/a"], body={}))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        resolver = EndpointResolver(BASE_URL, "k", http_client=client)

        await resolver.close()

        assert client.is_closed is False
        await client.aclose()
