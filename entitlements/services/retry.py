"""Outbound provider calls across an ordered list of candidate paths.

The provider's routing differs between environments, so each logical call
is attempted against several path templates in order.  Per path, transient
failures (network errors, timeouts, 5xx) are retried with exponential
backoff; a 2xx short-circuits everything and a 4xx abandons that path only.

INVARIANT: :meth:`EndpointResolver.request` never raises for HTTP or
transport failures.  Exhaustion is reported as a :class:`ResolverResult`
with ``ok=False`` and the last error recorded per path.  Cancellation
(``asyncio.CancelledError``) is not intercepted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, Field

from entitlements.schemas import PathFailure, ResolverResult

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 10.0


class RetryConfig(BaseModel):
    """Tuneable parameters for per-path retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts made against each candidate path before moving on.",
    )
    base_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=False,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay after zero-based *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def minimum_backoff(config: RetryConfig, path_count: int) -> float:
    """Total sleep time when every attempt on *path_count* paths fails transiently.

    No sleep follows the last attempt on a path.  Jitter is ignored.
    """
    per_path = sum(
        min(config.base_delay * (2**attempt), config.max_delay) for attempt in range(config.max_retries - 1)
    )
    return per_path * path_count


def extract_external_id(body: Any, keys: tuple[str, ...] = ("id",)) -> str | None:
    """Find an identifier in a provider response of uncertain shape.

    Each key in *keys* is looked up at the top level, then under ``data``.
    Numbers are accepted and returned as strings.
    """
    if not isinstance(body, dict):
        return None
    containers: list[dict[str, Any]] = [body]
    nested = body.get("data")
    if isinstance(nested, dict):
        containers.append(nested)
    for container in containers:
        for key in keys:
            value = container.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, int) and not isinstance(value, bool):
                return str(value)
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class EndpointResolver:
    """Stateless caller for the payment provider's REST API.

    Safe to share across concurrent callers: every attempt uses only
    call-local state.

    Parameters
    ----------
    base_url:
        Provider root URL, e.g. ``https://test.dodopayments.com``.
    api_key:
        Sent as ``Authorization: Bearer <api_key>``.
    config:
        Per-path retry parameters.
    timeout:
        Per-request timeout in seconds, independent of the retry budget.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    sleep:
        Awaitable used between attempts; injectable for tests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        config: RetryConfig | None = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._config = config or RetryConfig()
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        candidate_paths: list[str],
        body: dict[str, Any] | None = None,
        path_params: dict[str, str] | None = None,
    ) -> ResolverResult:
        """Attempt *method* against each candidate path until one succeeds.

        Parameters
        ----------
        method:
            HTTP method, e.g. ``"POST"``.
        candidate_paths:
            Ordered path templates.  ``{name}`` placeholders are filled from
            *path_params*.
        body:
            JSON request body, or ``None`` for none.
        path_params:
            Values substituted into the path templates.

        Returns
        -------
        ResolverResult
            ``ok=True`` with the parsed response on the first 2xx, otherwise
            ``ok=False`` with ``failures`` keyed by path.
        """
        failures: dict[str, PathFailure] = {}

        for template in candidate_paths:
            path = template.format(**path_params) if path_params else template
            url = f"{self._base_url}{path}"

            for attempt in range(self._config.max_retries):
                attempts = attempt + 1
                try:
                    response = await self._client.request(method, url, json=body, headers=self._headers)
                except httpx.TimeoutException as exc:
                    failures[path] = PathFailure(
                        path=path, url=url, attempts=attempts, error=f"Timeout: {exc}"
                    )
                    logger.warning(
                        "Provider call timed out: %s %s attempt=%d/%d",
                        method,
                        url,
                        attempts,
                        self._config.max_retries,
                    )
                except httpx.RequestError as exc:
                    failures[path] = PathFailure(
                        path=path, url=url, attempts=attempts, error=f"{type(exc).__name__}: {exc}"
                    )
                    logger.warning(
                        "Provider call failed: %s %s attempt=%d/%d error=%s",
                        method,
                        url,
                        attempts,
                        self._config.max_retries,
                        exc,
                    )
                else:
                    status = response.status_code
                    if 200 <= status < 300:
                        logger.info(
                            "Provider call succeeded: %s %s status=%d attempt=%d",
                            method,
                            url,
                            status,
                            attempts,
                        )
                        return ResolverResult(
                            ok=True,
                            data=_response_body(response),
                            endpoint_used=path,
                            status_code=status,
                            candidate_paths=list(candidate_paths),
                            failures=failures,
                        )

                    failures[path] = PathFailure(
                        path=path,
                        url=url,
                        attempts=attempts,
                        status_code=status,
                        error=f"HTTP {status}",
                        body=_response_body(response),
                    )
                    if status < 500:
                        # Client errors will not improve on retry; try the next path.
                        logger.info(
                            "Provider rejected %s %s with status=%d; trying next path",
                            method,
                            url,
                            status,
                        )
                        break
                    logger.warning(
                        "Provider call failed: %s %s status=%d attempt=%d/%d",
                        method,
                        url,
                        status,
                        attempts,
                        self._config.max_retries,
                    )

                if attempts < self._config.max_retries:
                    await self._sleep(_compute_delay(attempt, self._config))

        logger.error(
            "All provider endpoints exhausted: %s paths=%s",
            method,
            ", ".join(failures) or "-",
        )
        return ResolverResult(
            ok=False,
            candidate_paths=list(candidate_paths),
            failures=failures,
        )
