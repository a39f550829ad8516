"""Inbound provider webhook verification, deduplication and dispatch.

A delivery moves through four steps:

1. **Verify**: HMAC-SHA256 over the raw body, compared in constant time.
2. **Parse & identify**: JSON is parsed only after verification; the event
   id, type and best-effort tenant id are extracted.
3. **Deduplicate**: the event row is inserted with ``ON CONFLICT DO
   NOTHING`` and committed *before* dispatch.  A conflicting insert means
   the event was already processed.
4. **Dispatch**: the event is handed to the subscription state machine.

INVARIANT: An event id is applied at most once.  Handler failures after the
event row is committed are logged and acknowledged, never re-raised, so a
provider redelivery cannot cause a second application.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.config import EntitlementSettings
from entitlements.errors import AuthenticationError, PersistenceError, ValidationError
from entitlements.schemas import IngestResult, IngestStatus, ProviderEvent
from entitlements.services.subscription_machine import SubscriptionStateMachine
from entitlements.state.database import session_scope
from entitlements.state.repository import WebhookEventRepository

logger = logging.getLogger(__name__)

_SIGNATURE_PREFIX = "sha256="


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _clean_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


class WebhookIngestor:
    """Turns raw provider deliveries into at-most-once state transitions.

    Parameters
    ----------
    session_factory:
        The event ledger insert runs in its own committed transaction.
    state_machine:
        Receives every newly recorded event.
    settings:
        Supplies the shared secret, signature header names and the
        event-id policy.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        settings: EntitlementSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._secret = settings.webhook_secret.get_secret_value()
        self._signature_headers = [name.lower() for name in settings.webhook_signature_headers]
        self._require_event_id = settings.require_event_id
        self._clock = clock

        if not self._secret:
            logger.warning("No webhook secret configured: inbound provider events will NOT be authenticated")

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    @staticmethod
    def compute_signature(raw_body: bytes, secret: str) -> str:
        """Return the hex HMAC-SHA256 of *raw_body* keyed by *secret*."""
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    @staticmethod
    def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
        """Constant-time check of a hex signature, optionally ``sha256=``-prefixed."""
        provided = signature.strip()
        if provided.lower().startswith(_SIGNATURE_PREFIX):
            provided = provided[len(_SIGNATURE_PREFIX) :]
        expected = WebhookIngestor.compute_signature(raw_body, secret)
        # Bytes comparison: header values may carry arbitrary non-ASCII text.
        return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8", "surrogateescape"))

    def _find_signature(self, headers: Mapping[str, str]) -> str | None:
        lowered = {key.lower(): value for key, value in headers.items()}
        for name in self._signature_headers:
            value = lowered.get(name)
            if value:
                return value
        return None

    def _verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self._secret:
            logger.warning("Accepting unauthenticated webhook delivery (no secret configured)")
            return

        signature = self._find_signature(headers)
        if signature is None:
            logger.warning("Rejected webhook delivery: no signature header present")
            raise AuthenticationError("Missing webhook signature")
        if not self.verify_signature(raw_body, signature, self._secret):
            logger.warning("Rejected webhook delivery: signature mismatch")
            raise AuthenticationError("Invalid webhook signature")

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        """Parse a verified body into a :class:`ProviderEvent`.

        Raises
        ------
        ValidationError
            If the body is not a JSON object, or it carries no event id while
            ``require_event_id`` is set.
        """
        if not raw_body:
            raise ValidationError("Empty webhook body")
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError(f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        data = _as_dict(payload.get("data"))
        obj = _as_dict(data.get("object"))

        event_type = _clean_id(payload.get("type")) or _clean_id(payload.get("event_type")) or "unknown"

        event_id = (
            _clean_id(payload.get("id"))
            or _clean_id(payload.get("event_id"))
            or _clean_id(data.get("id"))
        )
        deduplicable = event_id is not None
        if event_id is None:
            if self._require_event_id:
                raise ValidationError("Webhook event carries no id")
            event_id = f"webhook_{uuid.uuid4().hex}"
            logger.warning(
                "Provider event of type %s carries no id; synthesized %s (cannot be deduplicated)",
                event_type,
                event_id,
            )

        tenant_id = (
            _clean_id(_as_dict(payload.get("metadata")).get("tenant_id"))
            or _clean_id(_as_dict(data.get("metadata")).get("tenant_id"))
            or _clean_id(_as_dict(obj.get("metadata")).get("tenant_id"))
        )

        return ProviderEvent(
            event_id=event_id,
            event_type=event_type,
            tenant_id=tenant_id,
            payload=payload,
            received_at=self._clock(),
            deduplicable=deduplicable,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """Verify, record and apply one webhook delivery.

        Parameters
        ----------
        raw_body:
            The request body exactly as received.
        headers:
            Request headers; names are matched case-insensitively.

        Returns
        -------
        IngestResult
            ``processed`` for a newly applied event, ``duplicate`` if the
            event id was already recorded.

        Raises
        ------
        AuthenticationError
            If a secret is configured and the signature is missing or wrong.
        ValidationError
            If the body cannot be parsed.
        PersistenceError
            If the event row could not be stored.  Nothing was applied, so
            the provider may safely redeliver.
        """
        self._verify(raw_body, headers)
        event = self.parse_event(raw_body)

        try:
            async with session_scope(self._session_factory) as session:
                inserted = await WebhookEventRepository(session).insert_if_absent(
                    event.event_id,
                    event.event_type,
                    event.tenant_id,
                    event.payload,
                    event.received_at,
                )
        except SQLAlchemyError as exc:
            logger.error("Could not record webhook event %s: %s", event.event_id, exc)
            raise PersistenceError(f"Could not record webhook event {event.event_id}") from exc

        if not inserted:
            logger.info("Duplicate webhook event %s (%s) ignored", event.event_id, event.event_type)
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                deduplicable=event.deduplicable,
            )

        transition = None
        handler_error = None
        try:
            transition = await self._state_machine.apply(event)
        except Exception as exc:
            # Event row is committed: acknowledge regardless.
            handler_error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "Handler failed for webhook event %s (%s) tenant=%s",
                event.event_id,
                event.event_type,
                event.tenant_id,
            )

        tenant_id = event.tenant_id or (transition.tenant_id if transition else None)
        logger.info(
            "Processed webhook event %s (%s) tenant=%s",
            event.event_id,
            event.event_type,
            tenant_id,
            extra={"event_id": event.event_id, "tenant_id": tenant_id},
        )
        return IngestResult(
            status=IngestStatus.PROCESSED,
            event_id=event.event_id,
            event_type=event.event_type,
            tenant_id=tenant_id,
            deduplicable=event.deduplicable,
            transition=transition,
            handler_error=handler_error,
        )
