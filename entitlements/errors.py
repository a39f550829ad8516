"""Error taxonomy shared by the gateway, ingestor, state machine and gate.

Every error carries the HTTP status the application surface maps it to.
A duplicate webhook delivery is *not* an error; see
:class:`entitlements.schemas.IngestStatus`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from entitlements.schemas import PathFailure


class BillingError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500


class ValidationError(BillingError):
    """Caller input is malformed.  Never retried."""

    status_code = 400


class AuthenticationError(BillingError):
    """An inbound webhook failed signature verification."""

    status_code = 401


class PreconditionError(BillingError):
    """Required local state is missing (e.g. no external customer id)."""

    status_code = 409


class UpstreamError(BillingError):
    """Every candidate endpoint and retry against the provider was exhausted.

    ``failures`` maps each candidate path to the last error seen on it.
    """

    status_code = 502

    def __init__(self, message: str, failures: dict[str, PathFailure] | None = None) -> None:
        super().__init__(message)
        self.failures: dict[str, PathFailure] = failures or {}


class PersistenceError(BillingError):
    """A local store read or write failed."""

    status_code = 503
