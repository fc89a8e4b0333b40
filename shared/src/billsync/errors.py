"""Error taxonomy for billing event reconciliation.

Only ``AuthenticationError``, ``ConfigurationError`` and ``StoreWriteError``
ever reach a webhook caller (as 401/500). ``TranslationAmbiguity`` is attached
to translated records as a review flag and ``SideEffectFailure`` is converted
into a retry queue entry at the activation boundary.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for billing reconciliation failures."""


class AuthenticationError(ReconciliationError):
    """Inbound event signature is missing or does not match."""


class ConfigurationError(ReconciliationError):
    """A secret or provider setting required for reconciliation is missing."""


class InvalidEventPayload(ReconciliationError):
    """A verified event body does not carry the expected envelope."""


class TranslationAmbiguity(ReconciliationError):
    """Provider discount shape could not be mapped to a local discount type."""

    def __init__(self, message: str, *, coupon_id: str | None = None) -> None:
        super().__init__(message)
        self.coupon_id = coupon_id


class StoreWriteError(ReconciliationError):
    """Datastore write failed; the provider is expected to redeliver."""


class SideEffectFailure(ReconciliationError):
    """A downstream action (DNS, provisioning) did not complete."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
