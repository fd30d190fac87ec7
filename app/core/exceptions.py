"""Domain exceptions for the payments core.

Exception hierarchy::

    PaymentsError (base)
    ├── IdempotencyConflict      same key, different parameters (client error)
    ├── ProviderUnavailable      gateway timeout/error on create or query
    │   └── AmbiguousFailure     query failure during reconciliation
    ├── IllegalTransition        change not allowed by the state table
    ├── ProviderRefConflict      attempt to reassign a provider reference
    ├── OrphanEvent              webhook without a matching intent
    ├── IntentNotFound
    ├── IntentNotCancelable
    ├── UnverifiedEvent          event that did not pass adapter verification
    └── WebhookVerificationError signature/timestamp rejected by the adapter

Each class carries the HTTP status and error code used by the API layer, so
routers never translate exceptions by hand.
"""
from __future__ import annotations

from typing import Any


class PaymentsError(Exception):
    """Base exception for all payments-core errors."""

    status_code = 500
    code = "PAYMENTS_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class IdempotencyConflict(PaymentsError):
    """An idempotency key was reused with different amount, currency or subject."""

    status_code = 409
    code = "IDEMPOTENCY_CONFLICT"


class ProviderUnavailable(PaymentsError):
    """The gateway timed out or errored. Local state is left untouched."""

    status_code = 503
    code = "PROVIDER_UNAVAILABLE"


class AmbiguousFailure(ProviderUnavailable):
    """A reconciliation query failed; the outcome at the gateway is unknown."""

    code = "PROVIDER_STATUS_UNKNOWN"


class IllegalTransition(PaymentsError):
    """Requested status change is absent from the transition table."""

    status_code = 409
    code = "ILLEGAL_TRANSITION"


class ProviderRefConflict(PaymentsError):
    """A different provider reference is already attached to the intent."""

    status_code = 500
    code = "PROVIDER_REF_CONFLICT"


class OrphanEvent(PaymentsError):
    """Gateway event referencing no known intent."""

    status_code = 202
    code = "ORPHAN_EVENT"


class IntentNotFound(PaymentsError):
    status_code = 404
    code = "PAYMENT_INTENT_NOT_FOUND"


class IntentNotCancelable(PaymentsError):
    status_code = 409
    code = "PAYMENT_INTENT_NOT_CANCELABLE"


class UnverifiedEvent(PaymentsError):
    status_code = 400
    code = "WEBHOOK_EVENT_UNVERIFIED"


class WebhookVerificationError(PaymentsError):
    """Raised by adapters when signature or timestamp checks fail."""

    status_code = 401

    def __init__(self, code: str, message: str, *, status_code: int = 401, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.code = code
        self.status_code = status_code


__all__ = [
    "PaymentsError",
    "IdempotencyConflict",
    "ProviderUnavailable",
    "AmbiguousFailure",
    "IllegalTransition",
    "ProviderRefConflict",
    "OrphanEvent",
    "IntentNotFound",
    "IntentNotCancelable",
    "UnverifiedEvent",
    "WebhookVerificationError",
]
