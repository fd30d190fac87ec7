"""Provider contract shared by every payment gateway adapter."""
from __future__ import annotations

import abc
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.models.payment_intent import IntentStatus
from app.schemas.webhook import WebhookEvent


@dataclass(frozen=True)
class ProviderIntent:
    """What the gateway returned for a ``create`` call."""

    provider_ref: str
    status: IntentStatus
    checkout_url: str | None = None


class PaymentProvider(abc.ABC):
    """Gateway adapter.

    Implementations must honour ``timeout`` on every network call and raise
    ``ProviderUnavailable`` on timeouts and transport errors. ``create`` must
    forward ``idempotency_key`` to the gateway so that a repeated call for the
    same key yields the same gateway object.
    """

    name: str = "abstract"

    def is_available(self) -> bool:
        return True

    @abc.abstractmethod
    def create(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ProviderIntent:
        """Create (or fetch, for a repeated key) the gateway payment intent."""

    @abc.abstractmethod
    def query_status(self, provider_ref: str, *, timeout: float) -> IntentStatus:
        """Return the gateway's current view of the intent."""

    @abc.abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Verify authenticity and return a normalised, verified event.

        Raises ``WebhookVerificationError`` when the payload cannot be trusted.
        """

    def describe(self) -> dict[str, object]:
        return {"name": self.name, "available": self.is_available()}


__all__ = ["ProviderIntent", "PaymentProvider"]
