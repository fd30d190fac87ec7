"""Stripe SDK wrapper implementing the provider contract."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import stripe

from app.config import Settings, get_settings
from app.core.exceptions import ProviderUnavailable, WebhookVerificationError
from app.models.payment_intent import IntentStatus
from app.providers.base import PaymentProvider, ProviderIntent
from app.schemas.webhook import WebhookEvent
from app.utils.time import from_epoch

logger = logging.getLogger(__name__)

# Stripe PaymentIntent.status -> local status.
STATUS_MAP: dict[str, IntentStatus] = {
    "requires_payment_method": IntentStatus.PENDING,
    "requires_confirmation": IntentStatus.PENDING,
    "requires_action": IntentStatus.PENDING,
    "processing": IntentStatus.PROCESSING,
    "requires_capture": IntentStatus.PROCESSING,
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.CANCELED,
}

# Transport-level problems: the request may or may not have reached Stripe.
_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _map_status(raw_status: str | None) -> IntentStatus:
    status = STATUS_MAP.get(raw_status or "")
    if status is None:
        logger.warning("Unknown Stripe PaymentIntent status", extra={"stripe_status": raw_status})
        return IntentStatus.PENDING
    return status


class StripeProvider(PaymentProvider):
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    name = "stripe"

    def __init__(self, settings: Settings) -> None:
        """Initialise the client and set the API key."""

        self.settings = settings
        self._secret_key = settings.STRIPE_SECRET_KEY
        self._webhook_secret = settings.STRIPE_WEBHOOK_SECRET

        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key
        # The core never retries indefinitely; one explicit timeout per call.
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.new_default_http_client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    @classmethod
    def from_env(cls) -> "StripeProvider":
        """Instantiate a provider using the cached application settings."""

        return cls(get_settings())

    def create(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ProviderIntent:
        """Create a PaymentIntent; Stripe replays the original for a repeated key."""

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                metadata={key: str(value) for key, value in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except _TRANSIENT_ERRORS as exc:
            logger.warning("Stripe create failed", extra={"idem": idempotency_key, "error": type(exc).__name__})
            raise ProviderUnavailable("Stripe is unavailable.", details={"error": type(exc).__name__}) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe rejected PaymentIntent creation", extra={"idem": idempotency_key})
            raise ProviderUnavailable("Stripe rejected the request.", details={"error": type(exc).__name__}) from exc

        return ProviderIntent(provider_ref=intent["id"], status=_map_status(intent.get("status")))

    def query_status(self, provider_ref: str, *, timeout: float) -> IntentStatus:
        try:
            intent = stripe.PaymentIntent.retrieve(provider_ref, expand=["latest_charge"])
        except stripe.StripeError as exc:
            raise ProviderUnavailable("Stripe status query failed.", details={"error": type(exc).__name__}) from exc

        charge = intent.get("latest_charge")
        if isinstance(charge, Mapping) and charge.get("refunded"):
            return IntentStatus.REFUNDED
        if intent.get("status") == "requires_payment_method" and intent.get("last_payment_error"):
            return IntentStatus.FAILED
        return _map_status(intent.get("status"))

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Verify the Stripe-Signature header and normalise the event."""

        if not self._webhook_secret:
            raise WebhookVerificationError(
                "STRIPE_NOT_CONFIGURED",
                "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET.",
                status_code=503,
            )
        sig_header = next((v for k, v in headers.items() if k.lower() == "stripe-signature"), None)
        if not sig_header:
            raise WebhookVerificationError("STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required.", status_code=400)

        try:
            event = stripe.Webhook.construct_event(raw_body, sig_header, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed")
            raise WebhookVerificationError("STRIPE_SIGNATURE_INVALID", "Invalid Stripe signature.", status_code=400) from exc
        except ValueError as exc:
            raise WebhookVerificationError("STRIPE_EVENT_INVALID", "Invalid Stripe webhook payload.", status_code=400) from exc

        obj = event["data"]["object"]
        event_type = event["type"]
        if event_type.startswith("charge."):
            provider_ref = obj.get("payment_intent")
        else:
            provider_ref = obj.get("id")
        failure = obj.get("last_payment_error") or {}

        return WebhookEvent(
            provider_event_id=event["id"],
            type=event_type,
            provider_ref=provider_ref,
            timestamp=from_epoch(event["created"]),
            failure_reason=failure.get("message") if isinstance(failure, Mapping) else None,
            raw={"id": event["id"], "type": event_type},
            verified=True,
        )


__all__ = ["StripeProvider", "STATUS_MAP"]
