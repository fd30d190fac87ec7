"""In-memory payment gateway for development, staging and tests.

Behaves like a real gateway where it matters to the core: ``create`` is
idempotent per key on the gateway side, statuses change independently of the
local record, webhooks are HMAC-signed, and latency or outages can be
injected. Disabled in production unless ``PAYMENTS_FAKE_ENABLED`` is set.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from app.config import Settings, get_settings
from app.core.exceptions import ProviderUnavailable, WebhookVerificationError
from app.models.payment_intent import IntentStatus
from app.providers import signing
from app.providers.base import PaymentProvider, ProviderIntent
from app.schemas.webhook import WebhookEvent
from app.utils.time import from_epoch, parse_iso_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_ID_HEADER = "X-PSP-Event-Id"
REF_HEADER = "X-PSP-Ref"


@dataclass
class FakeGatewayIntent:
    provider_ref: str
    idempotency_key: str
    amount_cents: int
    currency: str
    metadata: dict[str, Any]
    status: IntentStatus = IntentStatus.PENDING
    failure_reason: str | None = None
    events: list[str] = field(default_factory=list)


class FakeProvider(PaymentProvider):
    """Simulated gateway. All knobs are plain attributes so tests can set them."""

    name = "fake"

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._lock = threading.Lock()
        self._by_key: dict[str, str] = {}
        self._intents: dict[str, FakeGatewayIntent] = {}
        self.create_calls = 0
        self.query_calls = 0
        self.create_latency = 0.0
        self.fail_creates = 0
        self.timeout_after_create = 0
        self.fail_queries = 0
        self.initial_status = IntentStatus.PENDING

    def is_available(self) -> bool:
        is_production = self.settings.app_env.lower() in {"prod", "production"}
        return not is_production or bool(self.settings.PAYMENTS_FAKE_ENABLED)

    # -- gateway API -----------------------------------------------------

    def create(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ProviderIntent:
        if not self.is_available():
            raise ProviderUnavailable("Fake payment provider is disabled in production.")

        with self._lock:
            self.create_calls += 1
            if self.fail_creates > 0:
                self.fail_creates -= 1
                raise ProviderUnavailable("Fake gateway rejected the request.", details={"reason": "injected"})

        if self.create_latency:
            time.sleep(min(self.create_latency, timeout))

        with self._lock:
            ref = self._by_key.get(idempotency_key)
            if ref is None:
                ref = f"fake_pi_{uuid4().hex[:16]}"
                self._by_key[idempotency_key] = ref
                self._intents[ref] = FakeGatewayIntent(
                    provider_ref=ref,
                    idempotency_key=idempotency_key,
                    amount_cents=amount_cents,
                    currency=currency,
                    metadata=dict(metadata),
                    status=self.initial_status,
                )
            gateway_intent = self._intents[ref]
            timed_out = self.create_latency > timeout
            if self.timeout_after_create > 0:
                self.timeout_after_create -= 1
                timed_out = True

        if timed_out:
            # The gateway did the work; we just never heard back.
            raise ProviderUnavailable("Fake gateway timed out.", details={"timeout_seconds": timeout})

        return ProviderIntent(
            provider_ref=ref,
            status=gateway_intent.status,
            checkout_url=self.checkout_url(ref),
        )

    def query_status(self, provider_ref: str, *, timeout: float) -> IntentStatus:
        with self._lock:
            self.query_calls += 1
            if self.fail_queries > 0:
                self.fail_queries -= 1
                raise ProviderUnavailable("Fake gateway status query failed.", details={"reason": "injected"})
            gateway_intent = self._intents.get(provider_ref)
        if gateway_intent is None:
            raise ProviderUnavailable("Unknown provider reference.", details={"provider_ref": provider_ref})
        return gateway_intent.status

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        signed_at = signing.verify_signature(raw_body, headers)
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError as exc:
            raise WebhookVerificationError(
                "WEBHOOK_PAYLOAD_INVALID", "Webhook body is not valid JSON.", status_code=400
            ) from exc
        if not isinstance(payload, dict):
            raise WebhookVerificationError("WEBHOOK_PAYLOAD_INVALID", "Webhook body must be an object.", status_code=400)

        event_id = payload.get("event_id") or payload.get("id") or signing.get_header(headers, EVENT_ID_HEADER)
        if not event_id:
            raise WebhookVerificationError("MISSING_EVENT_ID", "Webhook event_id is required.", status_code=400)

        kind = payload.get("type") or payload.get("event") or "unknown"
        provider_ref = (
            payload.get("provider_ref")
            or payload.get("psp_ref")
            or signing.get_header(headers, REF_HEADER)
        )
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, (int, float)):
            occurred_at = from_epoch(timestamp)
        elif isinstance(timestamp, str) and timestamp:
            occurred_at = parse_iso_utc(timestamp)
        else:
            occurred_at = from_epoch(signed_at)

        return WebhookEvent(
            provider_event_id=str(event_id),
            type=str(kind),
            provider_ref=provider_ref,
            timestamp=occurred_at,
            failure_reason=payload.get("failure_reason"),
            raw=payload,
            verified=True,
        )

    # -- simulation helpers ----------------------------------------------

    def checkout_url(self, provider_ref: str) -> str:
        base = self.settings.CHECKOUT_BASE_URL.rstrip("/")
        return f"{base}/payments/fake/checkout/{provider_ref}"

    def set_status(self, provider_ref: str, status: IntentStatus, failure_reason: str | None = None) -> None:
        """Change the gateway's truth without telling anyone (a lost webhook)."""

        with self._lock:
            gateway_intent = self._intents[provider_ref]
            gateway_intent.status = status
            gateway_intent.failure_reason = failure_reason

    def get(self, provider_ref: str) -> FakeGatewayIntent | None:
        with self._lock:
            return self._intents.get(provider_ref)

    def build_event(
        self,
        provider_ref: str,
        status: IntentStatus,
        *,
        event_id: str | None = None,
        failure_reason: str | None = None,
    ) -> dict[str, Any]:
        """Payload the gateway would POST when ``provider_ref`` reaches ``status``."""

        event_id = event_id or f"evt_{uuid4().hex[:16]}"
        with self._lock:
            gateway_intent = self._intents.get(provider_ref)
            if gateway_intent is not None:
                gateway_intent.events.append(event_id)
        return {
            "id": event_id,
            "type": status.value,
            "provider_ref": provider_ref,
            "timestamp": utcnow().isoformat(),
            "failure_reason": failure_reason,
        }

    def signed_request(self, payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
        secret = self.settings.psp_webhook_secret or self.settings.psp_webhook_secret_next
        if not secret:
            raise RuntimeError("PSP_WEBHOOK_SECRET is required to sign fake webhooks.")
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", **signing.sign_payload(secret, body)}
        return body, headers


__all__ = ["FakeProvider", "FakeGatewayIntent"]
