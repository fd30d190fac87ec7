"""HMAC verification for PSP-style webhooks (``X-PSP-Signature`` headers)."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Mapping
from datetime import datetime

from app.config import get_settings
from app.core.exceptions import WebhookVerificationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-PSP-Signature"
TIMESTAMP_HEADER = "X-PSP-Timestamp"


def _current_secrets() -> tuple[str | None, str | None]:
    settings = get_settings()
    return settings.psp_webhook_secret, settings.psp_webhook_secret_next


def masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def compute_signature(secret: str, body: bytes, timestamp: str) -> str:
    """Compute HMAC-SHA256 signature for the webhook payload."""

    msg = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def _parse_timestamp(ts: str) -> int:
    try:
        return int(float(ts))
    except (TypeError, ValueError):
        pass
    try:
        return int(datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp())
    except ValueError as exc:
        raise WebhookVerificationError("WEBHOOK_TIMESTAMP_INVALID", "Invalid timestamp format.") from exc


def _validate_drift(ts_seconds: int, secrets_info: Mapping[str, str | None]) -> None:
    max_drift = get_settings().psp_webhook_max_drift_seconds
    age = abs(int(time.time()) - ts_seconds)
    if age > max_drift:
        logger.warning(
            "PSP webhook timestamp outside allowed window",
            extra={"psp_secret_status": masked_secret_status(secrets_info), "age": age},
        )
        raise WebhookVerificationError(
            "WEBHOOK_TIMESTAMP_OUT_OF_RANGE",
            "Webhook timestamp is outside allowed window.",
            details={"age_seconds": age, "max_drift_seconds": max_drift},
        )


def verify_signature(raw_body: bytes, headers: Mapping[str, str]) -> int:
    """Validate signature and timestamp, returning the signed epoch seconds.

    Both the primary and the rotation secret are accepted.
    """

    provided_sig = get_header(headers, SIGNATURE_HEADER)
    ts = get_header(headers, TIMESTAMP_HEADER)

    primary_secret, secondary_secret = _current_secrets()
    secrets = [s for s in (primary_secret, secondary_secret) if s]
    secrets_info = {"primary": primary_secret, "secondary": secondary_secret}
    if not secrets:
        logger.error(
            "PSP webhook secrets are not configured",
            extra={"psp_secret_status": masked_secret_status(secrets_info)},
        )
        raise WebhookVerificationError(
            "WEBHOOK_SECRET_NOT_CONFIGURED",
            "PSP webhook secrets are not configured.",
            status_code=503,
        )

    if not provided_sig or not ts:
        logger.warning(
            "Missing PSP signature or timestamp",
            extra={"psp_secret_status": masked_secret_status(secrets_info)},
        )
        raise WebhookVerificationError("WEBHOOK_SIGNATURE_MISSING", "Signature or timestamp header missing.")

    ts_seconds = _parse_timestamp(ts)
    _validate_drift(ts_seconds, secrets_info)

    for secret in secrets:
        expected = compute_signature(secret, raw_body, ts)
        if hmac.compare_digest(expected, provided_sig):
            return ts_seconds

    logger.warning(
        "PSP webhook signature mismatch",
        extra={"psp_secret_status": masked_secret_status(secrets_info)},
    )
    raise WebhookVerificationError("WEBHOOK_SIGNATURE_INVALID", "Invalid PSP webhook signature.")


def sign_payload(secret: str, body: bytes, timestamp: str | None = None) -> dict[str, str]:
    """Headers a PSP would send for ``body``; used by the fake checkout flow."""

    timestamp = timestamp or str(int(time.time()))
    return {
        SIGNATURE_HEADER: compute_signature(secret, body, timestamp),
        TIMESTAMP_HEADER: timestamp,
    }


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "compute_signature",
    "get_header",
    "masked_secret_status",
    "sign_payload",
    "verify_signature",
]
