"""Idempotent payment intent creation.

Exactly one caller per idempotency key talks to the gateway: the one that won
the insert, or whoever later re-claims an expired creation lease. Everyone
else waits (bounded) for the reference to appear.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from app.config import get_settings
from app.core.exceptions import ProviderUnavailable
from app.models.payment_intent import IntentStatus, PaymentIntent
from app.providers.base import PaymentProvider
from app.services import intent_store, state_machine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreationResult:
    intent: PaymentIntent
    created: bool
    still_processing: bool = False


def _unresolved(intent: PaymentIntent | None) -> bool:
    return intent is not None and intent.provider_ref is None and not state_machine.is_terminal(intent.status)


def _read_fresh(db: Session, intent_id: int) -> PaymentIntent | None:
    # End the read transaction so the next SELECT sees other writers' commits.
    db.commit()
    return intent_store.get_intent(db, intent_id, fresh=True)


def wait_for_reference(db: Session, intent_id: int) -> PaymentIntent | None:
    """Poll until the intent has a provider reference or reached a terminal state.

    Returns the last observed row; callers check ``provider_ref`` to know
    whether the budget ran out.
    """

    settings = get_settings()
    retrying = Retrying(
        stop=stop_after_attempt(max(1, settings.IDEMPOTENCY_POLL_ATTEMPTS)),
        wait=wait_exponential(
            multiplier=settings.IDEMPOTENCY_POLL_BASE_SECONDS,
            max=settings.IDEMPOTENCY_POLL_MAX_SECONDS,
        ),
        retry=retry_if_result(_unresolved),
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    return retrying(_read_fresh, db, intent_id)


def drive_creation(db: Session, provider: PaymentProvider, intent: PaymentIntent) -> PaymentIntent:
    """Call the gateway for an intent whose creation lease we hold.

    The gateway call carries the intent's idempotency key, so a re-drive after
    a crash or timeout gets the original gateway object back.
    """

    settings = get_settings()
    metadata: dict[str, Any] = {
        **(intent.metadata_json or {}),
        "intent_id": intent.id,
        "subject_id": intent.subject_id,
    }
    try:
        created = provider.create(
            intent.amount_cents,
            intent.currency,
            intent.idempotency_key,
            metadata,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    except ProviderUnavailable:
        intent_store.release_creation(db, intent.id)
        logger.warning(
            "Provider create failed; intent left pending",
            extra={"intent_id": intent.id, "idem": intent.idempotency_key, "provider": provider.name},
        )
        raise

    intent = intent_store.attach_provider_ref(
        db, intent.id, created.provider_ref, checkout_url=created.checkout_url
    )
    if created.status != IntentStatus.PENDING:
        intent_store.transition(
            db,
            intent.id,
            state_machine.sources_for(created.status),
            created.status,
            actor=f"provider:{provider.name}",
        )
        intent = intent_store.get_intent(db, intent.id, fresh=True)
    return intent


def create_payment_intent(
    db: Session,
    provider: PaymentProvider,
    *,
    idempotency_key: str,
    amount_cents: int,
    currency: str,
    subject_id: str,
    metadata: dict[str, Any] | None = None,
    description: str | None = None,
) -> CreationResult:
    """Create (or replay) the intent for ``idempotency_key``."""

    settings = get_settings()
    intent, is_new = intent_store.create_or_get(
        db,
        idempotency_key=idempotency_key,
        amount_cents=amount_cents,
        currency=currency,
        subject_id=subject_id,
        metadata=metadata,
        description=description,
        provider=provider.name,
    )

    if is_new:
        return CreationResult(intent=drive_creation(db, provider, intent), created=True)

    if not _unresolved(intent):
        return CreationResult(intent=intent, created=False)

    if intent_store.claim_creation(db, intent.id, lease_seconds=settings.CREATION_LEASE_SECONDS):
        logger.info("Re-driving creation after expired lease", extra={"intent_id": intent.id, "idem": idempotency_key})
        return CreationResult(intent=drive_creation(db, provider, intent), created=False)

    observed = wait_for_reference(db, intent.id) or intent
    still_processing = _unresolved(observed)
    if still_processing:
        logger.info("Creation still in flight elsewhere", extra={"intent_id": intent.id, "idem": idempotency_key})
    return CreationResult(intent=observed, created=False, still_processing=still_processing)


def cancel_payment_intent(
    db: Session, intent_id: int, reason: str | None = None, *, actor: str = "api"
) -> PaymentIntent:
    return intent_store.cancel_intent(db, intent_id, reason=reason, actor=actor)


__all__ = [
    "CreationResult",
    "cancel_payment_intent",
    "create_payment_intent",
    "drive_creation",
    "wait_for_reference",
]
