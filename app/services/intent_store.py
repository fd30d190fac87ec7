"""Durable payment intent storage.

All writes here are single conditional statements or savepoint-guarded
inserts, so correctness holds across several service instances sharing one
database: the unique index on ``idempotency_key`` decides who creates an
intent, ``provider_ref IS NULL`` decides who attaches the gateway reference,
and ``status = <observed>`` decides which of two racing transitions wins.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    IdempotencyConflict,
    IntentNotCancelable,
    IntentNotFound,
    ProviderRefConflict,
)
from app.models.payment_intent import IntentStatus, PaymentIntent
from app.services import state_machine
from app.utils.audit import log_audit
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# A racing writer can move the row between our read and our update; a couple
# of compare-and-swap rounds always settles because statuses only move forward.
_MAX_CAS_ROUNDS = 4


@dataclass(frozen=True)
class TransitionOutcome:
    """Truthy when the conditional update changed the row."""

    applied: bool
    previous: IntentStatus | None = None
    current: IntentStatus | None = None

    def __bool__(self) -> bool:
        return self.applied


def _normalise_currency(currency: str) -> str:
    return currency.strip().upper()


def get_intent(db: Session, intent_id: int, *, fresh: bool = False) -> PaymentIntent | None:
    stmt = select(PaymentIntent).where(PaymentIntent.id == intent_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.scalars(stmt).one_or_none()


def get_intent_or_404(db: Session, intent_id: int) -> PaymentIntent:
    intent = get_intent(db, intent_id)
    if intent is None:
        raise IntentNotFound("Payment intent not found.", details={"intent_id": intent_id})
    return intent


def get_by_idempotency_key(db: Session, idempotency_key: str) -> PaymentIntent | None:
    stmt = (
        select(PaymentIntent)
        .where(PaymentIntent.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).one_or_none()


def get_by_provider_ref(db: Session, provider_ref: str) -> PaymentIntent | None:
    stmt = (
        select(PaymentIntent)
        .where(PaymentIntent.provider_ref == provider_ref)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).one_or_none()


def create_or_get(
    db: Session,
    *,
    idempotency_key: str,
    amount_cents: int,
    currency: str,
    subject_id: str,
    metadata: dict[str, Any] | None = None,
    description: str | None = None,
    provider: str = "fake",
) -> tuple[PaymentIntent, bool]:
    """Insert a PENDING intent for ``idempotency_key`` or return the existing one.

    The insert is attempted first; the unique index is what arbitrates between
    concurrent callers. A replay with the same (amount, currency, subject)
    returns ``(intent, False)``. Any difference raises ``IdempotencyConflict``
    and the stored intent is left untouched.
    """

    currency = _normalise_currency(currency)
    intent = PaymentIntent(
        idempotency_key=idempotency_key,
        provider=provider,
        amount_cents=amount_cents,
        currency=currency,
        subject_id=subject_id,
        description=description,
        metadata_json=dict(metadata or {}),
        status=IntentStatus.PENDING,
        # Whoever wins the insert owns the provider call.
        creation_claimed_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(intent)
        log_audit(
            db,
            actor="system",
            action="PAYMENT_INTENT_CREATED",
            entity="PaymentIntent",
            entity_id=intent.id,
            data={
                "idempotency_key": idempotency_key,
                "amount_cents": amount_cents,
                "currency": currency,
                "subject_id": subject_id,
                "provider": provider,
            },
        )
        db.commit()
        logger.info(
            "Payment intent created",
            extra={"intent_id": intent.id, "idem": idempotency_key, "amount_cents": amount_cents},
        )
        return intent, True
    except IntegrityError as exc:
        # Lost the insert race (or plain replay): the winner's row is authoritative.
        # Ending the transaction also drops the write lock the failed insert took.
        db.rollback()
        insert_error = exc

    existing = get_by_idempotency_key(db, idempotency_key)
    if existing is None:
        # The unique violation came from some other constraint.
        raise insert_error
    if not existing.matches(amount_cents=amount_cents, currency=currency, subject_id=subject_id):
        logger.warning(
            "Idempotency key reused with different parameters",
            extra={"intent_id": existing.id, "idem": idempotency_key},
        )
        raise IdempotencyConflict(
            "Idempotency key already used with different parameters.",
            details={"idempotency_key": idempotency_key, "intent_id": existing.id},
        )
    logger.info("Reusing existing payment intent", extra={"intent_id": existing.id, "idem": idempotency_key})
    return existing, False


def attach_provider_ref(
    db: Session,
    intent_id: int,
    provider_ref: str,
    *,
    checkout_url: str | None = None,
) -> PaymentIntent:
    """Bind the gateway reference to an intent exactly once.

    Attaching the same reference again is a no-op. Attaching a different one is
    an invariant violation: it is logged and rejected, never applied.
    """

    now = utcnow()
    result = db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id, PaymentIntent.provider_ref.is_(None))
        .values(provider_ref=provider_ref, checkout_url=checkout_url, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        log_audit(
            db,
            actor="system",
            action="PROVIDER_REF_ATTACHED",
            entity="PaymentIntent",
            entity_id=intent_id,
            data={"provider_ref": provider_ref, "checkout_url": checkout_url},
        )
        db.commit()
        logger.info("Provider reference attached", extra={"intent_id": intent_id, "provider_ref": provider_ref})
        return get_intent(db, intent_id, fresh=True)

    db.rollback()
    intent = get_intent(db, intent_id, fresh=True)
    if intent is None:
        raise IntentNotFound("Payment intent not found.", details={"intent_id": intent_id})
    if intent.provider_ref == provider_ref:
        return intent

    logger.error(
        "Refusing to reassign provider reference",
        extra={"intent_id": intent_id, "existing_ref": intent.provider_ref, "new_ref": provider_ref},
    )
    raise ProviderRefConflict(
        "Payment intent already bound to a different provider reference.",
        details={"intent_id": intent_id},
    )


def transition(
    db: Session,
    intent_id: int,
    allowed_from: Iterable[IntentStatus],
    to: IntentStatus,
    *,
    reason: str | None = None,
    event_at: datetime | None = None,
    actor: str = "system",
    commit: bool = True,
) -> TransitionOutcome:
    """Move an intent to ``to`` only if its stored status is in ``allowed_from``.

    This is the single choke point for status changes. Sources the transition
    table does not permit are dropped first; if none remain the request is
    logged as an anomaly and nothing is written. The update itself is a
    compare-and-swap on the observed status, so of two racing callers exactly
    one sees a changed row and the other gets a falsy outcome.
    """

    requested = frozenset(allowed_from)
    legal = state_machine.legal_sources(requested, to)
    if not legal:
        logger.warning(
            "Illegal transition requested",
            extra={
                "intent_id": intent_id,
                "allowed_from": sorted(status.value for status in requested),
                "to": to.value,
            },
        )
        return TransitionOutcome(applied=False)

    for _ in range(_MAX_CAS_ROUNDS):
        current = db.scalar(select(PaymentIntent.status).where(PaymentIntent.id == intent_id))
        if current is None:
            raise IntentNotFound("Payment intent not found.", details={"intent_id": intent_id})
        if current not in legal:
            if commit:
                # Ends the read (and any lock a lost update took) without touching data.
                db.commit()
            return TransitionOutcome(applied=False, previous=current, current=current)

        now = utcnow()
        values: dict[str, Any] = {"status": to, "updated_at": now}
        if reason is not None:
            values["failure_reason"] = reason[:255]
        if event_at is not None:
            values["last_event_at"] = event_at
        result = db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log_audit(
                db,
                actor=actor,
                action="PAYMENT_INTENT_TRANSITION",
                entity="PaymentIntent",
                entity_id=intent_id,
                data={"from": current.value, "to": to.value, "reason": reason},
            )
            if commit:
                db.commit()
            else:
                db.flush()
            logger.info(
                "Payment intent transitioned",
                extra={"intent_id": intent_id, "from": current.value, "to": to.value, "actor": actor},
            )
            return TransitionOutcome(applied=True, previous=current, current=to)

    logger.info("Transition lost every compare-and-swap round", extra={"intent_id": intent_id, "to": to.value})
    if commit:
        db.commit()
    return TransitionOutcome(applied=False)


def cancel_intent(db: Session, intent_id: int, *, reason: str | None = None, actor: str = "api") -> PaymentIntent:
    """Cancel a PENDING/PROCESSING intent through the conditional update.

    A cancel racing a gateway success is settled by whichever update lands
    first. Cancelling an already cancelled intent returns it unchanged.
    """

    get_intent_or_404(db, intent_id)
    outcome = transition(
        db,
        intent_id,
        state_machine.CANCELABLE,
        IntentStatus.CANCELED,
        reason=reason or "canceled_by_caller",
        actor=actor,
    )
    intent = get_intent(db, intent_id, fresh=True)
    if outcome or intent.status == IntentStatus.CANCELED:
        return intent
    raise IntentNotCancelable(
        "Payment intent can no longer be canceled.",
        details={"intent_id": intent_id, "status": intent.status.value},
    )


# Lease and counter writes below pin ``updated_at``: it marks the last applied
# change, which both sweeper selection and the stale-event rule read.


def claim_creation(db: Session, intent_id: int, *, lease_seconds: int) -> bool:
    """Take the right to call the provider's ``create`` for this intent.

    Succeeds only while no reference is attached and nobody else holds an
    unexpired lease.
    """

    now = utcnow()
    cutoff = now - timedelta(seconds=lease_seconds)
    result = db.execute(
        update(PaymentIntent)
        .where(
            PaymentIntent.id == intent_id,
            PaymentIntent.provider_ref.is_(None),
            PaymentIntent.status == IntentStatus.PENDING,
            or_(
                PaymentIntent.creation_claimed_at.is_(None),
                PaymentIntent.creation_claimed_at < cutoff,
            ),
        )
        .values(creation_claimed_at=now, updated_at=PaymentIntent.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_creation(db: Session, intent_id: int) -> None:
    """Give the creation lease back after a failed provider call."""

    db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id, PaymentIntent.provider_ref.is_(None))
        .values(creation_claimed_at=None, updated_at=PaymentIntent.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def creation_lease_active(intent: PaymentIntent, *, lease_seconds: int, now: datetime | None = None) -> bool:
    claimed_at = ensure_utc(intent.creation_claimed_at)
    if claimed_at is None:
        return False
    now = now or utcnow()
    return claimed_at >= now - timedelta(seconds=lease_seconds)


def record_reconcile_failure(db: Session, intent_id: int) -> int:
    """Bump the consecutive failure counter and return its new value."""

    db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .values(
            reconcile_failures=PaymentIntent.reconcile_failures + 1,
            updated_at=PaymentIntent.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(db.scalar(select(PaymentIntent.reconcile_failures).where(PaymentIntent.id == intent_id)) or 0)


def reset_reconcile_failures(db: Session, intent_id: int) -> None:
    db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id, PaymentIntent.reconcile_failures != 0)
        .values(reconcile_failures=0, updated_at=PaymentIntent.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def flag_for_attention(db: Session, intent_id: int) -> bool:
    """Set ``needs_attention`` once; returns True only for the call that set it."""

    result = db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id, PaymentIntent.needs_attention.is_(False))
        .values(needs_attention=True, updated_at=PaymentIntent.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def list_stale_intents(db: Session, *, older_than: datetime, limit: int) -> list[PaymentIntent]:
    """Non-terminal intents nobody has touched since ``older_than``, oldest first."""

    stmt = (
        select(PaymentIntent)
        .where(
            PaymentIntent.status.in_(state_machine.NON_TERMINAL),
            PaymentIntent.updated_at < older_than,
        )
        .order_by(PaymentIntent.updated_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt).all())


__all__ = [
    "TransitionOutcome",
    "get_intent",
    "get_intent_or_404",
    "get_by_idempotency_key",
    "get_by_provider_ref",
    "create_or_get",
    "attach_provider_ref",
    "transition",
    "cancel_intent",
    "claim_creation",
    "release_creation",
    "creation_lease_active",
    "record_reconcile_failure",
    "reset_reconcile_failures",
    "flag_for_attention",
    "list_stale_intents",
]
