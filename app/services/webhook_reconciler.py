"""Apply verified gateway events to payment intents, exactly once per event id."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.exceptions import UnverifiedEvent
from app.models.payment_intent import IntentStatus
from app.models.webhook_ledger import LedgerOutcome, WebhookLedgerEntry
from app.schemas.webhook import IngestResult, WebhookEvent
from app.services import intent_store, state_machine
from app.services.alerts import ALERT_ORPHAN_EVENT, ALERT_TERMINAL_CONFLICT, create_alert
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Canonical status names plus the gateway-specific aliases we accept.
EVENT_TYPE_TARGETS: dict[str, IntentStatus] = {
    **{status.value: status for status in IntentStatus},
    **{status.value.lower(): status for status in IntentStatus},
    "payment_intent.processing": IntentStatus.PROCESSING,
    "payment_intent.succeeded": IntentStatus.SUCCEEDED,
    "payment_intent.payment_failed": IntentStatus.FAILED,
    "payment_intent.failed": IntentStatus.FAILED,
    "payment_intent.canceled": IntentStatus.CANCELED,
    "payment_intent.cancelled": IntentStatus.CANCELED,
    "charge.refunded": IntentStatus.REFUNDED,
    "refund.completed": IntentStatus.REFUNDED,
}

# A gateway success landing on these means money may have moved anyway.
_CONFLICTING_WITH_SUCCESS = frozenset({IntentStatus.CANCELED, IntentStatus.FAILED})


def target_for(event_type: str) -> IntentStatus | None:
    return EVENT_TYPE_TARGETS.get(event_type)


def get_entry(db: Session, provider_event_id: str) -> WebhookLedgerEntry | None:
    stmt = select(WebhookLedgerEntry).where(WebhookLedgerEntry.provider_event_id == provider_event_id)
    return db.scalars(stmt).one_or_none()


def ingest(db: Session, event: WebhookEvent) -> IngestResult:
    """Record ``event`` in the ledger and apply it to its intent.

    The ledger row, the intent transition and any alert are committed
    together, so a crash before commit leaves nothing behind and the gateway's
    redelivery is processed normally.
    """

    if not event.verified:
        raise UnverifiedEvent(
            "Webhook event was not verified by the provider adapter.",
            details={"provider_event_id": event.provider_event_id},
        )

    if get_entry(db, event.provider_event_id) is not None:
        logger.info("Duplicate webhook event ignored", extra={"event_id": event.provider_event_id})
        return IngestResult(provider_event_id=event.provider_event_id, duplicate=True)

    entry = WebhookLedgerEntry(
        provider_event_id=event.provider_event_id,
        event_type=event.type,
        provider_ref=event.provider_ref,
        event_timestamp=event.timestamp,
        failure_reason=event.failure_reason[:255] if event.failure_reason else None,
        source=event.source,
        outcome=LedgerOutcome.RECEIVED,
        attempts=0,
        raw_json=dict(event.raw),
    )
    db.add(entry)
    try:
        # First write of the transaction: a unique violation rolls back nothing else.
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Concurrent duplicate webhook event ignored", extra={"event_id": event.provider_event_id})
        return IngestResult(provider_event_id=event.provider_event_id, duplicate=True)

    logger.info(
        "Webhook event recorded",
        extra={"event_id": event.provider_event_id, "event_type": event.type, "source": event.source},
    )
    return _apply(db, entry, now=utcnow())


def _finish(db: Session, entry: WebhookLedgerEntry, now: datetime) -> IngestResult:
    entry.processed_at = now
    db.commit()
    return IngestResult(
        provider_event_id=entry.provider_event_id,
        outcome=entry.outcome,
        intent_id=entry.intent_id,
        applied_transition=entry.applied_transition,
    )


def _apply(db: Session, entry: WebhookLedgerEntry, *, now: datetime) -> IngestResult:
    target = target_for(entry.event_type)
    if target is None:
        entry.outcome = LedgerOutcome.IGNORED
        logger.info("Unhandled webhook event type", extra={"event_id": entry.provider_event_id, "event_type": entry.event_type})
        return _finish(db, entry, now)

    intent = intent_store.get_by_provider_ref(db, entry.provider_ref) if entry.provider_ref else None
    if intent is None:
        return _orphan(db, entry, now)

    entry.intent_id = intent.id
    event_at = ensure_utc(entry.event_timestamp)
    outcome = intent_store.transition(
        db,
        intent.id,
        state_machine.sources_for(target),
        target,
        reason=entry.failure_reason if target == IntentStatus.FAILED else None,
        event_at=event_at,
        actor=f"{entry.source}:{entry.provider_event_id}"[:64],
        commit=False,
    )
    if outcome:
        entry.outcome = LedgerOutcome.APPLIED
        entry.applied_transition = state_machine.describe(outcome.previous, target)
        return _finish(db, entry, now)

    intent = intent_store.get_intent(db, intent.id, fresh=True)
    current = intent.status
    if current == target:
        entry.outcome = LedgerOutcome.NOOP
    elif event_at is not None and event_at < ensure_utc(intent.updated_at):
        entry.outcome = LedgerOutcome.STALE
        logger.info(
            "Stale webhook event discarded",
            extra={"event_id": entry.provider_event_id, "intent_id": intent.id, "status": current.value, "target": target.value},
        )
    else:
        entry.outcome = LedgerOutcome.REJECTED
        logger.warning(
            "Illegal transition requested by gateway event",
            extra={"event_id": entry.provider_event_id, "intent_id": intent.id, "status": current.value, "target": target.value},
        )

    if target == IntentStatus.SUCCEEDED and current in _CONFLICTING_WITH_SUCCESS:
        create_alert(
            db,
            alert_type=ALERT_TERMINAL_CONFLICT,
            message=f"Gateway reported success for a {current.value} payment intent.",
            intent_id=intent.id,
            payload={"event_id": entry.provider_event_id, "status": current.value},
            commit=False,
        )
    return _finish(db, entry, now)


def _orphan(db: Session, entry: WebhookLedgerEntry, now: datetime) -> IngestResult:
    settings = get_settings()
    entry.attempts = (entry.attempts or 0) + 1
    if entry.attempts >= settings.ORPHAN_MAX_ATTEMPTS:
        entry.outcome = LedgerOutcome.ORPHAN_ALERTED
        entry.next_retry_at = None
        create_alert(
            db,
            alert_type=ALERT_ORPHAN_EVENT,
            message="Webhook event references an unknown payment intent.",
            payload={
                "event_id": entry.provider_event_id,
                "event_type": entry.event_type,
                "provider_ref": entry.provider_ref,
                "attempts": entry.attempts,
            },
            commit=False,
        )
        logger.error(
            "Orphan webhook event exhausted retries",
            extra={"event_id": entry.provider_event_id, "attempts": entry.attempts},
        )
    else:
        delay = settings.ORPHAN_BACKOFF_SECONDS * (2 ** (entry.attempts - 1))
        entry.outcome = LedgerOutcome.ORPHANED
        entry.next_retry_at = now + timedelta(seconds=delay)
        logger.warning(
            "Orphan webhook event requeued",
            extra={"event_id": entry.provider_event_id, "attempts": entry.attempts, "retry_in": delay},
        )
    return _finish(db, entry, now)


def retry_orphan_events(db: Session, *, now: datetime | None = None, limit: int = 100) -> list[IngestResult]:
    """Re-run due orphaned events; each entry is claimed with a conditional update."""

    now = now or utcnow()
    due_ids = db.scalars(
        select(WebhookLedgerEntry.id)
        .where(
            WebhookLedgerEntry.outcome == LedgerOutcome.ORPHANED,
            WebhookLedgerEntry.next_retry_at <= now,
        )
        .order_by(WebhookLedgerEntry.next_retry_at.asc())
        .limit(limit)
    ).all()

    results: list[IngestResult] = []
    for entry_id in due_ids:
        claimed = db.execute(
            update(WebhookLedgerEntry)
            .where(WebhookLedgerEntry.id == entry_id, WebhookLedgerEntry.outcome == LedgerOutcome.ORPHANED)
            .values(outcome=LedgerOutcome.RECEIVED, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            continue
        entry = db.scalars(
            select(WebhookLedgerEntry)
            .where(WebhookLedgerEntry.id == entry_id)
            .execution_options(populate_existing=True)
        ).one()
        results.append(_apply(db, entry, now=now))
    return results


__all__ = ["EVENT_TYPE_TARGETS", "get_entry", "ingest", "retry_orphan_events", "target_for"]
