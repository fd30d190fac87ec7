"""Ledger-backed webhook ingestion."""
import threading
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from app.config import get_settings
from app.core.exceptions import IntentNotCancelable, UnverifiedEvent
from app.models import Alert, AuditLog, IntentStatus, LedgerOutcome, WebhookLedgerEntry
from app.schemas.webhook import WebhookEvent
from app.services import intent_store, webhook_reconciler
from app.services.alerts import ALERT_ORPHAN_EVENT, ALERT_TERMINAL_CONFLICT
from app.utils.time import utcnow


def _event(provider_ref, event_type, *, event_id=None, at=None, verified=True, failure_reason=None):
    return WebhookEvent(
        provider_event_id=event_id or f"evt_{uuid4().hex[:12]}",
        type=event_type,
        provider_ref=provider_ref,
        timestamp=at or utcnow(),
        failure_reason=failure_reason,
        verified=verified,
    )


def _ledger_count(db_session, event_id):
    return db_session.scalar(
        select(func.count()).select_from(WebhookLedgerEntry).where(WebhookLedgerEntry.provider_event_id == event_id)
    )


def test_same_event_twice_is_recorded_once(db_session, make_intent):
    intent = make_intent()

    first = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "SUCCEEDED", event_id="evt1"))
    second = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "SUCCEEDED", event_id="evt1"))

    assert first.outcome == LedgerOutcome.APPLIED
    assert first.applied_transition == "PENDING->SUCCEEDED"
    assert second.duplicate is True
    assert _ledger_count(db_session, "evt1") == 1
    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.status == IntentStatus.SUCCEEDED
    assert stored.last_event_at is not None


def test_late_processing_after_success_is_stale(db_session, make_intent):
    intent = make_intent()
    earlier = utcnow() - timedelta(minutes=1)

    webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "payment_intent.succeeded"))
    late = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "PROCESSING", at=earlier))

    assert late.outcome == LedgerOutcome.STALE
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_backwards_event_that_is_not_older_is_rejected(db_session, make_intent):
    intent = make_intent()
    webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "SUCCEEDED"))

    result = webhook_reconciler.ingest(
        db_session, _event(intent.provider_ref, "PROCESSING", at=utcnow() + timedelta(minutes=1))
    )

    assert result.outcome == LedgerOutcome.REJECTED
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_repeated_status_is_noop(db_session, make_intent):
    intent = make_intent()
    webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "PROCESSING"))

    result = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "payment_intent.processing"))

    assert result.outcome == LedgerOutcome.NOOP


def test_failure_reason_is_kept(db_session, make_intent):
    intent = make_intent()

    webhook_reconciler.ingest(
        db_session, _event(intent.provider_ref, "payment_intent.payment_failed", failure_reason="card_declined")
    )

    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.status == IntentStatus.FAILED
    assert stored.failure_reason == "card_declined"


def test_success_for_canceled_intent_raises_alert(db_session, make_intent):
    intent = make_intent()
    intent_store.cancel_intent(db_session, intent.id)

    result = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "SUCCEEDED"))

    assert result.outcome in {LedgerOutcome.REJECTED, LedgerOutcome.STALE}
    alerts = db_session.scalars(select(Alert).where(Alert.type == ALERT_TERMINAL_CONFLICT)).all()
    assert [alert.intent_id for alert in alerts] == [intent.id]


def test_unknown_event_type_is_ignored(db_session, make_intent):
    intent = make_intent()

    result = webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "customer.created"))

    assert result.outcome == LedgerOutcome.IGNORED
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.PENDING


def test_unverified_event_is_refused(db_session, make_intent):
    intent = make_intent()

    with pytest.raises(UnverifiedEvent):
        webhook_reconciler.ingest(db_session, _event(intent.provider_ref, "SUCCEEDED", verified=False))

    assert db_session.scalar(select(func.count()).select_from(WebhookLedgerEntry)) == 0


def test_orphan_event_is_requeued_then_applied(db_session, make_intent):
    event = _event("fake_pi_not_yet_attached", "SUCCEEDED")

    orphaned = webhook_reconciler.ingest(db_session, event)
    assert orphaned.outcome == LedgerOutcome.ORPHANED
    entry = webhook_reconciler.get_entry(db_session, event.provider_event_id)
    assert entry.attempts == 1
    assert entry.next_retry_at is not None

    # Nothing is due yet.
    assert webhook_reconciler.retry_orphan_events(db_session) == []

    intent = make_intent(with_ref=False)
    intent_store.attach_provider_ref(db_session, intent.id, "fake_pi_not_yet_attached")

    results = webhook_reconciler.retry_orphan_events(db_session, now=utcnow() + timedelta(hours=1))

    assert [r.outcome for r in results] == [LedgerOutcome.APPLIED]
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_orphan_event_alerts_after_max_attempts(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "ORPHAN_MAX_ATTEMPTS", 3)
    event = _event("fake_pi_unknown", "SUCCEEDED")
    webhook_reconciler.ingest(db_session, event)

    later = utcnow()
    for _ in range(2):
        later += timedelta(days=1)
        webhook_reconciler.retry_orphan_events(db_session, now=later)

    entry = webhook_reconciler.get_entry(db_session, event.provider_event_id)
    db_session.refresh(entry)
    assert entry.outcome == LedgerOutcome.ORPHAN_ALERTED
    assert entry.attempts == 3
    alerts = db_session.scalars(select(Alert).where(Alert.type == ALERT_ORPHAN_EVENT)).all()
    assert len(alerts) == 1
    assert alerts[0].payload_json["event_id"] == event.provider_event_id

    # Alerted entries are not retried again.
    assert webhook_reconciler.retry_orphan_events(db_session, now=later + timedelta(days=1)) == []


def _run_concurrently(session_factory, jobs):
    barrier = threading.Barrier(len(jobs))
    results: list = []
    errors: list[BaseException] = []

    def _worker(job) -> None:
        session = session_factory()
        try:
            barrier.wait()
            results.append(job(session))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker, args=(job,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


def _transition_rows(db_session, intent_id):
    return db_session.scalar(
        select(func.count())
        .select_from(AuditLog)
        .where(AuditLog.entity_id == intent_id, AuditLog.action == "PAYMENT_INTENT_TRANSITION")
    )


def test_concurrent_deliveries_of_one_event_apply_once(db_session, session_factory, make_intent):
    intent = make_intent()
    deliveries = 8

    def _deliver(session):
        return webhook_reconciler.ingest(session, _event(intent.provider_ref, "SUCCEEDED", event_id="evtC"))

    results, errors = _run_concurrently(session_factory, [_deliver] * deliveries)

    assert errors == []
    assert _ledger_count(db_session, "evtC") == 1
    assert sum(result.duplicate for result in results) == deliveries - 1
    assert [result.outcome for result in results if not result.duplicate] == [LedgerOutcome.APPLIED]
    assert _transition_rows(db_session, intent.id) == 1
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_cancel_racing_gateway_success_has_one_winner(db_session, session_factory, make_intent):
    intent = make_intent()

    def _cancel(session):
        try:
            return intent_store.cancel_intent(session, intent.id, reason="member_request").status
        except IntentNotCancelable:
            return "cancel-refused"

    def _succeed(session):
        return webhook_reconciler.ingest(session, _event(intent.provider_ref, "SUCCEEDED", event_id="evt_race"))

    results, errors = _run_concurrently(session_factory, [_cancel, _succeed])

    assert errors == []
    assert _transition_rows(db_session, intent.id) == 1
    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    ingest_result = next(result for result in results if not isinstance(result, (str, IntentStatus)))
    if stored.status == IntentStatus.CANCELED:
        assert ingest_result.outcome in {LedgerOutcome.REJECTED, LedgerOutcome.STALE}
        alerts = db_session.scalars(select(Alert).where(Alert.type == ALERT_TERMINAL_CONFLICT)).all()
        assert [alert.intent_id for alert in alerts] == [intent.id]
    else:
        assert stored.status == IntentStatus.SUCCEEDED
        assert ingest_result.outcome == LedgerOutcome.APPLIED
        assert "cancel-refused" in results
