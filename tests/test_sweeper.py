"""Reconciliation sweeper."""
from datetime import timedelta

from sqlalchemy import select, update

from app.config import get_settings
from app.models import Alert, IntentStatus, LedgerOutcome, PaymentIntent
from app.services import intent_store, sweeper, webhook_reconciler
from app.services.alerts import ALERT_RECONCILE_FAILING
from app.utils.time import utcnow


def _age(db_session, intent_id, minutes):
    db_session.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .values(updated_at=utcnow() - timedelta(minutes=minutes))
    )
    db_session.commit()


def test_lost_webhook_is_recovered_by_one_sweep(db_session, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "SWEEPER_GRACE_SECONDS", 300)
    intent = make_intent()
    fake_provider.set_status(intent.provider_ref, IntentStatus.SUCCEEDED)
    _age(db_session, intent.id, minutes=10)

    report = sweeper.sweep_once(db_session, fake_provider)

    assert report.scanned == 1
    assert report.resolved == 1
    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.status == IntentStatus.SUCCEEDED
    entry = webhook_reconciler.get_entry(db_session, f"sweep:{intent.id}:SUCCEEDED")
    assert entry.source == "sweeper"
    assert entry.outcome == LedgerOutcome.APPLIED


def test_recent_intents_are_left_alone(db_session, fake_provider, make_intent):
    intent = make_intent()
    fake_provider.set_status(intent.provider_ref, IntentStatus.SUCCEEDED)

    report = sweeper.sweep_once(db_session, fake_provider)

    assert report.scanned == 0
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.PENDING
    assert fake_provider.query_calls == 0


def test_unchanged_gateway_status_writes_nothing(db_session, fake_provider, make_intent):
    intent = make_intent()
    _age(db_session, intent.id, minutes=10)

    report = sweeper.sweep_once(db_session, fake_provider)

    assert report.unchanged == 1
    assert webhook_reconciler.get_entry(db_session, f"sweep:{intent.id}:PENDING") is None


def test_transient_query_errors_are_retried(db_session, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "SWEEPER_QUERY_ATTEMPTS", 3)
    intent = make_intent()
    fake_provider.set_status(intent.provider_ref, IntentStatus.PROCESSING)
    fake_provider.fail_queries = 2
    _age(db_session, intent.id, minutes=10)

    report = sweeper.sweep_once(db_session, fake_provider)

    assert report.resolved == 1
    assert fake_provider.query_calls == 3
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.PROCESSING


def test_query_failures_never_fail_the_intent_and_flag_after_limit(db_session, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "SWEEPER_QUERY_ATTEMPTS", 1)
    monkeypatch.setattr(get_settings(), "SWEEPER_MAX_FAILURES", 2)
    intent = make_intent()
    fake_provider.fail_queries = 10
    _age(db_session, intent.id, minutes=10)

    for _ in range(3):
        sweeper.sweep_once(db_session, fake_provider)

    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.status == IntentStatus.PENDING
    assert stored.reconcile_failures == 3
    assert stored.needs_attention is True
    alerts = db_session.scalars(select(Alert).where(Alert.type == ALERT_RECONCILE_FAILING)).all()
    assert len(alerts) == 1

    fake_provider.fail_queries = 0
    sweeper.sweep_once(db_session, fake_provider)
    assert intent_store.get_intent(db_session, intent.id, fresh=True).reconcile_failures == 0


def test_failed_query_keeps_intent_due_for_next_sweep(db_session, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "SWEEPER_QUERY_ATTEMPTS", 1)
    intent = make_intent()
    fake_provider.fail_queries = 1
    _age(db_session, intent.id, minutes=10)
    aged = intent_store.get_intent(db_session, intent.id, fresh=True).updated_at

    first = sweeper.sweep_once(db_session, fake_provider)

    assert first.failures == 1
    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.reconcile_failures == 1
    assert stored.updated_at == aged

    fake_provider.set_status(intent.provider_ref, IntentStatus.SUCCEEDED)
    next_run = utcnow() + timedelta(seconds=get_settings().SWEEPER_INTERVAL_SECONDS)
    second = sweeper.sweep_once(db_session, fake_provider, now=next_run)

    assert second.scanned == 1
    assert second.resolved == 1
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_crashed_creation_is_redriven(db_session, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "CREATION_LEASE_SECONDS", 30)
    intent = make_intent(with_ref=False)
    db_session.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent.id)
        .values(creation_claimed_at=utcnow() - timedelta(minutes=10))
    )
    db_session.commit()
    _age(db_session, intent.id, minutes=10)

    report = sweeper.sweep_once(db_session, fake_provider)

    assert report.recreated == 1
    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.provider_ref is not None
    assert fake_provider.create_calls == 1


def test_run_sweeper_job_records_summary(fake_provider, make_intent, db_session):
    from app.core.runtime_state import last_sweep

    intent = make_intent()
    fake_provider.set_status(intent.provider_ref, IntentStatus.SUCCEEDED)
    _age(db_session, intent.id, minutes=10)

    summary = sweeper.run_sweeper_job(fake_provider)

    assert summary["resolved"] == 1
    assert last_sweep()["resolved"] == 1
