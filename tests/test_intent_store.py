import threading
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.core.exceptions import IdempotencyConflict, IntentNotCancelable, ProviderRefConflict
from app.models import AuditLog, IntentStatus, PaymentIntent
from app.services import intent_store, state_machine


def _create(db_session, key=None, **overrides):
    params = {"amount_cents": 5000, "currency": "usd", "subject_id": "member-1"}
    params.update(overrides)
    return intent_store.create_or_get(db_session, idempotency_key=key or f"idem-{uuid4().hex}", **params)


def test_create_or_get_inserts_then_replays(db_session):
    intent, is_new = _create(db_session, key="abc")
    assert is_new is True
    assert intent.status == IntentStatus.PENDING
    assert intent.provider_ref is None
    assert intent.currency == "USD"

    again, is_new_again = _create(db_session, key="abc", currency="USD")
    assert is_new_again is False
    assert again.id == intent.id

    count = db_session.scalars(select(PaymentIntent).where(PaymentIntent.idempotency_key == "abc")).all()
    assert len(count) == 1


def test_reused_key_with_other_amount_conflicts(db_session):
    intent, _ = _create(db_session, key="abc")

    with pytest.raises(IdempotencyConflict):
        _create(db_session, key="abc", amount_cents=7000)

    stored = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert stored.amount_cents == 5000
    assert stored.status == IntentStatus.PENDING


def test_attach_provider_ref_once(db_session):
    intent, _ = _create(db_session)

    attached = intent_store.attach_provider_ref(db_session, intent.id, "pr_1", checkout_url="http://x/pr_1")
    assert attached.provider_ref == "pr_1"

    # Same reference again is a no-op.
    assert intent_store.attach_provider_ref(db_session, intent.id, "pr_1").provider_ref == "pr_1"

    with pytest.raises(ProviderRefConflict):
        intent_store.attach_provider_ref(db_session, intent.id, "pr_2")
    assert intent_store.get_intent(db_session, intent.id, fresh=True).provider_ref == "pr_1"


def test_transition_applies_once_and_audits(db_session):
    intent, _ = _create(db_session)

    first = intent_store.transition(db_session, intent.id, {IntentStatus.PENDING}, IntentStatus.PROCESSING)
    second = intent_store.transition(db_session, intent.id, {IntentStatus.PENDING}, IntentStatus.PROCESSING)

    assert first.applied and first.previous == IntentStatus.PENDING
    assert not second
    assert second.current == IntentStatus.PROCESSING

    actions = db_session.scalars(
        select(AuditLog.action).where(AuditLog.entity == "PaymentIntent", AuditLog.entity_id == intent.id)
    ).all()
    assert actions.count("PAYMENT_INTENT_TRANSITION") == 1


def test_illegal_transition_is_dropped(db_session, caplog):
    intent, _ = _create(db_session)
    intent_store.transition(db_session, intent.id, {IntentStatus.PENDING}, IntentStatus.FAILED)

    outcome = intent_store.transition(db_session, intent.id, {IntentStatus.FAILED}, IntentStatus.SUCCEEDED)

    assert not outcome
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.FAILED
    assert "Illegal transition requested" in caplog.text


def test_monotonic_jump_through_sources_for(db_session):
    intent, _ = _create(db_session)

    outcome = intent_store.transition(
        db_session, intent.id, state_machine.sources_for(IntentStatus.SUCCEEDED), IntentStatus.SUCCEEDED
    )
    assert outcome.applied
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


def test_racing_transitions_have_one_winner(db_session, session_factory):
    intent, _ = _create(db_session)
    results: list[bool] = []
    targets = [IntentStatus.CANCELED, IntentStatus.FAILED] * 4
    barrier = threading.Barrier(len(targets))

    def _worker(target):
        session = session_factory()
        try:
            barrier.wait()
            outcome = intent_store.transition(session, intent.id, {IntentStatus.PENDING}, target)
            results.append(outcome.applied)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker, args=(t,)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    final = intent_store.get_intent(db_session, intent.id, fresh=True)
    assert final.status in {IntentStatus.CANCELED, IntentStatus.FAILED}


def test_cancel_only_from_cancelable(db_session):
    intent, _ = _create(db_session)
    canceled = intent_store.cancel_intent(db_session, intent.id, reason="member_left")
    assert canceled.status == IntentStatus.CANCELED
    assert canceled.failure_reason == "member_left"
    # Cancelling twice returns the same result.
    assert intent_store.cancel_intent(db_session, intent.id).status == IntentStatus.CANCELED

    other, _ = _create(db_session)
    intent_store.transition(db_session, other.id, state_machine.sources_for(IntentStatus.SUCCEEDED), IntentStatus.SUCCEEDED)
    with pytest.raises(IntentNotCancelable):
        intent_store.cancel_intent(db_session, other.id)


def test_creation_lease(db_session):
    intent, _ = _create(db_session)
    # The inserting caller already holds the lease.
    assert intent_store.creation_lease_active(intent, lease_seconds=30)
    assert intent_store.claim_creation(db_session, intent.id, lease_seconds=30) is False

    intent_store.release_creation(db_session, intent.id)
    assert intent_store.claim_creation(db_session, intent.id, lease_seconds=30) is True
    assert intent_store.claim_creation(db_session, intent.id, lease_seconds=30) is False
    # A negative lease is always expired.
    assert intent_store.claim_creation(db_session, intent.id, lease_seconds=-1) is True


def test_flag_for_attention_only_once(db_session):
    intent, _ = _create(db_session)
    assert intent_store.record_reconcile_failure(db_session, intent.id) == 1
    assert intent_store.record_reconcile_failure(db_session, intent.id) == 2
    assert intent_store.flag_for_attention(db_session, intent.id) is True
    assert intent_store.flag_for_attention(db_session, intent.id) is False
    intent_store.reset_reconcile_failures(db_session, intent.id)
    assert intent_store.get_intent(db_session, intent.id, fresh=True).reconcile_failures == 0
