"""Background reconciliation of payment intents the gateway never told us about."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import get_settings
from app.core.exceptions import AmbiguousFailure, PaymentsError, ProviderUnavailable
from app.core.runtime_state import record_sweep
from app.db import session_scope
from app.models.payment_intent import IntentStatus, PaymentIntent
from app.providers.base import PaymentProvider
from app.schemas.webhook import WebhookEvent
from app.services import intent_store
from app.services.alerts import ALERT_RECONCILE_FAILING, create_alert
from app.services.idempotency import drive_creation
from app.services.webhook_reconciler import ingest, retry_orphan_events
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    scanned: int = 0
    resolved: int = 0
    unchanged: int = 0
    recreated: int = 0
    failures: int = 0
    flagged: int = 0
    orphans_retried: int = 0
    errors: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


def query_gateway_status(provider: PaymentProvider, provider_ref: str) -> IntentStatus:
    """Ask the gateway for the truth, retrying transient errors with backoff.

    Raises ``AmbiguousFailure`` once the retry budget is spent: the status is
    unknown, which is not the same thing as failed.
    """

    settings = get_settings()
    retrying = Retrying(
        stop=stop_after_attempt(max(1, settings.SWEEPER_QUERY_ATTEMPTS)),
        wait=wait_exponential(multiplier=settings.SWEEPER_QUERY_BACKOFF_SECONDS, max=10),
        retry=retry_if_exception_type(ProviderUnavailable),
        reraise=True,
    )
    try:
        return retrying(provider.query_status, provider_ref, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    except ProviderUnavailable as exc:
        raise AmbiguousFailure(
            "Gateway status could not be determined.",
            details={"provider_ref": provider_ref, **exc.details},
        ) from exc


def _record_failure(db: Session, intent: PaymentIntent, report: SweepReport, error: PaymentsError) -> None:
    settings = get_settings()
    report.failures += 1
    failures = intent_store.record_reconcile_failure(db, intent.id)
    logger.warning(
        "Reconciliation query failed",
        extra={"intent_id": intent.id, "failures": failures, "error": error.code},
    )
    if failures >= settings.SWEEPER_MAX_FAILURES and intent_store.flag_for_attention(db, intent.id):
        report.flagged += 1
        create_alert(
            db,
            alert_type=ALERT_RECONCILE_FAILING,
            message="Payment intent could not be reconciled with the gateway.",
            intent_id=intent.id,
            payload={"failures": failures, "status": intent.status.value},
        )
        logger.error("Payment intent flagged for attention", extra={"intent_id": intent.id, "failures": failures})


def _recreate(db: Session, provider: PaymentProvider, intent: PaymentIntent, report: SweepReport) -> None:
    settings = get_settings()
    if not intent_store.claim_creation(db, intent.id, lease_seconds=settings.CREATION_LEASE_SECONDS):
        report.unchanged += 1
        return
    logger.info("Sweeper re-driving creation", extra={"intent_id": intent.id, "idem": intent.idempotency_key})
    try:
        drive_creation(db, provider, intent)
    except ProviderUnavailable as exc:
        _record_failure(db, intent, report, exc)
        return
    report.recreated += 1
    intent_store.reset_reconcile_failures(db, intent.id)


def _reconcile(db: Session, provider: PaymentProvider, intent: PaymentIntent, report: SweepReport, now: datetime) -> None:
    try:
        status = query_gateway_status(provider, intent.provider_ref)
    except AmbiguousFailure as exc:
        _record_failure(db, intent, report, exc)
        return

    intent_store.reset_reconcile_failures(db, intent.id)
    if status == intent.status:
        report.unchanged += 1
        return

    event = WebhookEvent(
        provider_event_id=f"sweep:{intent.id}:{status.value}",
        type=status.value,
        provider_ref=intent.provider_ref,
        timestamp=now,
        source="sweeper",
        raw={"queried_at": now.isoformat(), "gateway_status": status.value},
        verified=True,
    )
    result = ingest(db, event)
    if result.applied_transition:
        report.resolved += 1
        logger.info(
            "Sweeper resolved payment intent",
            extra={"intent_id": intent.id, "transition": result.applied_transition},
        )
    else:
        report.unchanged += 1


def sweep_once(db: Session, provider: PaymentProvider, *, now: datetime | None = None) -> SweepReport:
    """Reconcile one batch of PENDING/PROCESSING intents older than the grace window."""

    settings = get_settings()
    now = now or utcnow()
    report = SweepReport(started_at=now)
    cutoff = now - timedelta(seconds=settings.SWEEPER_GRACE_SECONDS)
    intents = intent_store.list_stale_intents(db, older_than=cutoff, limit=settings.SWEEPER_BATCH_SIZE)
    report.scanned = len(intents)

    for intent in intents:
        try:
            if intent.provider_ref is None:
                _recreate(db, provider, intent, report)
            else:
                _reconcile(db, provider, intent, report, now)
        except PaymentsError:
            db.rollback()
            report.errors.append(intent.id)
            logger.exception("Sweeper could not process payment intent", extra={"intent_id": intent.id})

    return report


def run_sweeper_job(provider: PaymentProvider) -> dict[str, object]:
    """Scheduled entry point: one sweep plus due orphan retries in a fresh session."""

    with session_scope() as db:
        report = sweep_once(db, provider)
        report.orphans_retried = len(retry_orphan_events(db))
    summary = report.as_dict()
    record_sweep(summary)
    logger.info("Sweeper run finished", extra={"sweep": summary})
    return summary


__all__ = ["SweepReport", "query_gateway_status", "run_sweeper_job", "sweep_once"]
