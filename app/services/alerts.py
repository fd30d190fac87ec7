"""Operator alert helpers."""
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.alert import Alert

logger = logging.getLogger(__name__)

ALERT_ORPHAN_EVENT = "ORPHAN_WEBHOOK_EVENT"
ALERT_RECONCILE_FAILING = "RECONCILIATION_FAILING"
ALERT_TERMINAL_CONFLICT = "GATEWAY_TERMINAL_CONFLICT"


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    intent_id: int | None = None,
    payload: dict[str, Any] | None = None,
    commit: bool = True,
) -> Alert:
    """Persist an alert in the database."""

    alert = Alert(type=alert_type, message=message, intent_id=intent_id, payload_json=payload or {})
    db.add(alert)
    if commit:
        db.commit()
        db.refresh(alert)
    else:
        db.flush()
    logger.warning("Alert created", extra={"type": alert_type, "intent_id": intent_id, "payload": payload})
    return alert
