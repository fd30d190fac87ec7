"""ORM models package."""
from .alert import Alert
from .audit import AuditLog
from .base import Base
from .payment_intent import IntentStatus, PaymentIntent
from .scheduler_lock import SchedulerLock
from .webhook_ledger import LedgerOutcome, WebhookLedgerEntry

__all__ = [
    "Alert",
    "AuditLog",
    "Base",
    "IntentStatus",
    "LedgerOutcome",
    "PaymentIntent",
    "SchedulerLock",
    "WebhookLedgerEntry",
]
