"""Schema package exports."""
from .alert import AlertRead
from .payment_intent import (
    PaymentIntentCancel,
    PaymentIntentCreate,
    PaymentIntentCreated,
    PaymentIntentRead,
)
from .webhook import IngestResult, LedgerEntryRead, WebhookEvent

__all__ = [
    "AlertRead",
    "IngestResult",
    "LedgerEntryRead",
    "PaymentIntentCancel",
    "PaymentIntentCreate",
    "PaymentIntentCreated",
    "PaymentIntentRead",
    "WebhookEvent",
]
