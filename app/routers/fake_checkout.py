"""Development-only checkout page for the fake gateway.

Completing a checkout flips the gateway-side status and delivers the signed
webhook the gateway would send, through the same path as a real delivery.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.payment_intent import IntentStatus
from app.providers import FakeProvider, PaymentProvider, get_provider
from app.schemas.webhook import IngestResult
from app.services import webhook_reconciler
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/fake", tags=["fake-checkout"])

CHECKOUT_OUTCOMES = {
    "succeeded": IntentStatus.SUCCEEDED,
    "processing": IntentStatus.PROCESSING,
    "failed": IntentStatus.FAILED,
    "canceled": IntentStatus.CANCELED,
}


@router.post("/checkout/{provider_ref}", response_model=IngestResult)
def complete_checkout(
    provider_ref: str,
    outcome: str = Query(default="succeeded"),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
) -> IngestResult:
    if not isinstance(provider, FakeProvider) or not provider.is_available():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("FAKE_CHECKOUT_DISABLED", "Fake checkout is not available."),
        )
    target = CHECKOUT_OUTCOMES.get(outcome.lower())
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("INVALID_OUTCOME", f"outcome must be one of {sorted(CHECKOUT_OUTCOMES)}"),
        )
    if provider.get(provider_ref) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("CHECKOUT_NOT_FOUND", "Unknown checkout reference."),
        )

    failure_reason = "card_declined" if target == IntentStatus.FAILED else None
    provider.set_status(provider_ref, target, failure_reason=failure_reason)
    body, headers = provider.signed_request(
        provider.build_event(provider_ref, target, failure_reason=failure_reason)
    )
    event = provider.parse_webhook(body, headers)
    logger.info("Fake checkout completed", extra={"provider_ref": provider_ref, "outcome": target.value})
    return webhook_reconciler.ingest(db, event)


__all__ = ["router", "CHECKOUT_OUTCOMES"]
