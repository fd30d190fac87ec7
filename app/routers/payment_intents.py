"""Caller-facing payment intent endpoints."""
from fastapi import APIRouter, Body, Depends, Header, Response, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.payment_intent import PaymentIntent
from app.providers import PaymentProvider, get_provider
from app.schemas.payment_intent import (
    PaymentIntentCancel,
    PaymentIntentCreate,
    PaymentIntentCreated,
    PaymentIntentRead,
)
from app.security import require_api_key
from app.services import idempotency, intent_store, state_machine

router = APIRouter(prefix="/payment-intents", tags=["payment-intents"])


@router.post("", response_model=PaymentIntentCreated, status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    payload: PaymentIntentCreate,
    response: Response,
    idempotency_key: str = Header(alias="Idempotency-Key", min_length=1, max_length=128),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
    _actor: str = Depends(require_api_key),
) -> PaymentIntentCreated:
    """Create a payment intent once per ``Idempotency-Key``.

    201 for a new intent, 200 for a replay, 202 while another request is
    still talking to the gateway.
    """

    result = idempotency.create_payment_intent(
        db,
        provider,
        idempotency_key=idempotency_key,
        amount_cents=payload.amount_cents,
        currency=payload.currency,
        subject_id=payload.subject_id,
        metadata=payload.metadata,
        description=payload.description,
    )
    if result.still_processing:
        response.status_code = status.HTTP_202_ACCEPTED
    elif not result.created:
        response.status_code = status.HTTP_200_OK

    intent = result.intent
    return PaymentIntentCreated(
        intent_id=intent.id,
        status=intent.status,
        checkout_url=intent.checkout_url,
        processing=result.still_processing or intent.status in state_machine.NON_TERMINAL,
    )


@router.get("/{intent_id}", response_model=PaymentIntentRead)
def get_payment_intent(
    intent_id: int,
    db: Session = Depends(get_db),
    _actor: str = Depends(require_api_key),
) -> PaymentIntent:
    return intent_store.get_intent_or_404(db, intent_id)


@router.post("/{intent_id}/cancel", response_model=PaymentIntentRead)
def cancel_payment_intent(
    intent_id: int,
    payload: PaymentIntentCancel | None = Body(default=None),
    db: Session = Depends(get_db),
    actor: str = Depends(require_api_key),
) -> PaymentIntent:
    reason = payload.reason if payload else None
    return idempotency.cancel_payment_intent(db, intent_id, reason, actor=actor)


__all__ = ["router"]
