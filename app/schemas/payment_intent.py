"""Schemas for payment intents."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment_intent import IntentStatus


class PaymentIntentCreate(BaseModel):
    amount_cents: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    subject_id: str = Field(min_length=1, max_length=128)
    metadata: dict[str, Any] = Field(default_factory=dict)
    description: str | None = Field(default=None, max_length=255)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("currency must be an ISO 4217 alphabetic code")
        return value.upper()


class PaymentIntentRead(BaseModel):
    id: int
    idempotency_key: str
    provider: str
    provider_ref: str | None
    amount_cents: int
    currency: str
    subject_id: str
    description: str | None
    status: IntentStatus
    checkout_url: str | None
    failure_reason: str | None
    needs_attention: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentIntentCreated(BaseModel):
    """Response to a create call; ``processing`` is true until the gateway confirmed."""

    intent_id: int
    status: IntentStatus
    checkout_url: str | None = None
    processing: bool


class PaymentIntentCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
