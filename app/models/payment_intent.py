"""Payment intent model definitions."""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class IntentStatus(str, enum.Enum):
    """Lifecycle states of a payment intent."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class PaymentIntent(Base):
    """A single logical charge, keyed by the caller's idempotency key."""

    __tablename__ = "payment_intents"
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_intents_positive_amount"),
        Index("ix_payment_intents_status_updated", "status", "updated_at"),
        Index("ix_payment_intents_subject", "subject_id"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="fake")
    provider_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    checkout_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[IntentStatus] = mapped_column(
        SqlEnum(IntentStatus, name="intent_status"), nullable=False, default=IntentStatus.PENDING
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    creation_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconcile_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def matches(self, *, amount_cents: int, currency: str, subject_id: str) -> bool:
        """Whether a replayed request is bound to the same parameters."""

        return (
            self.amount_cents == amount_cents
            and self.currency == currency
            and self.subject_id == subject_id
        )
