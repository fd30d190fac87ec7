"""Webhook ledger persistence models."""
import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LedgerOutcome(str, enum.Enum):
    """What ingesting an event did to local state."""

    RECEIVED = "RECEIVED"
    APPLIED = "APPLIED"
    NOOP = "NOOP"
    STALE = "STALE"
    REJECTED = "REJECTED"
    IGNORED = "IGNORED"
    ORPHANED = "ORPHANED"
    ORPHAN_ALERTED = "ORPHAN_ALERTED"


class WebhookLedgerEntry(Base):
    """One row per gateway event id; the uniqueness constraint is the dedup point."""

    __tablename__ = "webhook_ledger"
    __table_args__ = (
        Index("ix_webhook_ledger_received", "received_at"),
        Index("ix_webhook_ledger_outcome_retry", "outcome", "next_retry_at"),
    )

    provider_event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="webhook")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    applied_transition: Mapped[str | None] = mapped_column(String(32), nullable=True)
    outcome: Mapped[LedgerOutcome] = mapped_column(
        SqlEnum(LedgerOutcome, name="ledger_outcome"), nullable=False, default=LedgerOutcome.RECEIVED
    )
    intent_id: Mapped[int | None] = mapped_column(ForeignKey("payment_intents.id"), nullable=True, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
