"""Schemas for gateway events and their ingestion results."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.webhook_ledger import LedgerOutcome


class WebhookEvent(BaseModel):
    """Normalised gateway event, produced only by a provider adapter."""

    provider_event_id: str = Field(min_length=1, max_length=128)
    type: str = Field(min_length=1, max_length=64)
    provider_ref: str | None = Field(default=None, max_length=128)
    timestamp: datetime
    failure_reason: str | None = None
    source: str = "webhook"
    raw: dict = Field(default_factory=dict)
    # Set by the adapter once signature and timestamp checks passed.
    verified: bool = False


class IngestResult(BaseModel):
    provider_event_id: str
    duplicate: bool = False
    outcome: LedgerOutcome | None = None
    intent_id: int | None = None
    applied_transition: str | None = None


class LedgerEntryRead(BaseModel):
    id: int
    provider_event_id: str
    event_type: str
    provider_ref: str | None
    event_timestamp: datetime
    source: str
    outcome: LedgerOutcome
    applied_transition: str | None
    intent_id: int | None
    attempts: int
    received_at: datetime
    processed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
