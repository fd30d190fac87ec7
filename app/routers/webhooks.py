"""Inbound gateway webhooks."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.exceptions import OrphanEvent
from app.db import get_db
from app.models.webhook_ledger import LedgerOutcome
from app.providers import PaymentProvider, get_provider
from app.services import webhook_reconciler
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider_name}", status_code=status.HTTP_200_OK)
async def receive_webhook(
    provider_name: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_provider),
) -> dict[str, object]:
    """Verify, record and apply one gateway event.

    A 2xx is only returned once the ledger row is committed; any storage error
    surfaces as a 500 so the gateway redelivers.
    """

    if provider_name != provider.name:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("UNKNOWN_PROVIDER", f"No webhook endpoint for provider '{provider_name}'."),
        )

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    event = provider.parse_webhook(raw_body, headers)

    result = await run_in_threadpool(webhook_reconciler.ingest, db, event)
    if result.duplicate:
        return {"status": "duplicate", "event_id": result.provider_event_id}

    if result.outcome == LedgerOutcome.ORPHANED:
        response.status_code = OrphanEvent.status_code
    logger.info(
        "Webhook processed",
        extra={"event_id": result.provider_event_id, "outcome": result.outcome, "provider": provider.name},
    )
    return {
        "status": result.outcome.value.lower() if result.outcome else "received",
        "event_id": result.provider_event_id,
        "intent_id": result.intent_id,
        "applied_transition": result.applied_transition,
    }


__all__ = ["router"]
