"""Alerts endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.alert import Alert
from app.schemas.alert import AlertRead
from app.security import require_api_key

router = APIRouter(prefix="/alerts", tags=["alerts"], dependencies=[Depends(require_api_key)])


@router.get("", response_model=list[AlertRead], status_code=status.HTTP_200_OK)
def list_alerts(
    alert_type: str | None = Query(default=None, alias="type"),
    intent_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[Alert]:
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    if alert_type:
        stmt = stmt.where(Alert.type == alert_type)
    if intent_id is not None:
        stmt = stmt.where(Alert.intent_id == intent_id)
    return list(db.scalars(stmt).all())
