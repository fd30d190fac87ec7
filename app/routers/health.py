"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.core.runtime_state import is_scheduler_active, last_sweep
from app.db import get_engine
from app.providers.signing import masked_secret_status
from app.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, secondary: str | None) -> str:
    if primary and secondary:
        return "ok"
    if primary or secondary:
        return "partial"
    return "missing"


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError:
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    except SQLAlchemyError:
        logger.exception("Migration check failed")
        return False, "unknown"
    if expected_head is None:
        return False, "unknown"
    if current == expected_head:
        return True, "up_to_date"
    return False, "out_of_date"


def _provider_status(request: Request) -> dict[str, object]:
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        return {"name": None, "available": False}
    return provider.describe()


@router.get("", summary="Health check")
def healthcheck(request: Request) -> dict[str, object]:
    """Database, migrations, provider and sweeper state."""

    settings = get_settings()
    primary_secret = settings.psp_webhook_secret
    secondary_secret = settings.psp_webhook_secret_next
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    provider = _provider_status(request)
    degraded = not (db_ok and migration_ok and provider.get("available"))
    return {
        "status": "degraded" if degraded else "ok",
        "env": settings.app_env,
        "provider": provider,
        "psp_webhook_configured": bool(primary_secret or secondary_secret),
        "psp_webhook_secret_status": _secret_status(primary_secret, secondary_secret),
        "psp_webhook_secret_fingerprints": masked_secret_status(
            {"primary": primary_secret, "next": secondary_secret}
        ),
        "stripe": {
            "webhook_configured": bool(settings.STRIPE_WEBHOOK_SECRET),
            "api_key_configured": bool(settings.STRIPE_SECRET_KEY),
        },
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": describe_scheduler_lock() if db_ok else {"status": "unknown", "owner": None},
        "last_sweep": last_sweep(),
    }
