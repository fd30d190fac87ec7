from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db
from app.config import AppInfo, Settings, get_settings
from app.core.exceptions import PaymentsError
from app.core.logging import get_logger, setup_logging
from app.core.runtime_state import is_scheduler_active, set_scheduler_active
import app.models  # registers the tables
from app.providers import build_provider
from app.routers import get_api_router
from app.services.scheduler_lock import (
    LOCK_TTL_SECONDS,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from app.services.sweeper import run_sweeper_job
from app.utils.errors import error_payload_for, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
SWEEPER_JOB_ID = "reconciliation-sweeper"


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-API-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="payments_core")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_psp_webhook_secrets(settings: Settings) -> None:
    """Fail-fast when PSP webhook secrets are missing in non-dev environments."""

    if settings.PAYMENTS_PROVIDER != "fake":
        return
    secrets_configured = bool(settings.psp_webhook_secret or settings.psp_webhook_secret_next)
    env_lower = settings.app_env.lower()
    if env_lower not in ALLOWED_CREATE_ENV and not secrets_configured:
        logger.error(
            "PSP webhook secrets are missing; configure PSP_WEBHOOK_SECRET or PSP_WEBHOOK_SECRET_NEXT before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing PSP webhook secrets in non-dev environment.")
    if not secrets_configured:
        logger.warning(
            "PSP webhook secrets are not configured; allowed in dev only.",
            extra={"env": settings.app_env},
        )


def _scheduler_heartbeat(sched: AsyncIOScheduler) -> None:
    """Keep the scheduler lease alive; sweep only while this instance holds it."""

    if refresh_scheduler_lock() or try_acquire_scheduler_lock():
        if not is_scheduler_active():
            sched.resume_job(SWEEPER_JOB_ID)
            set_scheduler_active(True)
            logger.info("Scheduler lock regained; sweeper resumed")
        return
    if is_scheduler_active():
        sched.pause_job(SWEEPER_JOB_ID)
        set_scheduler_active(False)
        logger.warning("Scheduler lock lost to another instance; sweeper paused")


def _start_scheduler(settings: Settings, provider) -> AsyncIOScheduler:
    sched = AsyncIOScheduler()
    sched.add_job(
        run_sweeper_job,
        "interval",
        seconds=settings.SWEEPER_INTERVAL_SECONDS,
        args=[provider],
        id=SWEEPER_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    sched.add_job(
        _scheduler_heartbeat,
        "interval",
        seconds=max(1, LOCK_TTL_SECONDS // 5),
        args=[sched],
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    sched.start()
    return sched


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    setup_logging()
    settings = _current_settings()
    logger.info("Application startup", extra={"env": settings.app_env, "provider": settings.PAYMENTS_PROVIDER})
    _assert_psp_webhook_secrets(settings)

    if settings.psp_webhook_secret is None and settings.psp_webhook_secret_next:
        logger.warning(
            "Primary PSP webhook secret unset; relying on PSP_WEBHOOK_SECRET_NEXT only.",
            extra={"env": settings.app_env},
        )
    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    # Built once; request handlers receive it through get_provider.
    app.state.provider = build_provider(settings)

    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings, app.state.provider)
            set_scheduler_active(True)
            logger.info(
                "Reconciliation sweeper scheduled",
                extra={"interval_seconds": settings.SWEEPER_INTERVAL_SECONDS},
            )
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(PaymentsError)
async def payments_exception_handler(request: Request, exc: PaymentsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Payments error", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=error_payload_for(exc))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
