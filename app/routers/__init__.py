"""API routers for the payments core."""
from fastapi import APIRouter

from . import alerts, fake_checkout, health, payment_intents, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(payment_intents.router)
    api_router.include_router(webhooks.router)
    api_router.include_router(fake_checkout.router)
    api_router.include_router(alerts.router)
    return api_router
