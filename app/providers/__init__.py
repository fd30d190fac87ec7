"""Payment gateway adapters.

A provider is built once at startup from ``PAYMENTS_PROVIDER`` and handed to
the engine as a dependency; nothing on the request path looks one up by name.
"""
from __future__ import annotations

import logging

from fastapi import Request

from app.config import Settings
from app.providers.base import PaymentProvider, ProviderIntent
from app.providers.fake import FakeProvider

logger = logging.getLogger(__name__)


def build_provider(settings: Settings) -> PaymentProvider:
    """Construct the configured provider, failing fast on misconfiguration."""

    if settings.PAYMENTS_PROVIDER == "stripe":
        from app.providers.stripe import StripeProvider

        return StripeProvider(settings)

    provider = FakeProvider(settings)
    if not provider.is_available():
        raise RuntimeError(
            "Fake payment provider selected in production; set PAYMENTS_FAKE_ENABLED=true to allow it."
        )
    logger.warning("Using the fake payment provider", extra={"env": settings.app_env})
    return provider


def get_provider(request: Request) -> PaymentProvider:
    """FastAPI dependency returning the provider built in the lifespan."""

    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise RuntimeError("Payment provider not initialised; the application lifespan did not run.")
    return provider


__all__ = ["PaymentProvider", "ProviderIntent", "FakeProvider", "build_provider", "get_provider"]
