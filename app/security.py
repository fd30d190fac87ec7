# app/security.py
"""API key pre-check for caller-facing routes."""
from __future__ import annotations

import logging
import secrets

from fastapi import Depends, Header, HTTPException, status

from app.config import DEV_API_KEY, DEV_API_KEY_ALLOWED, Settings, get_settings
from app.utils.errors import error_response

logger = logging.getLogger(__name__)


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _matches(token: str, candidate: str | None) -> bool:
    return bool(candidate) and secrets.compare_digest(token.encode(), candidate.encode())


def require_api_key(
    token: str | None = Depends(_extract_key),
    settings: Settings = Depends(get_settings),
) -> str:
    """Validate the caller's key and return an actor label for audit rows."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    for index, candidate in enumerate(settings.API_KEYS):
        if _matches(token, candidate):
            return f"apikey:{index}"

    if _matches(token, settings.DEV_API_KEY or DEV_API_KEY):
        if not DEV_API_KEY_ALLOWED:
            logger.warning("Dev API key rejected outside development")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response("LEGACY_KEY_FORBIDDEN", "Dev API key disabled."),
            )
        return "apikey:dev"

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_response("UNAUTHORIZED", "Invalid API key"),
    )


__all__ = ["require_api_key"]
