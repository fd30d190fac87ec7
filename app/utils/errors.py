"""Utility helpers for standardized error responses."""
from typing import Any

from app.core.exceptions import PaymentsError


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def error_payload_for(exc: PaymentsError) -> dict[str, Any]:
    """Render a domain exception with the standard error envelope."""

    return error_response(exc.code, exc.message, exc.details or None)
