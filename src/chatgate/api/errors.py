"""Shared error-handling utilities for API routes.

Provides a single ``http_exception`` helper so that every route module
produces the same standardized ``ErrorResponse`` payload with the
``X-ChatGate-Error: 1`` header.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from chatgate.api.schemas.notify import ErrorResponse
from chatgate.core.domain.errors import ChatGateError

ERROR_HEADER = "X-ChatGate-Error"


def http_exception(
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> HTTPException:
    """Build a standardized HTTPException with ErrorResponse payload.

    Args:
        status_code: HTTP status code.
        code: Machine-readable error code (e.g. ``"missing_text"``).
        message: Human-readable error description.
        details: Optional structured error details.

    Returns:
        HTTPException ready to be raised from a route handler.
    """
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(code=code, message=message, details=details).model_dump(
            exclude_none=True
        ),
        headers={ERROR_HEADER: "1"},
    )


def from_domain_error(exc: ChatGateError) -> HTTPException:
    """Map a ``ChatGateError`` to its HTTP representation (500 unless set)."""
    return http_exception(
        status_code=exc.status_code or 500,
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )
