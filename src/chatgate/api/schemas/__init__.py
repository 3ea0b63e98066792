"""API Schemas Package."""

from chatgate.api.schemas.notify import (
    ErrorResponse,
    HealthResponse,
    NotifyResponse,
    TaskRequest,
    TaskResponse,
)

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "NotifyResponse",
    "TaskRequest",
    "TaskResponse",
]
