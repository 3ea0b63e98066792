"""Internal notification and task API.

- ``POST /v1/notify/text``  -- gate and deliver a text notification
- ``POST /v1/notify/image`` -- gate and deliver an image notification
- ``POST /v1/tasks``        -- submit an idempotent model task

All endpoints require an internal caller and, when configured, the bearer
token. The project registry is reloaded on change before each request.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status

from chatgate.api.dependencies import get_gateway, refresh_registry, require_internal_caller
from chatgate.api.errors import http_exception
from chatgate.api.schemas.notify import ErrorResponse, NotifyResponse
from chatgate.application.context import GatewayContext
from chatgate.core.domain.notify import NotifyRequest, NotifyResult

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/v1",
    dependencies=[Depends(require_internal_caller), Depends(refresh_registry)],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
    },
)


def _respond(result: NotifyResult) -> NotifyResponse:
    if result.error:
        raise http_exception(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=result.error,
            message=f"Notify request rejected: {result.error}",
            details={"project_id": result.project_id} if result.project_id else None,
        )
    return NotifyResponse.model_validate(result.to_dict())


@router.post("/notify/text", response_model=NotifyResponse)
async def notify_text(
    request: NotifyRequest, gateway: GatewayContext = Depends(get_gateway)
) -> NotifyResponse:
    """Deliver ``text`` to every resolved chat whose priority gate passes."""
    return _respond(await gateway.notify.send_text(request))


@router.post("/notify/image", response_model=NotifyResponse)
async def notify_image(
    request: NotifyRequest, gateway: GatewayContext = Depends(get_gateway)
) -> NotifyResponse:
    """Deliver ``image_path`` (caption falls back to ``text``)."""
    return _respond(await gateway.notify.send_image(request))
