from __future__ import annotations

from fastapi import APIRouter, Depends, status

from chatgate.api.dependencies import get_gateway, require_internal_caller
from chatgate.api.errors import http_exception
from chatgate.api.schemas.notify import TaskRequest, TaskResponse
from chatgate.application.context import GatewayContext
from chatgate.core.domain.result import Err

router = APIRouter(prefix="/v1", dependencies=[Depends(require_internal_caller)])


@router.post("/tasks", response_model=TaskResponse)
async def submit_task(
    request: TaskRequest, gateway: GatewayContext = Depends(get_gateway)
) -> TaskResponse:
    """Run (or replay from cache) the model task keyed by ``task_id``."""
    if gateway.dispatcher is None:
        raise http_exception(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="llm_unavailable",
            message="No language model provider is configured",
        )
    outcome = await gateway.dispatcher.submit(
        request.task_id.strip(),
        stage=request.stage.strip(),
        prompt=request.prompt.strip(),
        context=request.context,
    )
    if isinstance(outcome, Err):
        raise http_exception(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=outcome.kind,
            message=outcome.detail or outcome.kind,
        )
    return TaskResponse.model_validate(outcome.value.to_dict())
