from fastapi import APIRouter, Depends

from chatgate import __version__
from chatgate.api.dependencies import get_gateway
from chatgate.api.schemas.notify import HealthResponse
from chatgate.application.context import GatewayContext

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(gateway: GatewayContext = Depends(get_gateway)) -> HealthResponse:
    """Liveness probe with the policy trust flag and registry size."""
    return HealthResponse(
        version=__version__,
        policy_ok=gateway.loaded_policy.policy_ok,
        projects=len(gateway.registry_source.registry.projects),
        senders=sorted(gateway.senders),
    )
