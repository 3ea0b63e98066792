"""FastAPI dependency providers.

The running ``GatewayContext`` lives on ``app.state.gateway``; routes reach
it through ``Depends(get_gateway)`` so tests can build an app around any
context.
"""

from __future__ import annotations

import ipaddress
import time

from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatgate.api.errors import http_exception
from chatgate.application.context import GatewayContext

bearer_scheme = HTTPBearer(auto_error=False)


def get_gateway(request: Request) -> GatewayContext:
    return request.app.state.gateway


def _is_internal(host: str | None) -> bool:
    try:
        address = ipaddress.ip_address(host or "")
    except ValueError:
        return False
    return address.is_loopback or address.is_private


def require_internal_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    gateway: GatewayContext = Depends(get_gateway),
) -> None:
    """Reject external callers (unless allowed) and wrong bearer tokens."""
    settings = gateway.settings.notify
    host = request.client.host if request.client else None
    if not settings.allow_external and not _is_internal(host):
        raise http_exception(
            status_code=status.HTTP_403_FORBIDDEN,
            code="forbidden",
            message="Internal API only accepts loopback or private callers",
        )
    if settings.token and (credentials is None or credentials.credentials != settings.token):
        raise http_exception(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="unauthorized",
            message="Missing or invalid bearer token",
        )


def refresh_registry(request: Request, gateway: GatewayContext = Depends(get_gateway)) -> None:
    """Reload the project registry at most once per check interval."""
    interval = gateway.settings.notify.registry_check_interval_sec
    now = time.monotonic()
    last = getattr(request.app.state, "registry_checked_at", None)
    if last is not None and now - last < interval:
        return
    request.app.state.registry_checked_at = now
    gateway.registry_source.reload()
