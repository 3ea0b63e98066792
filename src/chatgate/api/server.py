import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse

from chatgate import __version__
from chatgate.api.errors import ERROR_HEADER, from_domain_error
from chatgate.api.routes import health, notify, tasks
from chatgate.application.context import GatewayContext
from chatgate.core.domain.errors import ChatGateError

logger = structlog.get_logger()

log_level_map = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Route stdlib logging and structlog through one level filter."""
    log_level = log_level_map.get(level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(message)s")
    renderer: Any = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )


async def chatgate_http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Return standardized error responses for chatgate exceptions."""
    if (
        exc.headers
        and exc.headers.get(ERROR_HEADER) == "1"
        and isinstance(exc.detail, dict)
    ):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return await http_exception_handler(request, exc)


async def chatgate_error_handler(request: Request, exc: ChatGateError) -> JSONResponse:
    logger.warning("api.domain_error", path=request.url.path, code=exc.code, error=exc.message)
    return await chatgate_http_exception_handler(request, from_domain_error(exc))


def create_app(
    gateway: GatewayContext,
    *,
    pollers: Sequence[Any] = (),
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Create the internal HTTP API around a built ``GatewayContext``.

    Args:
        gateway: The running gateway context.
        pollers: Channel receive loops (``start``/``stop``) tied to the app lifespan.
        manage_lifecycle: Load, refresh and close the context in the lifespan.

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        refresh_task: Optional[asyncio.Task[None]] = None
        if manage_lifecycle:
            await gateway.load()
            refresh_task = asyncio.create_task(gateway.run_refresh_loop(stop), name="gateway-refresh")
        for poller in pollers:
            await poller.start()
        logger.info("api.startup", version=__version__, pollers=len(pollers))
        try:
            yield
        finally:
            for poller in pollers:
                await poller.stop()
            stop.set()
            if refresh_task is not None:
                await refresh_task
            if manage_lifecycle:
                await gateway.aclose()
            logger.info("api.shutdown")

    app = FastAPI(
        title="chatgate internal API",
        description="Priority gated notifications and idempotent model tasks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.add_exception_handler(HTTPException, chatgate_http_exception_handler)
    app.add_exception_handler(ChatGateError, chatgate_error_handler)

    app.include_router(health.router, tags=["health"])
    app.include_router(notify.router, tags=["notify"])
    app.include_router(tasks.router, tags=["tasks"])
    return app
