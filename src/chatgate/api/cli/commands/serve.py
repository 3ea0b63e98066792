"""Serve command - run the gateway process."""

from pathlib import Path
from typing import Optional

import structlog
import typer
import uvicorn
from rich.console import Console

from chatgate.api.server import create_app
from chatgate.application.context import GatewayContext
from chatgate.application.router import MessageRouter
from chatgate.core.domain.config_schema import GatewaySettings
from chatgate.core.domain.errors import ConfigError
from chatgate.core.interfaces.gateway import OutboundSenderProtocol
from chatgate.core.interfaces.llm import IntentResolverProtocol, LLMProviderProtocol
from chatgate.infrastructure.communication import (
    OnDemandIntentResolver,
    TelegramPoller,
    TelegramSender,
)
from chatgate.infrastructure.config.loader import load_settings

console = Console()
logger = structlog.get_logger(__name__)


def build_senders(settings: GatewaySettings) -> dict[str, OutboundSenderProtocol]:
    """One sender per enabled channel that has credentials."""
    senders: dict[str, OutboundSenderProtocol] = {}
    telegram = settings.channel("telegram")
    if telegram.enabled and telegram.bot_token:
        senders["telegram"] = TelegramSender(telegram.bot_token)
    return senders


def build_llm(settings: GatewaySettings) -> Optional[LLMProviderProtocol]:
    if not settings.llm.model:
        return None
    # imports litellm
    from chatgate.infrastructure.llm import LiteLLMProvider

    return LiteLLMProvider(settings.llm)


def build_resolver(settings: GatewaySettings) -> Optional[IntentResolverProtocol]:
    if not settings.on_demand.url:
        return None
    return OnDemandIntentResolver(settings.on_demand)


def serve(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="CHAT_GATEWAY_CONFIG", help="Path to gateway.yaml"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Override notify.host"),
    port: Optional[int] = typer.Option(None, "--port", help="Override notify.port"),
    no_poll: bool = typer.Option(False, "--no-poll", help="Serve the HTTP API only"),
):
    """Run the chat router and the internal HTTP API."""
    try:
        settings = load_settings(config)
    except ConfigError as exc:
        console.print(f"[red]{exc.message}[/red]")
        for line in exc.details.get("errors", []):
            console.print(f"  [dim]{line}[/dim]")
        raise typer.Exit(1)

    gateway = GatewayContext.build(
        settings,
        senders=build_senders(settings),
        llm=build_llm(settings),
        resolver=build_resolver(settings),
    )
    router = MessageRouter(gateway)

    pollers = []
    telegram = settings.channel("telegram")
    if not no_poll and telegram.enabled and telegram.bot_token:
        pollers.append(
            TelegramPoller(
                bot_token=telegram.bot_token,
                handler=router,
                bot_username=telegram.bot_username,
                poll_timeout=telegram.poll_timeout_sec,
            )
        )

    if not gateway.loaded_policy.policy_ok:
        console.print(
            "[yellow]Policy failed to load; running with the owner-only fallback:[/yellow] "
            + ", ".join(gateway.loaded_policy.errors)
        )

    bind_host = host or settings.notify.host
    bind_port = port or settings.notify.port
    logger.info("serve.starting", host=bind_host, port=bind_port, pollers=len(pollers))
    app = create_app(gateway, pollers=pollers)
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=settings.log_level.lower())
