"""chatgate CLI entry point."""

from typing import Optional

import typer
from rich.console import Console

from chatgate.api.cli.commands import notify, policy, serve
from chatgate.api.server import configure_logging

app = typer.Typer(
    name="chatgate",
    help="chatgate - policy gated chat router and priority notification gate",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register command groups
app.add_typer(policy.app, name="policy", help="Access policy tools")
app.add_typer(notify.app, name="notify", help="Notification gate tools")
app.command("serve", help="Run the chat router and internal HTTP API")(serve.serve)


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", envvar="LOGLEVEL", help="Log level (DEBUG, INFO, ...)"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
):
    """chatgate CLI."""
    configure_logging(log_level or "INFO", json=json_logs)
    ctx.obj = {"log_level": log_level, "json_logs": json_logs}


@app.command()
def version():
    """Show chatgate version."""
    from chatgate import __version__

    console.print(f"[bold blue]Version:[/bold blue] [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
