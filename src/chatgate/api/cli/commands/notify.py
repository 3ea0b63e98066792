"""Notify command - dry-run the priority gate for a notify payload."""

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from chatgate.application.notify_service import NotifyService
from chatgate.core.domain.errors import ConfigError
from chatgate.core.domain.notify import NotifyRequest
from chatgate.infrastructure.config.loader import ProjectRegistrySource, load_settings

app = typer.Typer(help="Notification gate tools")
console = Console()


@app.command("decide")
def decide(
    request_file: Path = typer.Argument(..., help="JSON notify payload"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="CHAT_GATEWAY_CONFIG", help="Path to gateway.yaml"
    ),
):
    """Show the gate decision for every resolved chat without sending."""
    try:
        settings = load_settings(config)
    except ConfigError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)

    if not request_file.exists():
        console.print(f"[red]Request file not found: {request_file}[/red]")
        raise typer.Exit(1)
    try:
        request = NotifyRequest.model_validate(json.loads(request_file.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[red]Invalid notify payload: {exc}[/red]")
        raise typer.Exit(1)

    source = ProjectRegistrySource(settings.projects_path)
    service = NotifyService(
        registry=lambda: source.registry,
        senders={},
        order=settings.priority_order,
        default_project_id=settings.default_project_id,
    )
    result = service.plan(request, require_text=not request.image_path)
    if result.error:
        console.print(f"[red]Rejected:[/red] {result.error}")
        raise typer.Exit(1)

    table = Table(title=f"Gate decisions (project: {result.project_id or '-'})")
    table.add_column("Target", style="cyan")
    table.add_column("Chat", style="white")
    table.add_column("Priority", style="white")
    table.add_column("Effective min", style="white")
    table.add_column("Override", style="dim")
    table.add_column("Decision")
    for record in result.records:
        if record.gate_bypassed:
            verdict = "[yellow]bypass[/yellow]"
        elif record.sent:
            verdict = "[green]send[/green]"
        else:
            verdict = f"[red]skip ({record.skip_reason})[/red]"
        override = (
            f"{record.target_override_min_priority} ({record.target_override_source})"
            if record.target_override_min_priority
            else ""
        )
        table.add_row(
            record.target,
            record.chat_id,
            record.delivery_priority or "-",
            record.effective_min_priority or "-",
            override,
            verdict,
        )
    console.print(table)
