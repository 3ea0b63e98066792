"""Policy command - validate the access policy and try decisions."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from chatgate.application.policy import PolicyEvaluator
from chatgate.core.domain.errors import ConfigError
from chatgate.core.domain.policy import PolicyInput
from chatgate.infrastructure.config.loader import load_policy, load_settings, owner_principals

app = typer.Typer(help="Access policy tools")
console = Console()


@app.command("check")
def check_policy(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="CHAT_GATEWAY_CONFIG", help="Path to gateway.yaml"
    ),
    policy_path: Optional[Path] = typer.Option(
        None, "--policy", help="Policy file (defaults to settings.policy_path)"
    ),
    capability: Optional[str] = typer.Option(
        None, "--capability", help="Evaluate this capability after loading"
    ),
    channel: str = typer.Option("telegram", "--channel"),
    chat_id: str = typer.Option("", "--chat-id"),
    chat_type: str = typer.Option("private", "--chat-type"),
    user_id: str = typer.Option("", "--user-id"),
    mention: bool = typer.Option(False, "--mention", help="Message mentions the bot"),
    reply: bool = typer.Option(False, "--reply", help="Message is a reply"),
):
    """Load the policy, list load errors and optionally evaluate one request."""
    try:
        settings = load_settings(config)
    except ConfigError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)

    loaded = load_policy(policy_path or settings.policy_path, owner=owner_principals(settings))
    status = "[green]ok[/green]" if loaded.policy_ok else "[red]fallback[/red]"
    console.print(f"\n[bold]Policy:[/bold] {loaded.source}  {status}")
    console.print(
        f"[bold]Version:[/bold] {loaded.policy.version}  "
        f"[bold]Enabled:[/bold] {loaded.policy.enabled}  "
        f"[bold]Rules:[/bold] {len(loaded.policy.rules)}\n"
    )

    if loaded.errors:
        table = Table(title="Policy Errors")
        table.add_column("Code", style="red")
        table.add_column("Detail", style="white")
        for error in loaded.errors:
            code, _, detail = error.partition(":")
            table.add_row(code, detail)
        console.print(table)

    if capability:
        evaluator = PolicyEvaluator(loaded.policy, policy_ok=loaded.policy_ok)
        decision = evaluator.evaluate(
            PolicyInput(
                channel=channel,
                chat_id=chat_id,
                chat_type=chat_type,
                user_id=user_id,
                capability=capability,
                mentions_bot=mention,
                has_reply=reply,
            )
        )
        console.print_json(data=decision.to_dict())

    if not loaded.policy_ok:
        raise typer.Exit(1)
