"""
Ops Handler

Read-only operations commands, each gated by its ``ops.*`` capability and
the per-user rate limit::

    /status                  wall clock plus the status of the project's pm2 apps
    /ps                      pm2 process table
    /logs [name] [lines]     tail of ``<name>-error.log`` / ``<name>-out.log``
    /chart <kind>            render ``factor_timeline`` or ``daily_activity``

Process names are restricted to the project's ``pm2_ps`` / ``pm2_logs``
resources. Output is clipped to the matched rule's limits.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import structlog

from chatgate.application.handlers.common import audit, authorize
from chatgate.core.domain.capabilities import (
    OPS_CHART_DAILY_ACTIVITY,
    OPS_CHART_FACTOR_TIMELINE,
    OPS_LOGS,
    OPS_PS,
    OPS_STATUS,
)
from chatgate.core.domain.errors import CommandOutputError
from chatgate.core.domain.routing import IntentPipelineStep, MatchResult, RouteContext, StepResult

if TYPE_CHECKING:
    from chatgate.application.context import GatewayContext

logger = structlog.get_logger(__name__)

OPS_MODULE = "ops"
TAIL_READ_BYTES = 256 * 1024

_COMMAND = re.compile(r"^/(status|ps|logs|chart)(?:@[A-Za-z0-9_]+)?(?=\s|$)(.*)$", re.IGNORECASE | re.DOTALL)
_PROCESS_NAME = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

CHART_CAPABILITIES = {
    "factor_timeline": OPS_CHART_FACTOR_TIMELINE,
    "daily_activity": OPS_CHART_DAILY_ACTIVITY,
}
COMMAND_CAPABILITIES = {"status": OPS_STATUS, "ps": OPS_PS, "logs": OPS_LOGS}


@dataclass(frozen=True)
class OpsCommand:
    name: str
    args: tuple[str, ...] = ()

    @property
    def capability(self) -> str | None:
        if self.name == "chart":
            return CHART_CAPABILITIES.get(self.args[0] if self.args else "")
        return COMMAND_CAPABILITIES[self.name]


def parse_ops_command(text: str) -> OpsCommand | None:
    m = _COMMAND.match((text or "").strip())
    if not m:
        return None
    return OpsCommand(name=m.group(1).lower(), args=tuple(m.group(2).split()))


def format_uptime(ms: float) -> str:
    if ms <= 0:
        return "-"
    minutes = int(ms // 60000)
    hours, days = minutes // 60, minutes // 1440
    if days:
        return f"{days}d{hours % 24}h"
    if hours:
        return f"{hours}h{minutes % 60}m"
    return f"{minutes}m"


def parse_pm2_processes(raw: str, allowed: list[str], *, now_ms: float | None = None) -> list[dict[str, Any]]:
    """Flatten ``pm2 jlist`` output, keeping only ``allowed`` names when given.

    Raises:
        CommandOutputError: A process entry carries non-numeric counters.
    """
    try:
        procs = json.loads(raw or "[]")
    except json.JSONDecodeError:
        logger.warning("ops.pm2_parse_failed")
        return []
    if not isinstance(procs, list):
        return []
    now_ms = datetime.now(timezone.utc).timestamp() * 1000 if now_ms is None else now_ms
    rows: list[dict[str, Any]] = []
    for proc in procs:
        if not isinstance(proc, dict):
            continue
        name = str(proc.get("name") or "unknown")
        if allowed and name not in allowed:
            continue
        env = proc.get("pm2_env")
        env = env if isinstance(env, dict) else {}
        monit = proc.get("monit")
        monit = monit if isinstance(monit, dict) else {}
        try:
            started = float(env.get("pm_uptime") or 0)
            restarts = int(env.get("restart_time") or 0)
            mem_mb = round(float(monit.get("memory") or 0) / (1024 * 1024), 1)
        except (TypeError, ValueError) as exc:
            raise CommandOutputError(
                f"pm2 jlist returned malformed data for {name}: {exc}", command="pm2 jlist"
            ) from exc
        rows.append(
            {
                "name": name,
                "status": str(env.get("status") or "unknown"),
                "restarts": restarts,
                "uptime": format_uptime(now_ms - started) if started else "-",
                "mem_mb": mem_mb,
                "cpu": monit.get("cpu") or 0,
            }
        )
    return rows


def render_ps(rows: list[dict[str, Any]]) -> str:
    lines = ["🧾 pm2"]
    if not rows:
        lines.append("- (no pm2 data)")
    for r in rows:
        lines.append(
            f"- {r['name']}: {r['status']} | up {r['uptime']} | restarts {r['restarts']}"
            f" | mem {r['mem_mb']}MB | cpu {r['cpu']}%"
        )
    return "\n".join(lines)


def render_status(rows: list[dict[str, Any]], names: list[str]) -> str:
    by_name = {r["name"]: r["status"] for r in rows}
    pm2 = " ".join(f"{n}={by_name.get(n, 'unknown')}" for n in names) or "(no pm2 names configured)"
    return "\n".join(
        [
            "✅ status",
            f"- time_utc: {datetime.now(timezone.utc).isoformat()}",
            f"- pm2: {pm2}",
        ]
    )


async def tail_file(path: Path, lines: int) -> str:
    """Return the last ``lines`` lines of ``path`` (reads at most the file tail)."""
    async with aiofiles.open(path, "rb") as f:
        await f.seek(0, 2)
        size = await f.tell()
        await f.seek(max(0, size - TAIL_READ_BYTES))
        data = await f.read()
    text = data.decode("utf-8", errors="replace")
    return "\n".join(text.splitlines()[-lines:])


class OpsHandler:
    def __init__(self, gateway: "GatewayContext") -> None:
        self.gateway = gateway

    def step(self) -> IntentPipelineStep:
        return IntentPipelineStep(name="ops", priority=0, match=self.match, run=self.run)

    def match(self, ctx: RouteContext) -> MatchResult:
        command = parse_ops_command(ctx.clean_text)
        if command is None:
            return MatchResult.no()
        return MatchResult(matched=True, data=command)

    def _names(self, resource: str) -> list[str]:
        project = self.gateway.default_project()
        return project.resource_names(resource) if project is not None else []

    async def run(self, ctx: RouteContext, command: OpsCommand) -> StepResult:
        gateway = self.gateway
        capability = command.capability
        if capability is None:
            await gateway.reply(ctx.event, f"Usage: /chart {'|'.join(CHART_CAPABILITIES)}")
            return StepResult(handled=True)

        decision = await authorize(gateway, ctx, capability, reject_cmd="ops_reject")
        if decision is None:
            return StepResult(handled=True)

        verdict = gateway.rate_limiter.check(f"{ctx.channel}:{ctx.user_id}", user_rpm=decision.limits.rpm)
        if not verdict.allowed:
            await gateway.reply(ctx.event, f"Rate limited, try again in {int(verdict.retry_after_sec) + 1}s.")
            await audit(gateway, ctx, "ops_rate_limited", capability=capability, scope=verdict.scope)
            return StepResult(handled=True)

        if command.name == "chart":
            await self._chart(ctx, command.args[0])
        else:
            text = await self._text_for(command)
            await gateway.reply(ctx.event, text, decision.limits)
        await audit(gateway, ctx, command.name, capability=capability, args=list(command.args))
        return StepResult(handled=True)

    async def _text_for(self, command: OpsCommand) -> str:
        ops = self.gateway.settings.ops
        if command.name == "logs":
            return await self._logs(command.args)
        argv = ops.status_command if command.name == "status" else ops.ps_command
        output = await self.gateway.limiter.exec_file(OPS_MODULE, argv)
        names = self._names("pm2_ps")
        rows = parse_pm2_processes(output.stdout, names)
        return render_status(rows, names) if command.name == "status" else render_ps(rows)

    async def _logs(self, args: tuple[str, ...]) -> str:
        ops = self.gateway.settings.ops
        names = self._names("pm2_logs")
        if not names:
            return "No pm2 log process names are configured (resources.pm2_logs.names)."
        name = args[0] if args else names[0]
        if name not in names or not _PROCESS_NAME.match(name):
            return f"Process name not allowed: {name}"
        lines = ops.log_tail_lines
        if len(args) > 1 and args[1].isdigit():
            lines = max(1, min(int(args[1]), ops.log_tail_lines))

        logs_dir = Path(ops.logs_dir) if ops.logs_dir else Path.home() / ".pm2" / "logs"
        chunks = [f"📜 logs: {name} (last {lines})"]
        for stream in ("error", "out"):
            path = logs_dir / f"{name}-{stream}.log"
            if not path.is_file():
                continue
            tail = (await tail_file(path, lines)).rstrip()
            if tail:
                chunks += [f"--- {stream} ---", tail]
        if len(chunks) == 1:
            return f"Logs unavailable: no pm2 log files for '{name}'."
        return "\n".join(chunks)

    async def _chart(self, ctx: RouteContext, kind: str) -> None:
        gateway = self.gateway
        if gateway.renderer is None:
            await gateway.reply(ctx.event, "Charts are not configured.")
            return
        image_path = await gateway.renderer.render(kind, {})
        await gateway.send_image(ctx.channel, ctx.chat_id, image_path, kind)
