"""Subprocess-backed chart and dashboard renderer."""

from __future__ import annotations

import re
import uuid
from pathlib import Path

import structlog

from chatgate.core.domain.config_schema import RendererSettings
from chatgate.core.domain.errors import ConfigError, ExecFailedError
from chatgate.infrastructure.runtime.exec_limiter import ExecLimiter

logger = structlog.get_logger(__name__)

_SAFE_PARAM = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")
CHART_MODULE = "charts"


class SubprocessRenderer:
    """Render PNGs by running a configured argv template under the limiter.

    The ``charts`` limiter module is sized to the renderer's safe
    concurrency (one by default).
    """

    def __init__(self, settings: RendererSettings, limiter: ExecLimiter, storage_dir: str) -> None:
        self.settings = settings
        self.limiter = limiter
        self.output_dir = Path(settings.output_dir or Path(storage_dir) / "renders")

    def _template_for(self, kind: str) -> list[str]:
        template = (
            self.settings.dashboard_command if kind == "dashboard" else self.settings.chart_command
        )
        if not template:
            raise ConfigError(f"No renderer command configured for '{kind}'")
        return template

    async def render(self, kind: str, params: dict[str, str]) -> str:
        for key, value in params.items():
            if not _SAFE_PARAM.match(value):
                raise ValueError(f"Unsafe renderer parameter {key}={value!r}")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output = self.output_dir / f"{kind}_{uuid.uuid4().hex[:12]}.png"
        values = {"kind": kind, "output": str(output), "panel_id": "", "window_spec_id": ""}
        values.update(params)
        argv = [part.format(**values) for part in self._template_for(kind)]

        await self.limiter.exec_file(CHART_MODULE, argv, timeout=self.settings.timeout_sec)
        if not output.exists():
            raise ExecFailedError(f"Renderer produced no output for '{kind}'", returncode=0)
        logger.info("renderer.completed", kind=kind, output=str(output))
        return str(output)
