"""
Capability Toggle Registry

Loads ``capabilities.yaml`` into an immutable ``CapabilitySnapshot`` and
refreshes it on a polling interval. The snapshot is only replaced when the
sha256 of the file content changes, so unchanged polls are free of side
effects. A broken file keeps the last good snapshot.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from chatgate.core.domain.capabilities import CapabilitySnapshot, IntentToggle
from chatgate.core.domain.config_schema import CapabilityToggleDocument


class CapabilityRegistry:
    def __init__(self, path: str | Path | None) -> None:
        self.path = Path(path) if path else None
        self.snapshot = CapabilitySnapshot()
        self.logger = structlog.get_logger().bind(component="capabilities")

    def refresh(self) -> bool:
        """Reload the registry; return True when the snapshot changed."""
        if self.path is None or not self.path.exists():
            return False
        try:
            content = self.path.read_bytes()
        except OSError as exc:
            self.logger.warning("capabilities.read_failed", path=str(self.path), error=str(exc))
            return False
        content_hash = hashlib.sha256(content).hexdigest()
        if content_hash == self.snapshot.content_hash:
            return False

        try:
            raw = yaml.safe_load(content) or {}
            document = CapabilityToggleDocument.model_validate(raw)
        except (yaml.YAMLError, ValidationError) as exc:
            self.logger.warning(
                "capabilities.invalid", path=str(self.path), error=str(exc)[:500]
            )
            return False

        self.snapshot = CapabilitySnapshot(
            version=str(document.version),
            retry_policy_version=str(document.retry_policy_version),
            content_hash=content_hash,
            intents={
                name: IntentToggle(
                    enabled=toggle.enabled,
                    panel_id_allowlist=tuple(toggle.panel_id_allowlist),
                )
                for name, toggle in document.intents.items()
            },
        )
        self.logger.info(
            "capabilities.loaded",
            version=self.snapshot.version,
            content_hash=content_hash[:12],
            intents=sorted(self.snapshot.intents),
        )
        return True

    def is_intent_enabled(self, name: str) -> bool:
        return self.snapshot.is_intent_enabled(name)

    def is_panel_allowed(self, intent: str, panel_id: str) -> bool:
        return self.snapshot.is_panel_allowed(intent, panel_id)

    def audit_meta(self) -> dict[str, object]:
        return self.snapshot.audit_meta()
