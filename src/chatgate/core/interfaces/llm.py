"""Protocols for language model backed collaborators.

The gateway never talks to a model provider directly: explain/summary tasks
go through ``LLMProviderProtocol`` and natural language intent resolution
through ``IntentResolverProtocol``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class LLMProviderProtocol(Protocol):
    """Generate a completion for a gateway task."""

    async def generate(
        self,
        prompt: str,
        *,
        stage: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Return the model output for ``prompt``.

        Args:
            prompt: Fully rendered prompt.
            stage: Task stage (``analyze`` or ``suggest``).
            context: Extra structured context for the provider.

        Raises:
            Exception: Any provider failure. Callers cache it as a failed task.
        """
        ...


@dataclass(frozen=True)
class ResolvedIntent:
    """Structured interpretation of free text."""

    intent: str
    params: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0


class IntentResolverProtocol(Protocol):
    async def resolve(self, text: str, *, context: dict[str, Any]) -> ResolvedIntent | None:
        """Return the best intent for ``text`` or None when nothing fits."""
        ...


class RendererProtocol(Protocol):
    """Render a chart or dashboard panel to an image file."""

    async def render(self, kind: str, params: dict[str, str]) -> str:
        """Return the path of the rendered PNG.

        Raises:
            ExecTimeoutError: The renderer exceeded its time budget.
            ExecFailedError: The renderer exited with an error.
        """
        ...
