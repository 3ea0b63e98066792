"""
LiteLLM Provider

``LLMProviderProtocol`` implementation on top of LiteLLM, so any provider
LiteLLM supports (OpenAI, Azure, Anthropic, local servers...) can back the
gateway's explain, summary and ``/ask`` tasks. Transient failures are
retried with exponential backoff; the final failure raises ``LLMError``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any

# Suppress LiteLLM verbose logging before import
os.environ.setdefault("LITELLM_LOG_LEVEL", "ERROR")
os.environ.setdefault("LITELLM_LOGGING", "off")

for _ln in ["LiteLLM", "litellm", "httpcore", "httpx"]:
    logging.getLogger(_ln).setLevel(logging.ERROR)

import litellm  # noqa: E402
import structlog  # noqa: E402

from chatgate.core.domain.config_schema import LLMSettings  # noqa: E402
from chatgate.core.domain.errors import LLMError  # noqa: E402

litellm.suppress_debug_info = True
litellm.drop_params = True

SYSTEM_PROMPTS = {
    "analyze": "You are a rigorous engineering assistant. Facts-only. No predictions. No risky actions.",
    "suggest": (
        "You are a rigorous engineering assistant. Facts-only. No risky actions. "
        "Return STRICT JSON only with keys summary, suggested_patch, files_touched, "
        "verify_cmds, warnings. No markdown."
    ),
}

_RETRYABLE_ERROR_TYPES = frozenset(
    {
        "RateLimitError",
        "ServiceUnavailableError",
        "APIConnectionError",
        "Timeout",
        "InternalServerError",
    }
)
_RETRYABLE_KEYWORDS = ("rate limit", "timeout", "temporarily", "overloaded", "503", "502", "429")


def should_retry(error: Exception) -> bool:
    """True when ``error`` looks transient."""
    if type(error).__name__ in _RETRYABLE_ERROR_TYPES:
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in _RETRYABLE_KEYWORDS)


class LiteLLMProvider:
    """Chat completion through ``litellm.acompletion``.

    Example:
        >>> provider = LiteLLMProvider(LLMSettings(model="gpt-4o-mini"))
        >>> text = await provider.generate("Explain ...", stage="analyze")
    """

    def __init__(self, settings: LLMSettings) -> None:
        if not settings.model:
            raise ValueError("LiteLLMProvider requires settings.model")
        self.settings = settings
        self.model: str = settings.model
        self.logger = structlog.get_logger().bind(component="litellm_provider")

    def messages_for(self, prompt: str, stage: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPTS.get(stage, SYSTEM_PROMPTS["analyze"])},
            {"role": "user", "content": prompt},
        ]

    async def generate(
        self,
        prompt: str,
        *,
        stage: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages_for(prompt, stage),
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
            "timeout": self.settings.timeout_sec,
            "drop_params": True,
        }
        attempts = self.settings.max_attempts
        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = await litellm.acompletion(**kwargs)
            except Exception as exc:
                if attempt < attempts - 1 and should_retry(exc):
                    backoff = self.settings.backoff_multiplier**attempt
                    self.logger.warning(
                        "llm.retry",
                        model=self.model,
                        error_type=type(exc).__name__,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                self.logger.error(
                    "llm.failed",
                    model=self.model,
                    error_type=type(exc).__name__,
                    error=str(exc)[:200],
                    attempts=attempt + 1,
                )
                raise LLMError(f"{type(exc).__name__}: {exc}", model=self.model) from exc

            content = response.choices[0].message.content or ""
            self.logger.info(
                "llm.completed",
                model=self.model,
                stage=stage,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            return content.strip()
        raise LLMError("no attempts were made", model=self.model)
