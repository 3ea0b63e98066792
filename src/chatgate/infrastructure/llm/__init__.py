"""LLM provider implementations."""

from chatgate.infrastructure.llm.litellm_provider import LiteLLMProvider, should_retry

__all__ = ["LiteLLMProvider", "should_retry"]
