"""
Core Protocol Interfaces

Contracts for everything the routing and gating core depends on but does not
implement: channel senders, the LLM provider, intent resolution, renderers,
the task store and the audit ledger.
"""

from chatgate.core.interfaces.gateway import MessageHandlerProtocol, OutboundSenderProtocol
from chatgate.core.interfaces.llm import (
    IntentResolverProtocol,
    LLMProviderProtocol,
    RendererProtocol,
    ResolvedIntent,
)
from chatgate.core.interfaces.persistence import LedgerProtocol, TaskStoreProtocol

__all__ = [
    "IntentResolverProtocol",
    "LLMProviderProtocol",
    "LedgerProtocol",
    "MessageHandlerProtocol",
    "OutboundSenderProtocol",
    "RendererProtocol",
    "ResolvedIntent",
    "TaskStoreProtocol",
]
