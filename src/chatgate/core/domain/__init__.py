"""
Domain Models

This package contains the core domain models for chatgate:
- Priority ordering and notification gate records
- Access policy schema and decisions
- Routing context and pipeline steps
- Configuration schemas
"""

from chatgate.core.domain.gate import BlockKind, GateDecision
from chatgate.core.domain.policy import PolicyConfig, PolicyDecision, PolicyInput
from chatgate.core.domain.priority import PriorityOrder
from chatgate.core.domain.result import Err, Ok

__all__ = [
    "BlockKind",
    "Err",
    "GateDecision",
    "Ok",
    "PolicyConfig",
    "PolicyDecision",
    "PolicyInput",
    "PriorityOrder",
]
