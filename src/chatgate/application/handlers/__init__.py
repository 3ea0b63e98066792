"""Capability handlers invoked by the message router."""

from chatgate.application.handlers.commands import CommandHandler
from chatgate.application.handlers.dashboard import DashboardHandler
from chatgate.application.handlers.explain import ExplainHandler, FeedbackHandler
from chatgate.application.handlers.ops import OpsHandler
from chatgate.application.handlers.query import QueryHandler
from chatgate.application.handlers.strategy import StrategyHandler

__all__ = [
    "CommandHandler",
    "DashboardHandler",
    "ExplainHandler",
    "FeedbackHandler",
    "OpsHandler",
    "QueryHandler",
    "StrategyHandler",
]
