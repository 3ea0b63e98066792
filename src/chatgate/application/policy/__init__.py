"""Declarative access policy evaluation."""

from chatgate.application.policy.evaluator import PolicyEvaluator, evaluate, resolve_template

__all__ = ["PolicyEvaluator", "evaluate", "resolve_template"]
