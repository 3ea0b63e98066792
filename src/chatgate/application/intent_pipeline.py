"""
Intent Pipeline

Ordered match/dispatch over ``IntentPipelineStep`` entries. Steps are
sorted by descending priority (stable, so ties keep declaration order). A
step whose ``match`` succeeds gets ``run``; ``handled=True`` stops the
pipeline, ``handled=False`` lets lower-priority steps take a look.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import structlog

from chatgate.core.domain.routing import IntentPipelineStep, RouteContext

logger = structlog.get_logger(__name__)


def order_steps(steps: Iterable[IntentPipelineStep]) -> list[IntentPipelineStep]:
    return sorted(steps, key=lambda step: step.priority, reverse=True)


class IntentPipeline:
    """A fixed, pre-sorted set of pipeline steps."""

    def __init__(self, steps: Sequence[IntentPipelineStep]) -> None:
        self.steps: tuple[IntentPipelineStep, ...] = tuple(order_steps(steps))

    @property
    def names(self) -> list[str]:
        return [step.name for step in self.steps]

    async def run(self, ctx: RouteContext) -> bool:
        return await run_ordered(ctx, self.steps)


async def run_ordered(ctx: RouteContext, steps: Sequence[IntentPipelineStep]) -> bool:
    passed: list[str] = []
    for step in steps:
        match = step.match(ctx)
        if not match.matched:
            continue
        outcome = await step.run(ctx, match.data)
        if outcome.handled:
            if passed:
                logger.debug("intent_pipeline.handled_after_fallthrough", step=step.name, passed=passed)
            return True
        passed.append(step.name)
        logger.debug("intent_pipeline.fallthrough", step=step.name, chat_id=ctx.chat_id)
    return False


async def run_pipeline(ctx: RouteContext, steps: Iterable[IntentPipelineStep]) -> bool:
    """Sort ``steps`` and run them; True when some step handled ``ctx``."""
    return await run_ordered(ctx, order_steps(steps))
