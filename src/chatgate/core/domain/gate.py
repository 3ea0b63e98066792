"""Gate decisions for reply/mention gated capabilities."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BlockKind(str, Enum):
    """How the caller must behave when a gate blocks.

    IGNORE: stay silent, the message was not addressed to the bot.
    REPLY: answer with ``GateDecision.message`` (instructions or a deny text).
    CONSUME: swallow the message without replying so strangers learn nothing.
    """

    IGNORE = "ignore"
    REPLY = "reply"
    CONSUME = "consume"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    block: BlockKind | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        if self.allowed and self.block is not None:
            raise ValueError("An allowed gate decision cannot carry a block kind")
        if not self.allowed and self.block is None:
            raise ValueError("A blocked gate decision requires a block kind")

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)

    @classmethod
    def ignore(cls) -> "GateDecision":
        return cls(allowed=False, block=BlockKind.IGNORE)

    @classmethod
    def reply(cls, message: str) -> "GateDecision":
        return cls(allowed=False, block=BlockKind.REPLY, message=message)

    @classmethod
    def consume(cls) -> "GateDecision":
        return cls(allowed=False, block=BlockKind.CONSUME)
