"""Ordered severity levels used by the notification gate and strategy state."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from chatgate.core.domain.errors import PriorityError

DEFAULT_PRIORITY_LEVELS: tuple[str, ...] = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
PRIORITY_LEVELS_ENV = "CHAT_GATEWAY_PRIORITY_LEVELS"


@dataclass(frozen=True)
class PriorityOrder:
    """Validated, ordered list of severity levels (lowest first).

    ``rank`` is the index of a level in the list. Unknown or empty levels rank
    ``-1`` so they sort below every configured level and never win
    ``max_priority``.

    Example:
        >>> order = PriorityOrder.default()
        >>> order.rank("HIGH") > order.rank("low")
        True
        >>> order.max_priority("MEDIUM", None, "bogus")
        'MEDIUM'
    """

    levels: tuple[str, ...] = DEFAULT_PRIORITY_LEVELS

    def __post_init__(self) -> None:
        if not self.levels:
            raise PriorityError("Priority level list must not be empty")
        seen: set[str] = set()
        for level in self.levels:
            if not isinstance(level, str) or not level.strip():
                raise PriorityError(
                    "Priority levels must be non-empty strings",
                    details={"levels": list(self.levels)},
                )
            if level != level.strip().upper():
                raise PriorityError(
                    f"Priority level '{level}' must be upper-case",
                    details={"level": level},
                )
            if level in seen:
                raise PriorityError(
                    f"Duplicate priority level '{level}'",
                    details={"level": level},
                )
            seen.add(level)

    @classmethod
    def default(cls) -> "PriorityOrder":
        return cls(DEFAULT_PRIORITY_LEVELS)

    @classmethod
    def parse(cls, raw: str | Iterable[str] | None) -> "PriorityOrder":
        """Build an order from a comma/whitespace separated string or a list.

        Entries are upper-cased and de-duplicated keeping first occurrence.
        An empty input yields the default order.
        """
        if raw is None:
            return cls.default()
        if isinstance(raw, str):
            tokens = [t for t in re.split(r"[,\s]+", raw) if t]
        else:
            tokens = [str(t) for t in raw]
        levels: list[str] = []
        for token in tokens:
            level = token.strip().upper()
            if level and level not in levels:
                levels.append(level)
        if not levels:
            return cls.default()
        return cls(tuple(levels))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PriorityOrder":
        env = os.environ if environ is None else environ
        return cls.parse(env.get(PRIORITY_LEVELS_ENV) or None)

    @property
    def lowest(self) -> str:
        return self.levels[0]

    @property
    def highest(self) -> str:
        return self.levels[-1]

    def normalize(self, raw: Any) -> str | None:
        """Return the configured level matching ``raw`` or None."""
        if raw is None:
            return None
        level = str(raw).strip().upper()
        return level if level in self.levels else None

    def require(self, raw: Any) -> str:
        """Return the configured level matching ``raw`` or raise PriorityError."""
        level = self.normalize(raw)
        if level is None:
            raise PriorityError(
                f"Unknown priority level '{raw}'",
                details={"value": raw, "allowed": list(self.levels)},
            )
        return level

    def rank(self, level: Any) -> int:
        normalized = self.normalize(level)
        if normalized is None:
            return -1
        return self.levels.index(normalized)

    def max_priority(self, *levels: Any) -> str:
        """Return the highest-ranked recognized level, or the lowest level."""
        best: str | None = None
        best_rank = -1
        for level in levels:
            r = self.rank(level)
            if r > best_rank:
                best_rank = r
                best = self.levels[r]
        return best if best is not None else self.lowest

    def __contains__(self, level: object) -> bool:
        return self.normalize(level) is not None
