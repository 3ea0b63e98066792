"""Tagged result values for expected failure paths."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Expected failure with a machine-readable kind and optional detail."""

    kind: str
    detail: str = ""
    data: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else self.kind


Result = Union[Ok[T], Err]
