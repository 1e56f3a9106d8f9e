from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or the exception that prevented producing one."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "Outcome[T]":
        return cls(error=error)


def capture(fn: Callable[[], T]) -> Outcome[T]:
    try:
        return Outcome.success(fn())
    except Exception as e:
        return Outcome.failure(e)
