from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Generic, ParamSpec, TypeVar, Union

from .errors import BookingError

T = TypeVar("T")
P = ParamSpec("P")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True, slots=True)
class Failure:
    error: BookingError
    ok: bool = False

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def message(self) -> str:
        return self.error.message


Result = Union[Success[T], Failure]


def returns_result(func: Callable[P, T]) -> Callable[P, Result[T]]:
    """Turn expected business failures raised by ``func`` into a ``Failure``."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[T]:
        try:
            return Success(func(*args, **kwargs))
        except BookingError as exc:
            return Failure(exc)

    return wrapper


@dataclass(slots=True)
class SweepResult:
    """Outcome of a background pass over many rows."""

    processed: int = 0
    errors: list[str] = field(default_factory=list)
