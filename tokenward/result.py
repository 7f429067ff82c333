"""Typed outcomes for operations whose failures are expected business results.

Session, rate-limit and profile operations return ``Success`` or ``Failure``
instead of raising, so callers branch on the outcome explicitly:

    outcome = await sessions.login(email, password)
    match outcome:
        case Success(value=session):
            ...
        case Failure(error=failure):
            ...

Transport failures (store unreachable) are still raised as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """Failed outcome carrying ``error``."""

    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Success[T], Failure[E]]


__all__ = ["Success", "Failure", "Result"]
