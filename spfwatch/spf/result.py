"""Tagged per-item results: ``Ok(value)`` or ``Err(reason)``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """A successful item carrying its value."""

    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    """A failed item carrying a human-readable reason and an error kind."""

    reason: str
    kind: str = "error"
    ok: ClassVar[bool] = False


Result = Union[Ok[T], Err]
