"""Settlement states of a Deferred and the result records describing them."""

from dataclasses import dataclass
import enum
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")


class State(str, enum.Enum):
    """Lifecycle state of a Deferred.

    A Deferred starts out ``PENDING`` and moves exactly once to either
    ``FULFILLED`` or ``REJECTED``. Both of those are terminal.
    """

    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"

    def __str__(self) -> str:
        return self.value

    @property
    def pending(self) -> bool:
        return self is State.PENDING

    @property
    def fulfilled(self) -> bool:
        return self is State.FULFILLED

    @property
    def rejected(self) -> bool:
        return self is State.REJECTED

    @property
    def settled(self) -> bool:
        return self is State.FULFILLED or self is State.REJECTED


@dataclass(frozen=True)
class StateChange:
    """Payload of a ``statechange`` event."""

    new_state: State
    old_state: State


@dataclass(frozen=True)
class FulfilledResult(Generic[T]):
    """Payload of a ``fulfilled`` event."""

    value: T
    status: Literal["fulfilled"] = "fulfilled"


@dataclass(frozen=True)
class RejectedResult:
    """Payload of a ``rejected`` event."""

    reason: Any
    status: Literal["rejected"] = "rejected"


@dataclass(frozen=True)
class SettledResult(Generic[T]):
    """Payload of a ``settled`` event, also used by ``Deferred.all_settled``.

    Only ``value`` is meaningful when ``status`` is ``"fulfilled"`` and only
    ``reason`` when it is ``"rejected"``.
    """

    status: Literal["fulfilled", "rejected"]
    value: T | None = None
    reason: Any = None

    @classmethod
    def of(cls, outcome: Any, status: State) -> "SettledResult[Any]":
        """Build the record for an outcome that settled with ``status``."""
        if status is State.FULFILLED:
            return cls(status="fulfilled", value=outcome)
        if status is State.REJECTED:
            return cls(status="rejected", reason=outcome)
        raise ValueError(f"Cannot describe a {status} outcome as settled")
