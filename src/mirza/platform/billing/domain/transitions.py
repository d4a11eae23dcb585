"""
Result types returned by domain services.

A mutating service call hands back a ``Transition``: the new aggregate
state, the effects it produced and whether anything changed. Callers that
want to branch without exceptions ask the aggregate for a
``TransitionCheck`` first.
"""

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ..events import Effect

A = TypeVar("A")


@dataclass(frozen=True)
class TransitionCheck:
    """Whether a status change is legal, and why not."""

    allowed: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "TransitionCheck":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "TransitionCheck":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class Transition(Generic[A]):
    """Outcome of a domain service call."""

    aggregate: A
    effects: tuple[Effect, ...] = field(default_factory=tuple)
    changed: bool = True

    @classmethod
    def unchanged(cls, aggregate: A) -> "Transition[A]":
        """Idempotent no-op: the aggregate already is in the requested state."""
        return cls(aggregate=aggregate, effects=(), changed=False)


__all__ = ["TransitionCheck", "Transition"]
