from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .errors import PosError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Result of a core operation: either ``value`` or a typed ``error``.

    ``replayed`` is set when the value came from an idempotency record
    instead of a fresh execution.
    """
    value: T | None = None
    error: PosError | None = None
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any, *, replayed: bool = False) -> "Outcome":
        return cls(value=value, replayed=replayed)

    @classmethod
    def failure(cls, error: PosError, *, replayed: bool = False) -> "Outcome":
        return cls(error=error, replayed=replayed)

    def unwrap(self) -> T:
        """Return the value, raising the stored error on failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
