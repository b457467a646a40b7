"""Classified operation outcomes.

Every backend call returns a ``Status`` instead of raising. The harness
decides per transaction model whether a non-OK outcome is an expected
concurrency artifact or a bug in the backend under test.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Outcome(Enum):
    """Outcome categories shared by all transaction models."""
    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"        # busy, lock timeout, try again
    EXPIRED = "expired"          # lock/lease expiration
    CORRUPTION = "corruption"    # impossible stored value or total mismatch
    UNEXPECTED = "unexpected"    # anything else


@dataclass(frozen=True)
class Status:
    """Immutable result of a backend operation."""
    outcome: Outcome
    message: str = ""

    @classmethod
    def ok(cls) -> Status:
        return _OK

    @classmethod
    def not_found(cls) -> Status:
        return _NOT_FOUND

    @classmethod
    def conflict(cls, message: str = "") -> Status:
        return cls(Outcome.CONFLICT, message)

    @classmethod
    def expired(cls, message: str = "") -> Status:
        return cls(Outcome.EXPIRED, message)

    @classmethod
    def corruption(cls, message: str = "") -> Status:
        return cls(Outcome.CORRUPTION, message)

    @classmethod
    def unexpected(cls, message: str = "") -> Status:
        return cls(Outcome.UNEXPECTED, message)

    @property
    def is_ok(self) -> bool:
        return self.outcome is Outcome.OK

    @property
    def is_not_found(self) -> bool:
        return self.outcome is Outcome.NOT_FOUND

    def __str__(self) -> str:
        if self.message:
            return f"{self.outcome.value}: {self.message}"
        return self.outcome.value


_OK = Status(Outcome.OK)
_NOT_FOUND = Status(Outcome.NOT_FOUND)


class UnsupportedOperationError(Exception):
    """Raised when a backend's transaction model lacks an operation."""
    pass
