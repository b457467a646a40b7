"""Backend adapter interface.

The harness drives every storage engine through the same two ABCs:

- Backend: database-level reads, atomic batch writes, range scans,
  snapshots, and transaction creation.
- Transaction: one unit of work (get, get_for_update, put, delete,
  prepare, commit, rollback, snapshot and timestamp setters).

Which optional operations exist is decided by the backend's
TransactionModel, exposed as capability flags. Unavailable operations
raise UnsupportedOperationError. Every available operation returns a
classified Status; it never raises for a concurrency outcome.

Key types:
- TransactionModel: Plain batch, pessimistic, optimistic, timestamp-ordered
- Capabilities: Optional operations per model (frozen)
- FailurePolicy: Outcomes each stage may legitimately produce (frozen)
- POLICIES / CAPABILITIES: Per-model tables
- ReadResult, Snapshot: Immutable operation results
- WriteBatch: Deferred writes for the no-transaction path
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterator, List, Optional, Tuple

from kvfuzz.status import Outcome, Status, UnsupportedOperationError


# ---------------------------------------------------------------------------
# Transaction models
# ---------------------------------------------------------------------------

class TransactionModel(Enum):
    """Transaction semantics offered by a backend."""
    BATCH = "batch"
    PESSIMISTIC = "pessimistic"
    OPTIMISTIC = "optimistic"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class Capabilities:
    """Optional operations available under a transaction model."""
    transactions: bool
    supports_get_for_update: bool
    supports_prepare: bool
    uses_timestamps: bool
    supports_snapshot: bool


CAPABILITIES = {
    TransactionModel.BATCH: Capabilities(
        transactions=False,
        supports_get_for_update=False,
        supports_prepare=False,
        uses_timestamps=False,
        supports_snapshot=False,
    ),
    TransactionModel.PESSIMISTIC: Capabilities(
        transactions=True,
        supports_get_for_update=True,
        supports_prepare=True,
        uses_timestamps=False,
        supports_snapshot=True,
    ),
    TransactionModel.OPTIMISTIC: Capabilities(
        transactions=True,
        supports_get_for_update=False,
        supports_prepare=False,
        uses_timestamps=False,
        supports_snapshot=False,
    ),
    TransactionModel.TIMESTAMP: Capabilities(
        transactions=True,
        supports_get_for_update=False,
        supports_prepare=False,
        uses_timestamps=True,
        supports_snapshot=False,
    ),
}


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FailurePolicy:
    """Outcomes that are normal concurrency artifacts for one model.

    Any non-OK outcome outside the relevant set is unexpected and means
    the backend under test is broken. NOT_FOUND is always acceptable on
    reads (the key was never written) and is handled by the caller.

    Attributes:
        read: Expected failures of get / get_for_update
        unlocked_write: Expected failures of put/delete on a key this
            transaction did not lock with get_for_update
        locked_write: Expected failures of put/delete on a locked key
        commit: Expected failures of prepare and commit
        batch_write: Expected failures of an atomic batch write
    """
    read: FrozenSet[Outcome] = frozenset()
    unlocked_write: FrozenSet[Outcome] = frozenset()
    locked_write: FrozenSet[Outcome] = frozenset()
    commit: FrozenSet[Outcome] = frozenset()
    batch_write: FrozenSet[Outcome] = frozenset()

    def read_is_expected(self, status: Status) -> bool:
        return status.outcome in self.read

    def write_is_expected(self, status: Status, locked: bool) -> bool:
        allowed = self.locked_write if locked else self.unlocked_write
        return status.outcome in allowed

    def commit_is_expected(self, status: Status) -> bool:
        return status.outcome in self.commit

    def batch_write_is_expected(self, status: Status) -> bool:
        return status.outcome in self.batch_write


_CONFLICT = frozenset({Outcome.CONFLICT})

POLICIES = {
    # Single atomic write: nothing may fail.
    TransactionModel.BATCH: FailurePolicy(),
    TransactionModel.PESSIMISTIC: FailurePolicy(
        read=_CONFLICT,
        unlocked_write=_CONFLICT,
        commit=frozenset({Outcome.EXPIRED}),
    ),
    # Conflicts surface only at commit.
    TransactionModel.OPTIMISTIC: FailurePolicy(
        commit=_CONFLICT,
    ),
    TransactionModel.TIMESTAMP: FailurePolicy(
        read=_CONFLICT,
        unlocked_write=_CONFLICT,
        locked_write=_CONFLICT,
        commit=_CONFLICT,
    ),
}


def is_unexpected_commit(model: TransactionModel, status: Status) -> bool:
    """Whether a failed commit signals a backend bug under ``model``."""
    if status.is_ok:
        return False
    return not POLICIES[model].commit_is_expected(status)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReadResult:
    """Immutable result of a point read."""
    status: Status
    value: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status.is_ok


@dataclass(frozen=True)
class Snapshot:
    """Handle to a consistent read view. Must be released by its owner."""
    seq: int


@dataclass
class WriteBatch:
    """Writes applied atomically by Backend.write().

    Each entry is (group, key, value); value None is a delete.
    """
    entries: List[Tuple[Optional[str], str, Optional[str]]] = field(default_factory=list)

    def put(self, key: str, value: str, group: Optional[str] = None) -> None:
        self.entries.append((group, key, value))

    def delete(self, key: str, group: Optional[str] = None) -> None:
        self.entries.append((group, key, None))

    def __len__(self) -> int:
        return len(self.entries)


# ---------------------------------------------------------------------------
# Transaction ABC
# ---------------------------------------------------------------------------

class Transaction(ABC):
    """One unit of work against a backend.

    A handle is owned by the thread that began it. After commit or
    rollback it may be passed back to Backend.begin() for reuse.
    Optional operations raise UnsupportedOperationError by default.
    """

    def __init__(self) -> None:
        self.name: str = ""

    @abstractmethod
    def get(self, key: str, group: Optional[str] = None) -> ReadResult:
        ...

    def get_for_update(self, key: str, group: Optional[str] = None) -> ReadResult:
        """Read and guard the key against concurrent writers."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support get_for_update")

    @abstractmethod
    def put(self, key: str, value: str, group: Optional[str] = None) -> Status:
        ...

    @abstractmethod
    def delete(self, key: str, group: Optional[str] = None) -> Status:
        ...

    @abstractmethod
    def commit(self) -> Status:
        ...

    @abstractmethod
    def rollback(self) -> Status:
        ...

    def prepare(self) -> Status:
        """First phase of two-phase commit."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support prepare")

    def set_snapshot(self) -> None:
        """Pin reads and write validation to the current state."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support snapshots")

    def clear_snapshot(self) -> None:
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support snapshots")

    def set_read_timestamp(self, ts: Optional[int]) -> Status:
        """Read data committed at or before ``ts`` (None: latest)."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support timestamps")

    def set_commit_timestamp(self, ts: int) -> Status:
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support timestamps")


# ---------------------------------------------------------------------------
# Backend ABC
# ---------------------------------------------------------------------------

class Backend(ABC):
    """Transactional key-value store under test."""

    @property
    @abstractmethod
    def model(self) -> TransactionModel:
        ...

    @property
    def name(self) -> str:
        return self.model.value

    @property
    def capabilities(self) -> Capabilities:
        return CAPABILITIES[self.model]

    @property
    def policy(self) -> FailurePolicy:
        return POLICIES[self.model]

    @property
    def supports_transactions(self) -> bool:
        return self.capabilities.transactions

    @property
    def supports_get_for_update(self) -> bool:
        return self.capabilities.supports_get_for_update

    @property
    def supports_prepare(self) -> bool:
        return self.capabilities.supports_prepare

    @property
    def uses_timestamps(self) -> bool:
        return self.capabilities.uses_timestamps

    @property
    def supports_snapshot(self) -> bool:
        return self.capabilities.supports_snapshot

    @property
    def column_groups(self) -> Tuple[str, ...]:
        """Named column groups beyond the default one (may be empty)."""
        return ()

    def begin(self, reuse: Optional[Transaction] = None) -> Transaction:
        """Start a transaction, recycling a finalized handle if given."""
        raise UnsupportedOperationError(
            f"{self.name} backend does not support transactions")

    @abstractmethod
    def get(
        self,
        key: str,
        snapshot: Optional[Snapshot] = None,
        group: Optional[str] = None,
    ) -> ReadResult:
        ...

    @abstractmethod
    def write(self, batch: WriteBatch) -> Status:
        """Apply all writes in ``batch`` atomically."""
        ...

    @abstractmethod
    def scan(
        self,
        start: str,
        snapshot: Optional[Snapshot] = None,
        group: Optional[str] = None,
    ) -> Iterator[Tuple[str, str]]:
        """Iterate (key, value) pairs in key order starting at ``start``."""
        ...

    @abstractmethod
    def get_snapshot(self) -> Snapshot:
        ...

    @abstractmethod
    def release_snapshot(self, snapshot: Snapshot) -> None:
        ...
