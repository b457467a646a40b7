"""In-memory reference engine for all four transaction models.

The engine is the thing the harness tests, so it is deliberately small
but honest: each backend enforces the isolation its model promises, and
a harness run against it must always verify as consistent.

Key types:
- MemoryStore: Thread-safe multi-version ordered key space with column
  groups, sequence numbers, commit timestamps and snapshots
- MemoryBatchBackend: No transactions, atomic WriteBatch only
- MemoryPessimisticBackend: Per-key locks, get_for_update, prepare,
  optional expiration
- MemoryOptimisticBackend: Commit-time validation of every key touched
- MemoryTimestampBackend: Read/commit timestamps, write intents,
  multiple column groups
- create_backend(): Factory by model name
"""

from __future__ import annotations

import bisect
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from kvfuzz.backend import (
    Backend,
    ReadResult,
    Snapshot,
    Transaction,
    TransactionModel,
    WriteBatch,
)
from kvfuzz.keyspace import MAX_VALUE
from kvfuzz.status import Status

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "default"

LockKey = Tuple[str, str]   # (group, key)
Write = Tuple[Optional[str], str, Optional[str]]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Version:
    seq: int
    commit_ts: int
    value: Optional[str]    # None is a tombstone


class MemoryStore:
    """Multi-version ordered key space.

    Reads at a live snapshot are stable even while writers continue.
    Every mutation goes through apply(), which assigns one sequence
    number to all of its writes and prunes versions no reader can see.
    """

    _SCAN_CHUNK = 256

    def __init__(self, column_groups: Sequence[str] = ()):
        self._lock = threading.RLock()
        names = [DEFAULT_GROUP] + [g for g in column_groups if g != DEFAULT_GROUP]
        self._data: Dict[str, Dict[str, List[_Version]]] = {g: {} for g in names}
        self._keys: Dict[str, List[str]] = {g: [] for g in names}
        self._seq = 0
        self._snapshots: Counter = Counter()

    @property
    def column_groups(self) -> Tuple[str, ...]:
        return tuple(self._data)

    @property
    def sequence(self) -> int:
        with self._lock:
            return self._seq

    @property
    def live_snapshots(self) -> int:
        with self._lock:
            return sum(self._snapshots.values())

    def _group(self, group: Optional[str]) -> str:
        name = DEFAULT_GROUP if group is None else group
        if name not in self._data:
            raise ValueError(f"Unknown column group: {name!r}")
        return name

    @staticmethod
    def _visible(
        versions: List[_Version],
        seq: Optional[int],
        read_ts: Optional[int],
    ) -> Optional[_Version]:
        for version in reversed(versions):
            if seq is not None and version.seq > seq:
                continue
            if read_ts is not None and version.commit_ts > read_ts:
                continue
            return version
        return None

    def read_versioned(
        self,
        key: str,
        group: Optional[str] = None,
        seq: Optional[int] = None,
        read_ts: Optional[int] = None,
    ) -> Tuple[Optional[str], int]:
        """Return (value, seq of the version read); (None, 0) if never written."""
        with self._lock:
            versions = self._data[self._group(group)].get(key)
            if not versions:
                return None, 0
            version = self._visible(versions, seq, read_ts)
            if version is None:
                return None, 0
            return version.value, version.seq

    def read(
        self,
        key: str,
        group: Optional[str] = None,
        seq: Optional[int] = None,
        read_ts: Optional[int] = None,
    ) -> Optional[str]:
        return self.read_versioned(key, group, seq, read_ts)[0]

    def last_modified(self, key: str, group: Optional[str] = None) -> int:
        """Sequence number of the newest version of ``key`` (0 if none)."""
        with self._lock:
            versions = self._data[self._group(group)].get(key)
            return versions[-1].seq if versions else 0

    def apply(
        self,
        writes: Sequence[Write],
        commit_ts: int = 0,
        validate: Optional[Callable[[], bool]] = None,
    ) -> Optional[int]:
        """Atomically apply ``writes``; return the new sequence number.

        If ``validate`` is given it runs under the store lock first, and
        a False result leaves the store untouched and returns None.
        """
        with self._lock:
            if validate is not None and not validate():
                return None
            resolved = [(self._group(g), k, v) for g, k, v in writes]
            self._seq += 1
            for group, key, value in resolved:
                versions = self._data[group].get(key)
                if versions is None:
                    versions = self._data[group][key] = []
                    bisect.insort(self._keys[group], key)
                versions.append(_Version(self._seq, commit_ts, value))
                self._prune(versions)
            return self._seq

    def _horizon(self) -> int:
        """Oldest sequence number a reader may still ask for."""
        return min(self._snapshots) if self._snapshots else self._seq

    def _prune(self, versions: List[_Version]) -> None:
        """Drop versions hidden from every snapshot and read timestamp.

        A version is dead once a newer one at or below the horizon has a
        commit timestamp no later than its own.
        """
        horizon = self._horizon()
        newest = None
        for i in range(len(versions) - 1, -1, -1):
            if versions[i].seq <= horizon:
                newest = i
                break
        if not newest:
            return
        floor = versions[newest].commit_ts
        kept = []
        for version in reversed(versions[:newest]):
            if version.commit_ts < floor:
                kept.append(version)
                floor = version.commit_ts
        kept.reverse()
        versions[:newest] = kept

    @property
    def version_count(self) -> int:
        with self._lock:
            return sum(len(v) for d in self._data.values() for v in d.values())

    def iterate(
        self,
        start: str,
        group: Optional[str] = None,
        seq: Optional[int] = None,
    ) -> Iterator[Tuple[str, str]]:
        """Yield live (key, value) pairs in key order from ``start``.

        Reads at ``seq`` (the latest version when None) and re-acquires
        the lock per chunk, so a slow consumer does not block writers.
        Only a ``seq`` held by a live snapshot is guaranteed readable.
        """
        name = self._group(group)
        last: Optional[str] = None
        while True:
            with self._lock:
                keys = self._keys[name]
                if last is None:
                    pos = bisect.bisect_left(keys, start)
                else:
                    pos = bisect.bisect_right(keys, last)
                chunk = []
                for key in keys[pos:pos + self._SCAN_CHUNK]:
                    version = self._visible(self._data[name][key], seq, None)
                    chunk.append((key, None if version is None else version.value))
            if not chunk:
                return
            last = chunk[-1][0]
            for key, value in chunk:
                if value is not None:
                    yield key, value

    def acquire_snapshot(self) -> int:
        with self._lock:
            self._snapshots[self._seq] += 1
            return self._seq

    def release_snapshot(self, seq: int) -> None:
        with self._lock:
            if self._snapshots[seq] <= 0:
                raise ValueError(f"Snapshot at seq {seq} is not live")
            self._snapshots[seq] -= 1
            if self._snapshots[seq] == 0:
                del self._snapshots[seq]

    def force(self, key: str, value: Optional[str], group: Optional[str] = None) -> int:
        """Overwrite ``key`` outside any transaction (fault injection)."""
        logger.debug(f"FORCE {group or DEFAULT_GROUP}/{key} = {value!r}")
        return self.apply([(group, key, value)])


# ---------------------------------------------------------------------------
# Shared transaction machinery
# ---------------------------------------------------------------------------

class TxnState(Enum):
    """Transaction lifecycle states."""
    ACTIVE = auto()
    PREPARED = auto()
    COMMITTED = auto()
    ABORTED = auto()        # commit failed; rollback still expected
    ROLLED_BACK = auto()


class _MemoryTransaction(Transaction):
    """Buffered writes with read-your-own-writes semantics."""

    def __init__(self, backend: _MemoryBackend):
        super().__init__()
        self._backend = backend
        self._store = backend.store
        self._reset()

    def _reset(self) -> None:
        self.name = ""
        self._state = TxnState.ACTIVE
        self._writes: Dict[LockKey, Optional[str]] = {}
        self._snapshot: Optional[Snapshot] = None
        self._started = time.monotonic()
        self._start_seq = self._store.sequence

    @property
    def state(self) -> TxnState:
        return self._state

    @property
    def backend(self) -> _MemoryBackend:
        return self._backend

    def _lock_key(self, key: str, group: Optional[str]) -> LockKey:
        return (DEFAULT_GROUP if group is None else group, key)

    def _inactive(self, writing: bool = False) -> Optional[Status]:
        if self._state is TxnState.ACTIVE:
            return None
        if self._state is TxnState.PREPARED and not writing:
            return None
        return Status.unexpected(
            f"transaction {self.name!r} is {self._state.name.lower()}")

    def _read_buffered(
        self, key: str, group: Optional[str],
    ) -> Tuple[bool, Optional[str], int]:
        """Return (from_buffer, value, version seq)."""
        lk = self._lock_key(key, group)
        if lk in self._writes:
            return True, self._writes[lk], 0
        seq = self._snapshot.seq if self._snapshot is not None else None
        value, vseq = self._store.read_versioned(key, group, seq=seq)
        return False, value, vseq

    @staticmethod
    def _result(value: Optional[str]) -> ReadResult:
        if value is None:
            return ReadResult(Status.not_found())
        return ReadResult(Status.ok(), value)

    def _pending(self) -> List[Write]:
        return [(group, key, value) for (group, key), value in self._writes.items()]

    def _finish(self, state: TxnState) -> None:
        self._state = state
        self._writes = {}
        self._release_snapshot()

    def _release_snapshot(self) -> None:
        if self._snapshot is not None:
            self._backend.release_snapshot(self._snapshot)
            self._snapshot = None

    def rollback(self) -> Status:
        if self._state is TxnState.COMMITTED:
            return Status.unexpected(f"transaction {self.name!r} already committed")
        self._release_guards()
        self._finish(TxnState.ROLLED_BACK)
        return Status.ok()

    def _release_guards(self) -> None:
        """Drop locks/intents held by this transaction."""
        pass


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class _MemoryBackend(Backend):
    """Database-level operations shared by every memory backend."""

    _txn_class: type = None

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        column_groups: Sequence[str] = (),
    ):
        self._store = store if store is not None else MemoryStore(column_groups)

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def column_groups(self) -> Tuple[str, ...]:
        return tuple(g for g in self._store.column_groups if g != DEFAULT_GROUP)

    def get(
        self,
        key: str,
        snapshot: Optional[Snapshot] = None,
        group: Optional[str] = None,
    ) -> ReadResult:
        seq = snapshot.seq if snapshot is not None else None
        return _MemoryTransaction._result(self._store.read(key, group, seq=seq))

    def write(self, batch: WriteBatch) -> Status:
        if len(batch):
            self._store.apply(batch.entries)
        return Status.ok()

    def scan(
        self,
        start: str,
        snapshot: Optional[Snapshot] = None,
        group: Optional[str] = None,
    ) -> Iterator[Tuple[str, str]]:
        seq = snapshot.seq if snapshot is not None else None
        return self._store.iterate(start, group, seq=seq)

    def get_snapshot(self) -> Snapshot:
        return Snapshot(seq=self._store.acquire_snapshot())

    def release_snapshot(self, snapshot: Snapshot) -> None:
        self._store.release_snapshot(snapshot.seq)

    def begin(self, reuse: Optional[Transaction] = None) -> Transaction:
        if self._txn_class is None:
            return super().begin(reuse)
        if isinstance(reuse, self._txn_class) and reuse.backend is self:
            if reuse.state in (TxnState.ACTIVE, TxnState.PREPARED):
                raise ValueError(f"transaction {reuse.name!r} is still open")
            reuse._reset()
            return reuse
        return self._txn_class(self)


class MemoryBatchBackend(_MemoryBackend):
    """Plain key-value store: point reads and atomic batch writes."""

    @property
    def model(self) -> TransactionModel:
        return TransactionModel.BATCH


# -- Pessimistic ------------------------------------------------------------

class _LockTable:
    """Exclusive per-key locks with bounded waits and expiry stealing."""

    def __init__(self, timeout_s: float):
        self._timeout_s = timeout_s
        self._cond = threading.Condition()
        self._owners: Dict[LockKey, PessimisticTransaction] = {}

    @property
    def cond(self) -> threading.Condition:
        return self._cond

    def acquire(self, txn: PessimisticTransaction, lk: LockKey) -> Status:
        deadline = time.monotonic() + self._timeout_s
        with self._cond:
            while True:
                owner = self._owners.get(lk)
                if owner is None or owner is txn or owner.expired:
                    if owner is not None and owner is not txn:
                        logger.debug(f"TXN {txn.name} stole expired lock {lk} from {owner.name}")
                        owner._locks.discard(lk)
                    self._owners[lk] = txn
                    txn._locks.add(lk)
                    return Status.ok()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return Status.conflict(f"TimedOut: lock wait on {lk[1]!r} held by {owner.name}")
                self._cond.wait(remaining)

    def holds(self, txn: PessimisticTransaction, lk: LockKey) -> bool:
        with self._cond:
            return self._owners.get(lk) is txn

    def release_all(self, txn: PessimisticTransaction) -> None:
        with self._cond:
            for lk in txn._locks:
                if self._owners.get(lk) is txn:
                    del self._owners[lk]
            txn._locks.clear()
            self._cond.notify_all()

    @property
    def held(self) -> int:
        with self._cond:
            return len(self._owners)


class PessimisticTransaction(_MemoryTransaction):
    """Lock-based transaction.

    Writes lock the key. A write to a key that was read without a lock
    fails with a conflict if the key changed since it was read; with a
    snapshot set, any key modified after the snapshot conflicts.
    """

    def _reset(self) -> None:
        super()._reset()
        self._locks: Set[LockKey] = set()
        self._read_seqs: Dict[LockKey, int] = {}
        self._expiration_s = self._backend.expiration_s

    @property
    def expired(self) -> bool:
        if self._expiration_s is None:
            return False
        if self._state not in (TxnState.ACTIVE, TxnState.PREPARED):
            return False
        return time.monotonic() - self._started > self._expiration_s

    @property
    def locks(self) -> Tuple[LockKey, ...]:
        return tuple(self._locks)

    def set_snapshot(self) -> None:
        self._release_snapshot()
        self._snapshot = self._backend.get_snapshot()

    def clear_snapshot(self) -> None:
        self._release_snapshot()

    def _validate(self, lk: LockKey) -> Status:
        modified = self._store.last_modified(lk[1], lk[0])
        if self._snapshot is not None and modified > self._snapshot.seq:
            return Status.conflict(f"Busy: {lk[1]!r} modified after snapshot")
        seen = self._read_seqs.get(lk)
        if seen is not None and modified != seen:
            return Status.conflict(f"Busy: {lk[1]!r} modified since read")
        return Status.ok()

    def get(self, key: str, group: Optional[str] = None) -> ReadResult:
        inactive = self._inactive()
        if inactive is not None:
            return ReadResult(inactive)
        buffered, value, vseq = self._read_buffered(key, group)
        if not buffered:
            self._read_seqs.setdefault(self._lock_key(key, group), vseq)
        return self._result(value)

    def get_for_update(self, key: str, group: Optional[str] = None) -> ReadResult:
        inactive = self._inactive(writing=True)
        if inactive is not None:
            return ReadResult(inactive)
        lk = self._lock_key(key, group)
        status = self._backend.locks.acquire(self, lk)
        if not status.is_ok:
            return ReadResult(status)
        status = self._validate(lk)
        if not status.is_ok:
            return ReadResult(status)
        buffered, value, _ = self._read_buffered(key, group)
        if not buffered:
            self._read_seqs[lk] = self._store.last_modified(key, group)
        return self._result(value)

    def _write(self, key: str, value: Optional[str], group: Optional[str]) -> Status:
        inactive = self._inactive(writing=True)
        if inactive is not None:
            return inactive
        lk = self._lock_key(key, group)
        status = self._backend.locks.acquire(self, lk)
        if not status.is_ok:
            return status
        status = self._validate(lk)
        if not status.is_ok:
            return status
        self._writes[lk] = value
        return Status.ok()

    def put(self, key: str, value: str, group: Optional[str] = None) -> Status:
        return self._write(key, value, group)

    def delete(self, key: str, group: Optional[str] = None) -> Status:
        return self._write(key, None, group)

    def prepare(self) -> Status:
        inactive = self._inactive(writing=True)
        if inactive is not None:
            return inactive
        if self.expired:
            return Status.expired(f"transaction {self.name!r} expired before prepare")
        self._state = TxnState.PREPARED
        return Status.ok()

    def commit(self) -> Status:
        inactive = self._inactive()
        if inactive is not None:
            return inactive
        locks = self._backend.locks
        with locks.cond:
            if self.expired:
                locks.release_all(self)
                self._finish(TxnState.ABORTED)
                return Status.expired(f"transaction {self.name!r} expired")
            self._store.apply(self._pending())
            locks.release_all(self)
        self._finish(TxnState.COMMITTED)
        return Status.ok()

    def _release_guards(self) -> None:
        self._backend.locks.release_all(self)


class MemoryPessimisticBackend(_MemoryBackend):
    """Lock-based transactions with optional expiration."""

    _txn_class = PessimisticTransaction

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        column_groups: Sequence[str] = (),
        lock_timeout_ms: float = 50.0,
        expiration_ms: Optional[float] = None,
    ):
        super().__init__(store, column_groups)
        self._locks = _LockTable(lock_timeout_ms / 1000.0)
        self._expiration_s = None if expiration_ms is None else expiration_ms / 1000.0

    @property
    def model(self) -> TransactionModel:
        return TransactionModel.PESSIMISTIC

    @property
    def locks(self) -> _LockTable:
        return self._locks

    @property
    def expiration_s(self) -> Optional[float]:
        return self._expiration_s


# -- Optimistic -------------------------------------------------------------

class OptimisticTransaction(_MemoryTransaction):
    """Lock-free transaction validated at commit.

    Every key read or written is tracked with the version seen first;
    commit fails with a conflict if any of them changed since.
    """

    def _reset(self) -> None:
        super()._reset()
        self._tracked: Dict[LockKey, int] = {}

    def get(self, key: str, group: Optional[str] = None) -> ReadResult:
        inactive = self._inactive()
        if inactive is not None:
            return ReadResult(inactive)
        buffered, value, vseq = self._read_buffered(key, group)
        if not buffered:
            self._tracked.setdefault(self._lock_key(key, group), vseq)
        return self._result(value)

    def _write(self, key: str, value: Optional[str], group: Optional[str]) -> Status:
        inactive = self._inactive(writing=True)
        if inactive is not None:
            return inactive
        lk = self._lock_key(key, group)
        if lk not in self._tracked:
            self._tracked[lk] = self._store.last_modified(key, group)
        self._writes[lk] = value
        return Status.ok()

    def put(self, key: str, value: str, group: Optional[str] = None) -> Status:
        return self._write(key, value, group)

    def delete(self, key: str, group: Optional[str] = None) -> Status:
        return self._write(key, None, group)

    def _unchanged(self) -> bool:
        return all(
            self._store.last_modified(key, group) == seen
            for (group, key), seen in self._tracked.items()
        )

    def commit(self) -> Status:
        inactive = self._inactive()
        if inactive is not None:
            return inactive
        seq = self._store.apply(self._pending(), validate=self._unchanged)
        if seq is None:
            self._finish(TxnState.ABORTED)
            return Status.conflict(f"Busy: write conflict in {self.name!r}")
        self._finish(TxnState.COMMITTED)
        return Status.ok()


class MemoryOptimisticBackend(_MemoryBackend):
    """Optimistic transactions: conflicts are detected only at commit."""

    _txn_class = OptimisticTransaction

    @property
    def model(self) -> TransactionModel:
        return TransactionModel.OPTIMISTIC


# -- Timestamp-ordered ------------------------------------------------------

class TimestampTransaction(_MemoryTransaction):
    """Timestamp-ordered transaction.

    Reads see data committed at or before the read timestamp. A write
    conflicts if another open transaction already intends to write the
    key, or if the key was committed after this transaction began.
    """

    def _reset(self) -> None:
        super()._reset()
        self._read_ts: Optional[int] = None
        self._commit_ts: Optional[int] = None
        self._intents: Set[LockKey] = set()

    def set_read_timestamp(self, ts: Optional[int]) -> Status:
        inactive = self._inactive()
        if inactive is not None:
            return inactive
        if ts is not None and ts < 0:
            return Status.unexpected(f"invalid read timestamp {ts}")
        self._read_ts = None if ts is None or ts >= MAX_VALUE else ts
        return Status.ok()

    def set_commit_timestamp(self, ts: int) -> Status:
        inactive = self._inactive()
        if inactive is not None:
            return inactive
        if ts < 0:
            return Status.unexpected(f"invalid commit timestamp {ts}")
        self._commit_ts = ts
        return Status.ok()

    def get(self, key: str, group: Optional[str] = None) -> ReadResult:
        inactive = self._inactive()
        if inactive is not None:
            return ReadResult(inactive)
        lk = self._lock_key(key, group)
        if lk in self._writes:
            return self._result(self._writes[lk])
        return self._result(self._store.read(key, group, read_ts=self._read_ts))

    def _write(self, key: str, value: Optional[str], group: Optional[str]) -> Status:
        inactive = self._inactive(writing=True)
        if inactive is not None:
            return inactive
        lk = self._lock_key(key, group)
        status = self._backend.claim(self, lk)
        if not status.is_ok:
            return status
        self._intents.add(lk)
        self._writes[lk] = value
        return Status.ok()

    def put(self, key: str, value: str, group: Optional[str] = None) -> Status:
        return self._write(key, value, group)

    def delete(self, key: str, group: Optional[str] = None) -> Status:
        return self._write(key, None, group)

    @property
    def start_seq(self) -> int:
        return self._start_seq

    def commit(self) -> Status:
        inactive = self._inactive()
        if inactive is not None:
            return inactive
        self._store.apply(self._pending(), commit_ts=self._commit_ts or 0)
        self._release_guards()
        self._finish(TxnState.COMMITTED)
        return Status.ok()

    def _release_guards(self) -> None:
        self._backend.release(self, self._intents)
        self._intents = set()


class MemoryTimestampBackend(_MemoryBackend):
    """Timestamp-ordered transactions over several column groups."""

    _txn_class = TimestampTransaction

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        column_groups: Sequence[str] = (),
    ):
        super().__init__(store, column_groups)
        self._intent_lock = threading.Lock()
        self._intents: Dict[LockKey, TimestampTransaction] = {}

    @property
    def model(self) -> TransactionModel:
        return TransactionModel.TIMESTAMP

    def claim(self, txn: TimestampTransaction, lk: LockKey) -> Status:
        """Register ``txn``'s intent to write ``lk``."""
        with self._intent_lock:
            owner = self._intents.get(lk)
            if owner is not None and owner is not txn:
                return Status.conflict(f"Busy: write-write conflict on {lk[1]!r} with {owner.name}")
            if self._store.last_modified(lk[1], lk[0]) > txn.start_seq:
                return Status.conflict(f"Busy: {lk[1]!r} committed after transaction start")
            self._intents[lk] = txn
            return Status.ok()

    def release(self, txn: TimestampTransaction, keys: Set[LockKey]) -> None:
        with self._intent_lock:
            for lk in keys:
                if self._intents.get(lk) is txn:
                    del self._intents[lk]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_VALID_MODELS = frozenset(m.value for m in TransactionModel)


def create_backend(
    model: str | TransactionModel,
    store: Optional[MemoryStore] = None,
    column_groups: Sequence[str] = (),
    lock_timeout_ms: float = 50.0,
    expiration_ms: Optional[float] = None,
) -> Backend:
    """Factory function to create an in-memory backend.

    Args:
        model: One of 'batch', 'pessimistic', 'optimistic', 'timestamp'.
        store: Existing store to share; a new one is created if None.
        column_groups: Extra column groups for a new store.
        lock_timeout_ms: Lock wait bound (pessimistic only).
        expiration_ms: Transaction expiration (pessimistic only).

    Returns:
        Configured Backend instance.
    """
    if isinstance(model, str):
        if model not in _VALID_MODELS:
            raise ValueError(
                f"Unknown transaction model: {model!r}. Valid: {sorted(_VALID_MODELS)}"
            )
        model = TransactionModel(model)

    if model is TransactionModel.BATCH:
        return MemoryBatchBackend(store, column_groups)
    if model is TransactionModel.PESSIMISTIC:
        return MemoryPessimisticBackend(
            store, column_groups,
            lock_timeout_ms=lock_timeout_ms,
            expiration_ms=expiration_ms,
        )
    if model is TransactionModel.OPTIMISTIC:
        return MemoryOptimisticBackend(store, column_groups)
    return MemoryTimestampBackend(store, column_groups)
