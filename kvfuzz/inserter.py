"""Randomized transaction generator.

A TransactionInserter runs one randomized transaction per call against
a Backend. Two workloads are supported:

- run_one(): read-modify-write. One random increment is added to one
  random key in every set, so all set totals stay equal as long as the
  backend's transactions are atomic and isolated.
- write_random(): read/delete/put mix over a random subset of sets with
  generated values, routed to column groups by key.

Every non-OK outcome is classified with the backend's FailurePolicy.
Expected conflicts roll the transaction back and count as a failure;
anything else is an unexpected error and makes the call return False.

An inserter and the transaction handle it recycles belong to a single
thread. Statistics and TransactionIds may be shared between threads.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from kvfuzz.backend import Backend, FailurePolicy, Transaction, WriteBatch
from kvfuzz.keyspace import (
    MAX_SETS,
    MAX_VALUE,
    column_group_of,
    compress_key,
    decode_value,
    encode_key,
    encode_value,
    is_reserved_value,
)
from kvfuzz.stats import Statistics, TransactionRecord
from kvfuzz.status import Outcome, Status, UnsupportedOperationError

logger = logging.getLogger(__name__)

MAX_INCREMENT = 100
DEFAULT_VALUE_SIZE = 1000
# Soft cap on bytes written by one write_random() transaction.
MAX_TXN_BYTES = 15_000_000
# 1 in N transactions skips prepare on backends that support it.
SKIP_PREPARE_ONE_IN = 10
# 1 in N otherwise successful transactions is rolled back on purpose.
ROLLBACK_ONE_IN = 20


class TransactionIds:
    """Unique, diagnostic-only transaction names shared by workers."""

    def __init__(self, prefix: str = "txn"):
        self._prefix = prefix
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def next_name(self, worker: int = 0) -> str:
        with self._lock:
            n = next(self._counter)
        return f"{self._prefix}{worker}-{n}"


class ValueGenerator:
    """Fixed-size values cut from a reusable block of random letters."""

    def __init__(self, seed: int = 301, buffer_size: int = 1 << 20):
        rng = np.random.RandomState(seed)
        letters = rng.randint(ord("a"), ord("z") + 1, size=buffer_size, dtype=np.uint8)
        self._data = letters.tobytes().decode("ascii")
        self._pos = 0

    def generate(self, length: int) -> str:
        if length > len(self._data):
            raise ValueError(f"value length {length} exceeds buffer size {len(self._data)}")
        if self._pos + length > len(self._data):
            self._pos = 0
        self._pos += length
        return self._data[self._pos - length:self._pos]


@dataclass
class _Tally:
    """Per-transaction operation counts."""
    sets_touched: int = 0
    gets: int = 0
    puts: int = 0
    deletes: int = 0
    found: int = 0
    bytes_inserted: int = 0
    bytes_read: int = 0


class TransactionInserter:
    """Runs randomized transactions against one backend.

    Args:
        backend: Store under test.
        stats: Session statistics (shared across workers).
        rng: Seeded random state; every random choice is drawn from it.
        num_keys: Logical keys per set.
        num_sets: Number of sets (at most 9999).
        read_percent: write_random() read share, in percent.
        delete_percent: write_random() delete share, in percent.
        conflict_level: Each level divides drawn keys by 10, raising
            contention.
        value_size: Size of generated values in write_random().
        txn_ids: Name generator (shared across workers).
        worker: Worker index, used in transaction names.
        clock: Commit timestamp source for timestamp-ordered backends.
    """

    def __init__(
        self,
        backend: Backend,
        stats: Optional[Statistics] = None,
        rng: Optional[np.random.RandomState] = None,
        num_keys: int = 1000,
        num_sets: int = 3,
        read_percent: int = 0,
        delete_percent: int = 0,
        conflict_level: int = 0,
        value_size: int = DEFAULT_VALUE_SIZE,
        txn_ids: Optional[TransactionIds] = None,
        worker: int = 0,
        clock: Optional[Callable[[], int]] = None,
    ):
        if not 1 <= num_sets <= MAX_SETS:
            raise ValueError(f"num_sets must be in [1, {MAX_SETS}], got {num_sets}")
        if num_keys < 1:
            raise ValueError(f"num_keys must be >= 1, got {num_keys}")
        if read_percent < 0 or delete_percent < 0 or read_percent + delete_percent > 100:
            raise ValueError(
                f"read_percent ({read_percent}) and delete_percent ({delete_percent}) "
                f"must be >= 0 and sum to <= 100"
            )
        if conflict_level < 0:
            raise ValueError(f"conflict_level must be >= 0, got {conflict_level}")

        self._backend = backend
        self._stats = stats if stats is not None else Statistics()
        self._rng = rng if rng is not None else np.random.RandomState()
        self._num_keys = num_keys
        self._num_sets = num_sets
        self._read_percent = read_percent
        self._delete_percent = delete_percent
        self._conflict_level = conflict_level
        self._value_size = value_size
        self._txn_ids = txn_ids if txn_ids is not None else TransactionIds()
        self._worker = worker
        self._clock = clock if clock is not None else (lambda: int(time.time()))

        self._txn: Optional[Transaction] = None
        self._values: Optional[ValueGenerator] = None
        self.last_status: Optional[Status] = None

    @property
    def stats(self) -> Statistics:
        return self._stats

    @property
    def backend(self) -> Backend:
        return self._backend

    # ------------------------------------------------------------------
    # Random helpers
    # ------------------------------------------------------------------

    def _one_in(self, n: int) -> bool:
        return int(self._rng.randint(n)) == 0

    def _random_key(self) -> int:
        key = int(self._rng.randint(0, self._num_keys, dtype=np.int64))
        return compress_key(key, self._conflict_level)

    def _begin(self) -> Transaction:
        """Start a transaction on the recycled handle."""
        self._txn = self._backend.begin(self._txn)
        self._txn.name = self._txn_ids.next_name(self._worker)
        return self._txn

    # ------------------------------------------------------------------
    # Read-modify-write workload
    # ------------------------------------------------------------------

    def run_one(self) -> bool:
        """Run one read-modify-write transaction.

        Returns False only if an unexpected error occurred; expected
        conflicts and rollbacks return True.
        """
        backend = self._backend
        if not backend.supports_transactions:
            return self._increment(None)

        txn = self._begin()
        if backend.uses_timestamps:
            status = txn.set_read_timestamp(MAX_VALUE)
            if not status.is_ok:
                logger.error(f"TXN {txn.name} set_read_timestamp returned an unexpected error: {status}")
                return self._abandon(txn, status, "increment", _Tally(), time.perf_counter())
            return self._increment(txn)

        if backend.supports_snapshot and self._one_in(2):
            txn.set_snapshot()
            try:
                return self._increment(txn)
            finally:
                txn.clear_snapshot()
        return self._increment(txn)

    def _read_counter(
        self,
        txn: Optional[Transaction],
        key: str,
        for_update: bool,
        tally: _Tally,
    ) -> Tuple[Status, int]:
        """Read a counter; absent keys read as 0."""
        if txn is None:
            result = self._backend.get(key)
        elif for_update:
            result = txn.get_for_update(key)
        else:
            result = txn.get(key)
        tally.gets += 1

        if result.status.is_not_found:
            return Status.ok(), 0
        if not result.found:
            return result.status, 0

        tally.found += 1
        tally.bytes_read += len(key) + len(result.value)
        try:
            value = decode_value(result.value)
        except ValueError:
            value = None
        if value is None or is_reserved_value(value):
            logger.error(f"Get returned unexpected value for {key!r}: {result.value[:32]!r}")
            return Status.corruption(f"{key!r} holds {result.value[:32]!r}"), 0
        return Status.ok(), value

    def _increment(self, txn: Optional[Transaction]) -> bool:
        started = time.perf_counter()
        backend = self._backend
        policy = backend.policy
        tally = _Tally()
        name = txn.name if txn is not None else "batch"
        batch = WriteBatch() if txn is None else None

        incr = int(self._rng.randint(MAX_INCREMENT)) + 1
        status = Status.ok()
        unexpected = False

        for set_id in self._rng.permutation(self._num_sets):
            key = encode_key(int(set_id), self._random_key())
            for_update = (
                txn is not None
                and backend.supports_get_for_update
                and self._one_in(2)
            )
            status, value = self._read_counter(txn, key, for_update, tally)
            if not status.is_ok:
                if status.outcome is Outcome.CORRUPTION or not policy.read_is_expected(status):
                    logger.error(f"TXN {name} get returned an unexpected error: {status}")
                    unexpected = True
                else:
                    logger.debug(f"TXN {name} get conflict: {status}")
                break

            new_value = encode_value(value + incr)
            if txn is None:
                batch.put(key, new_value)
            else:
                status = txn.put(key, new_value)
                if not status.is_ok:
                    if policy.write_is_expected(status, locked=for_update):
                        logger.debug(f"TXN {name} put conflict: {status}")
                    else:
                        logger.error(f"TXN {name} put returned an unexpected error: {status}")
                        unexpected = True
                    break
            tally.puts += 1
            tally.sets_touched += 1
            tally.bytes_inserted += len(key) + len(new_value)

        committed = rolled_back = False
        if status.is_ok and txn is None:
            status = backend.write(batch)
            if status.is_ok:
                committed = True
            else:
                unexpected = unexpected or not policy.batch_write_is_expected(status)
                logger.error(f"Write returned an unexpected error: {status}")
        elif status.is_ok:
            status, committed, rolled_back, unexpected = self._finalize(txn, policy)
        elif txn is not None:
            rolled_back = True
            unexpected = self._rollback(txn) or unexpected

        return self._finish(
            name, "increment", status, committed, rolled_back, unexpected, tally, started,
        )

    def _finalize(
        self,
        txn: Transaction,
        policy: FailurePolicy,
    ) -> Tuple[Status, bool, bool, bool]:
        """Prepare/commit or deliberately roll back a clean transaction.

        Returns (status, committed, rolled_back, unexpected).
        """
        backend = self._backend
        if backend.supports_prepare and not self._one_in(SKIP_PREPARE_ONE_IN):
            status = txn.prepare()
            if not status.is_ok:
                return self._commit_failed(txn, policy, status, "prepare")

        if backend.uses_timestamps:
            status = txn.set_commit_timestamp(self._clock())
            if not status.is_ok:
                logger.error(f"TXN {txn.name} set_commit_timestamp returned an unexpected error: {status}")
                self._rollback(txn)
                return status, False, True, True

        if self._one_in(ROLLBACK_ONE_IN):
            status = txn.rollback()
            if not status.is_ok:
                logger.error(f"TXN {txn.name} rollback returned an unexpected error: {status}")
            return status, False, True, not status.is_ok

        status = txn.commit()
        if status.is_ok:
            return status, True, False, False
        return self._commit_failed(txn, policy, status, "commit")

    def _commit_failed(
        self,
        txn: Transaction,
        policy: FailurePolicy,
        status: Status,
        stage: str,
    ) -> Tuple[Status, bool, bool, bool]:
        unexpected = not policy.commit_is_expected(status)
        if unexpected:
            logger.error(f"TXN {txn.name} {stage} returned an unexpected error: {status}")
        else:
            logger.debug(f"TXN {txn.name} {stage} failed: {status}")
        unexpected = self._rollback(txn) or unexpected
        return status, False, True, unexpected

    def _rollback(self, txn: Transaction) -> bool:
        """Roll back after a failure; True if the rollback itself failed."""
        status = txn.rollback()
        if not status.is_ok:
            logger.error(f"TXN {txn.name} rollback returned an unexpected error: {status}")
            return True
        return False

    def _abandon(
        self,
        txn: Transaction,
        status: Status,
        mode: str,
        tally: _Tally,
        started: float,
    ) -> bool:
        self._rollback(txn)
        return self._finish(txn.name, mode, status, False, True, True, tally, started)

    def _finish(
        self,
        name: str,
        mode: str,
        status: Status,
        committed: bool,
        rolled_back: bool,
        unexpected: bool,
        tally: _Tally,
        started: float,
    ) -> bool:
        self.last_status = status
        self._stats.record(TransactionRecord(
            txn_name=name,
            model=self._backend.name,
            mode=mode,
            status=status,
            committed=committed,
            rolled_back=rolled_back,
            unexpected=unexpected,
            sets_touched=tally.sets_touched,
            gets=tally.gets,
            puts=tally.puts,
            deletes=tally.deletes,
            found=tally.found,
            bytes_inserted=tally.bytes_inserted,
            bytes_read=tally.bytes_read,
            latency_us=int((time.perf_counter() - started) * 1_000_000),
        ))
        return not unexpected

    # ------------------------------------------------------------------
    # Read/delete/put mix
    # ------------------------------------------------------------------

    def write_random(self) -> bool:
        """Run one transaction of random reads, deletes and puts.

        Touches a random number of sets. Each key is routed to the column
        group column_group_of(key, n) of the backend's column groups. The
        loop stops early once MAX_TXN_BYTES have been written.

        Returns False only if an unexpected error occurred.
        """
        backend = self._backend
        if not backend.supports_transactions:
            raise UnsupportedOperationError(
                f"{backend.name} backend does not support transactions")
        if self._values is None:
            self._values = ValueGenerator()

        started = time.perf_counter()
        policy = backend.policy
        tally = _Tally()
        txn = self._begin()

        if backend.uses_timestamps:
            status = txn.set_commit_timestamp(self._clock())
            if status.is_ok:
                status = txn.set_read_timestamp(MAX_VALUE)
            if not status.is_ok:
                logger.error(f"TXN {txn.name} timestamp setup returned an unexpected error: {status}")
                return self._abandon(txn, status, "write_random", tally, started)

        groups = backend.column_groups
        n_sets = int(self._rng.randint(self._num_sets)) + 1
        status = Status.ok()
        unexpected = False

        for set_id in self._rng.permutation(self._num_sets)[:n_sets]:
            draw = int(self._rng.randint(100))
            ikey = self._random_key()
            group = groups[column_group_of(ikey, len(groups))] if groups else None
            key = encode_key(int(set_id), ikey)
            tally.sets_touched += 1

            if draw < self._read_percent:
                result = txn.get(key, group)
                tally.gets += 1
                if result.found:
                    tally.found += 1
                    tally.bytes_read += len(key) + len(result.value)
                elif not result.status.is_not_found:
                    status = result.status
                    if policy.read_is_expected(status):
                        logger.debug(f"TXN {txn.name} get conflict: {status}")
                    else:
                        logger.error(f"TXN {txn.name} get returned an unexpected error: {status}")
                        unexpected = True
                    break
            else:
                if draw < self._read_percent + self._delete_percent:
                    status = txn.delete(key, group)
                    tally.deletes += 1
                else:
                    status = txn.put(key, self._values.generate(self._value_size), group)
                    tally.puts += 1
                tally.bytes_inserted += len(key) + self._value_size
                if not status.is_ok:
                    if policy.write_is_expected(status, locked=False):
                        logger.debug(f"TXN {txn.name} write conflict: {status}")
                    else:
                        logger.error(f"TXN {txn.name} write returned an unexpected error: {status}")
                        unexpected = True
                    break

            if tally.bytes_inserted > MAX_TXN_BYTES:
                logger.warning(f"TXN {txn.name} operation size exceeds {MAX_TXN_BYTES} bytes, stopping early")
                break

        committed = rolled_back = False
        if status.is_ok:
            status = txn.commit()
            if status.is_ok:
                committed = True
            else:
                _, _, rolled_back, unexpected = self._commit_failed(txn, policy, status, "commit")
        else:
            rolled_back = True
            unexpected = self._rollback(txn) or unexpected

        if not status.is_ok:
            # Volume only counts for transactions that went through.
            tally.bytes_inserted = 0
            tally.bytes_read = 0
        return self._finish(
            txn.name, "write_random", status, committed, rolled_back, unexpected, tally, started,
        )
