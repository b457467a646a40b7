"""Tests for kvfuzz.memory, the in-memory reference engine.

Tests:
- MemoryStore: versioned reads, snapshots, ordered iteration, column groups
- Pessimistic: lock timeouts, stale-read detection, snapshots, expiration
- Optimistic: commit-time validation
- Timestamp: write intents, start-time conflicts, read timestamps
- Handle reuse and rollback semantics shared by every model
- Factory
"""

import time

import pytest

from kvfuzz.backend import TransactionModel
from kvfuzz.keyspace import MAX_VALUE, encode_key
from kvfuzz.memory import (
    MemoryOptimisticBackend,
    MemoryPessimisticBackend,
    MemoryStore,
    MemoryTimestampBackend,
    TxnState,
    create_backend,
)
from kvfuzz.status import Outcome


KEY = encode_key(0, 1)


def commit_value(backend, key, value, group=None):
    """Write one key in its own committed transaction."""
    txn = backend.begin()
    assert txn.put(key, value, group).is_ok
    assert txn.commit().is_ok


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class TestMemoryStore:

    def test_apply_assigns_one_sequence(self):
        store = MemoryStore()
        seq = store.apply([(None, "a", "1"), (None, "b", "2")])
        assert seq == 1
        assert store.sequence == 1
        assert store.last_modified("a") == 1
        assert store.last_modified("b") == 1

    def test_read_missing(self):
        store = MemoryStore()
        assert store.read("nope") is None
        assert store.read_versioned("nope") == (None, 0)

    def test_tombstone_reads_as_missing(self):
        store = MemoryStore()
        store.apply([(None, "a", "1")])
        store.apply([(None, "a", None)])
        assert store.read("a") is None
        assert store.last_modified("a") == 2

    def test_read_at_sequence(self):
        store = MemoryStore()
        store.apply([(None, "a", "1")])
        seq = store.acquire_snapshot()
        store.apply([(None, "a", "2")])
        assert store.read("a", seq=seq) == "1"
        assert store.read("a") == "2"
        store.release_snapshot(seq)

    def test_versions_pruned_without_snapshots(self):
        store = MemoryStore()
        for i in range(1, 6):
            store.apply([(None, "a", str(i))])
        assert store.version_count == 1
        assert store.read("a") == "5"

    def test_snapshot_keeps_its_versions(self):
        store = MemoryStore()
        store.apply([(None, "a", "1")])
        seq = store.acquire_snapshot()
        for i in range(2, 5):
            store.apply([(None, "a", str(i))])
        assert store.version_count == 4
        assert store.read("a", seq=seq) == "1"
        store.release_snapshot(seq)
        store.apply([(None, "a", "5")])
        assert store.version_count == 1

    def test_older_commit_timestamps_kept(self):
        store = MemoryStore()
        store.apply([(None, "a", "1")], commit_ts=10)
        store.apply([(None, "a", "2")], commit_ts=20)
        assert store.version_count == 2
        assert store.read("a", read_ts=15) == "1"

    def test_unsnapshotted_scan_reads_latest(self):
        store = MemoryStore()
        store.apply([(None, f"k{i:04d}", "1") for i in range(600)])
        it = store.iterate("")
        next(it)
        store.apply([(None, "k0599", "2")])
        assert list(it)[-1] == ("k0599", "2")

    def test_read_at_timestamp(self):
        store = MemoryStore()
        store.apply([(None, "a", "1")], commit_ts=10)
        store.apply([(None, "a", "2")], commit_ts=20)
        assert store.read("a", read_ts=5) is None
        assert store.read("a", read_ts=15) == "1"
        assert store.read("a", read_ts=25) == "2"

    def test_failed_validation_leaves_store_untouched(self):
        store = MemoryStore()
        assert store.apply([(None, "a", "1")], validate=lambda: False) is None
        assert store.sequence == 0
        assert store.read("a") is None

    def test_snapshot_refcount(self):
        store = MemoryStore()
        s1 = store.acquire_snapshot()
        s2 = store.acquire_snapshot()
        assert s1 == s2
        assert store.live_snapshots == 2
        store.release_snapshot(s1)
        store.release_snapshot(s2)
        assert store.live_snapshots == 0

    def test_double_release_rejected(self):
        store = MemoryStore()
        seq = store.acquire_snapshot()
        store.release_snapshot(seq)
        with pytest.raises(ValueError):
            store.release_snapshot(seq)

    def test_iterate_in_key_order(self):
        store = MemoryStore()
        store.apply([(None, k, "1") for k in ["c", "a", "d", "b"]])
        assert [k for k, _ in store.iterate("")] == ["a", "b", "c", "d"]
        assert [k for k, _ in store.iterate("b")] == ["b", "c", "d"]

    def test_iterate_skips_tombstones(self):
        store = MemoryStore()
        store.apply([(None, "a", "1"), (None, "b", "2")])
        store.apply([(None, "a", None)])
        assert list(store.iterate("")) == [("b", "2")]

    def test_iterate_is_stable_under_writes(self):
        store = MemoryStore()
        store.apply([(None, f"k{i:04d}", "1") for i in range(600)])
        seq = store.acquire_snapshot()
        it = store.iterate("", seq=seq)
        first = next(it)
        store.apply([(None, "k0000a", "new"), (None, "k0300", "2")])
        rest = list(it)
        seen = [first] + rest
        assert len(seen) == 600
        assert all(v == "1" for _, v in seen)
        store.release_snapshot(seq)

    def test_column_groups_are_separate(self):
        store = MemoryStore(column_groups=["cf1"])
        assert store.column_groups == ("default", "cf1")
        store.apply([("cf1", "a", "1")])
        assert store.read("a", "cf1") == "1"
        assert store.read("a") is None

    def test_unknown_group_rejected(self):
        store = MemoryStore()
        with pytest.raises(ValueError):
            store.read("a", "cf9")
        with pytest.raises(ValueError):
            store.apply([("cf9", "a", "1")])

    def test_force(self):
        store = MemoryStore()
        store.force("a", "0")
        assert store.read("a") == "0"


# ---------------------------------------------------------------------------
# Shared transaction behavior
# ---------------------------------------------------------------------------

TRANSACTIONAL = ["pessimistic", "optimistic", "timestamp"]


class TestTransactionLifecycle:

    @pytest.mark.parametrize("model", TRANSACTIONAL)
    def test_read_your_own_writes(self, model):
        backend = create_backend(model)
        txn = backend.begin()
        txn.put(KEY, "7")
        assert txn.get(KEY).value == "7"
        assert not backend.get(KEY).found
        txn.delete(KEY)
        assert txn.get(KEY).status.is_not_found
        txn.rollback()

    @pytest.mark.parametrize("model", TRANSACTIONAL)
    def test_rollback_has_no_effect(self, model):
        backend = create_backend(model)
        commit_value(backend, KEY, "5")
        seq = backend.store.sequence
        txn = backend.begin()
        txn.put(KEY, "9")
        txn.put(encode_key(1, 1), "9")
        assert txn.rollback().is_ok
        assert txn.state is TxnState.ROLLED_BACK
        assert backend.get(KEY).value == "5"
        assert not backend.get(encode_key(1, 1)).found
        assert backend.store.sequence == seq

    @pytest.mark.parametrize("model", TRANSACTIONAL)
    def test_rollback_after_commit_is_unexpected(self, model):
        backend = create_backend(model)
        txn = backend.begin()
        txn.put(KEY, "1")
        txn.commit()
        assert txn.rollback().outcome is Outcome.UNEXPECTED

    @pytest.mark.parametrize("model", TRANSACTIONAL)
    def test_finished_handle_is_reused(self, model):
        backend = create_backend(model)
        txn = backend.begin()
        txn.name = "first"
        txn.commit()
        again = backend.begin(txn)
        assert again is txn
        assert again.state is TxnState.ACTIVE
        assert again.name == ""

    @pytest.mark.parametrize("model", TRANSACTIONAL)
    def test_open_handle_cannot_be_reused(self, model):
        backend = create_backend(model)
        txn = backend.begin()
        with pytest.raises(ValueError):
            backend.begin(txn)

    def test_foreign_handle_is_not_reused(self):
        a = create_backend("optimistic")
        b = create_backend("optimistic")
        txn = a.begin()
        txn.commit()
        assert b.begin(txn) is not txn


# ---------------------------------------------------------------------------
# Pessimistic
# ---------------------------------------------------------------------------

class TestPessimistic:

    def test_lock_wait_times_out(self):
        backend = MemoryPessimisticBackend(lock_timeout_ms=5)
        t1 = backend.begin()
        t2 = backend.begin()
        assert t1.put(KEY, "1").is_ok
        status = t2.put(KEY, "2")
        assert status.outcome is Outcome.CONFLICT
        assert "TimedOut" in status.message
        t1.rollback()
        t2.rollback()

    def test_get_for_update_blocks_writers(self):
        backend = MemoryPessimisticBackend(lock_timeout_ms=5)
        t1 = backend.begin()
        t2 = backend.begin()
        assert t1.get_for_update(KEY).status.is_not_found
        assert t2.get_for_update(KEY).status.outcome is Outcome.CONFLICT
        t1.rollback()
        assert t2.get_for_update(KEY).status.is_not_found
        t2.rollback()

    def test_stale_unlocked_read_conflicts_on_write(self):
        backend = MemoryPessimisticBackend()
        t1 = backend.begin()
        assert t1.get(KEY).status.is_not_found
        commit_value(backend, KEY, "5")
        status = t1.put(KEY, "1")
        assert status.outcome is Outcome.CONFLICT
        assert "Busy" in status.message
        t1.rollback()

    def test_snapshot_conflicts_on_later_write(self):
        backend = MemoryPessimisticBackend()
        t1 = backend.begin()
        t1.set_snapshot()
        commit_value(backend, KEY, "5")
        assert t1.get(KEY).status.is_not_found
        assert t1.get_for_update(KEY).status.outcome is Outcome.CONFLICT
        t1.clear_snapshot()
        t1.rollback()

    def test_snapshot_released_on_finish(self):
        backend = MemoryPessimisticBackend()
        txn = backend.begin()
        txn.set_snapshot()
        assert backend.store.live_snapshots == 1
        txn.commit()
        assert backend.store.live_snapshots == 0
        txn.clear_snapshot()
        assert backend.store.live_snapshots == 0

    def test_locks_released_on_commit_and_rollback(self):
        backend = MemoryPessimisticBackend()
        t1 = backend.begin()
        t1.put(KEY, "1")
        t1.put(encode_key(1, 1), "1")
        assert backend.locks.held == 2
        t1.commit()
        assert backend.locks.held == 0
        t2 = backend.begin()
        t2.get_for_update(KEY)
        t2.rollback()
        assert backend.locks.held == 0

    def test_prepare_then_commit(self):
        backend = MemoryPessimisticBackend()
        txn = backend.begin()
        txn.put(KEY, "3")
        assert txn.prepare().is_ok
        assert txn.state is TxnState.PREPARED
        assert txn.put(KEY, "4").outcome is Outcome.UNEXPECTED
        assert txn.commit().is_ok
        assert backend.get(KEY).value == "3"

    def test_expired_lock_is_stolen(self):
        backend = MemoryPessimisticBackend(lock_timeout_ms=5, expiration_ms=20)
        t1 = backend.begin()
        assert t1.put(KEY, "1").is_ok
        time.sleep(0.05)
        assert t1.expired
        t2 = backend.begin()
        assert t2.put(KEY, "2").is_ok
        assert KEY not in [k for _, k in t1.locks]
        status = t1.commit()
        assert status.outcome is Outcome.EXPIRED
        assert t1.state is TxnState.ABORTED
        assert t1.rollback().is_ok
        t2.rollback()
        assert not backend.get(KEY).found

    def test_expired_prepare(self):
        backend = MemoryPessimisticBackend(expiration_ms=1)
        txn = backend.begin()
        txn.put(KEY, "1")
        time.sleep(0.01)
        assert txn.prepare().outcome is Outcome.EXPIRED
        txn.rollback()
        assert not backend.get(KEY).found


# ---------------------------------------------------------------------------
# Optimistic
# ---------------------------------------------------------------------------

class TestOptimistic:

    def test_commit_conflict_after_concurrent_write(self):
        backend = MemoryOptimisticBackend()
        t1 = backend.begin()
        t1.get(KEY)
        commit_value(backend, KEY, "5")
        assert t1.put(KEY, "1").is_ok
        status = t1.commit()
        assert status.outcome is Outcome.CONFLICT
        assert t1.state is TxnState.ABORTED
        assert t1.rollback().is_ok
        assert backend.get(KEY).value == "5"

    def test_blind_write_conflict(self):
        backend = MemoryOptimisticBackend()
        t1 = backend.begin()
        t1.put(KEY, "1")
        commit_value(backend, KEY, "5")
        assert t1.commit().outcome is Outcome.CONFLICT

    def test_untouched_keys_do_not_conflict(self):
        backend = MemoryOptimisticBackend()
        t1 = backend.begin()
        t1.get(KEY)
        commit_value(backend, encode_key(1, 1), "5")
        t1.put(KEY, "1")
        assert t1.commit().is_ok
        assert backend.get(KEY).value == "1"


# ---------------------------------------------------------------------------
# Timestamp-ordered
# ---------------------------------------------------------------------------

class TestTimestamp:

    def test_write_intent_conflict(self):
        backend = MemoryTimestampBackend()
        t1 = backend.begin()
        t2 = backend.begin()
        assert t1.put(KEY, "1").is_ok
        status = t2.put(KEY, "2")
        assert status.outcome is Outcome.CONFLICT
        t2.rollback()
        assert t1.commit().is_ok

    def test_intent_released_after_rollback(self):
        backend = MemoryTimestampBackend()
        t1 = backend.begin()
        t1.put(KEY, "1")
        t1.rollback()
        t2 = backend.begin()
        assert t2.put(KEY, "2").is_ok
        t2.commit()

    def test_commit_after_start_conflicts(self):
        backend = MemoryTimestampBackend()
        t1 = backend.begin()
        commit_value(backend, KEY, "5")
        assert t1.put(KEY, "1").outcome is Outcome.CONFLICT
        t1.rollback()

    def test_read_timestamp(self):
        backend = MemoryTimestampBackend()
        writer = backend.begin()
        writer.set_commit_timestamp(100)
        writer.put(KEY, "5")
        writer.commit()

        reader = backend.begin()
        reader.set_read_timestamp(50)
        assert reader.get(KEY).status.is_not_found
        reader.set_read_timestamp(MAX_VALUE)
        assert reader.get(KEY).value == "5"
        reader.rollback()

    def test_negative_timestamps_rejected(self):
        txn = MemoryTimestampBackend().begin()
        assert txn.set_read_timestamp(-1).outcome is Outcome.UNEXPECTED
        assert txn.set_commit_timestamp(-1).outcome is Outcome.UNEXPECTED

    def test_column_groups(self):
        backend = MemoryTimestampBackend(column_groups=["cf1", "cf2"])
        assert backend.column_groups == ("cf1", "cf2")
        commit_value(backend, KEY, "5", group="cf2")
        assert backend.get(KEY, group="cf2").value == "5"
        assert not backend.get(KEY, group="cf1").found
        assert not backend.get(KEY).found

    def test_same_key_in_different_groups_does_not_conflict(self):
        backend = MemoryTimestampBackend(column_groups=["cf1", "cf2"])
        t1 = backend.begin()
        t2 = backend.begin()
        assert t1.put(KEY, "1", "cf1").is_ok
        assert t2.put(KEY, "2", "cf2").is_ok
        assert t1.commit().is_ok
        assert t2.commit().is_ok


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestCreateBackend:

    @pytest.mark.parametrize("name", ["batch", "pessimistic", "optimistic", "timestamp"])
    def test_by_name(self, name):
        backend = create_backend(name)
        assert backend.model is TransactionModel(name)

    def test_by_enum(self):
        backend = create_backend(TransactionModel.OPTIMISTIC)
        assert isinstance(backend, MemoryOptimisticBackend)

    def test_unknown_rejected(self):
        with pytest.raises(ValueError, match="Unknown transaction model"):
            create_backend("serializable")

    def test_shared_store(self):
        store = MemoryStore()
        a = create_backend("optimistic", store=store)
        b = create_backend("pessimistic", store=store)
        commit_value(a, KEY, "5")
        assert b.get(KEY).value == "5"

    def test_pessimistic_options(self):
        backend = create_backend("pessimistic", lock_timeout_ms=10, expiration_ms=2000)
        assert backend.expiration_s == 2.0
