"""Tests for kvfuzz.status and the model tables in kvfuzz.backend.

Tests:
- Status is immutable and classifies outcomes
- Capabilities per transaction model
- FailurePolicy: which outcomes each model treats as expected
- Optional operations raise UnsupportedOperationError
- WriteBatch collects puts and deletes
"""

import pytest

from kvfuzz.backend import (
    CAPABILITIES,
    POLICIES,
    TransactionModel,
    WriteBatch,
    is_unexpected_commit,
)
from kvfuzz.memory import create_backend
from kvfuzz.status import Outcome, Status, UnsupportedOperationError


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class TestStatus:

    def test_ok(self):
        s = Status.ok()
        assert s.is_ok
        assert not s.is_not_found
        assert str(s) == "ok"

    def test_not_found_is_not_ok(self):
        s = Status.not_found()
        assert s.is_not_found
        assert not s.is_ok

    def test_message_in_str(self):
        assert str(Status.conflict("Busy")) == "conflict: Busy"

    def test_immutable(self):
        s = Status.expired("lease")
        with pytest.raises(AttributeError):
            s.outcome = Outcome.OK

    def test_equality(self):
        assert Status.conflict("x") == Status.conflict("x")
        assert Status.conflict("x") != Status.expired("x")


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class TestCapabilities:

    def test_batch_has_no_transactions(self):
        caps = CAPABILITIES[TransactionModel.BATCH]
        assert not caps.transactions
        assert not caps.supports_prepare

    def test_only_pessimistic_locks_and_prepares(self):
        for model, caps in CAPABILITIES.items():
            is_pessimistic = model is TransactionModel.PESSIMISTIC
            assert caps.supports_get_for_update == is_pessimistic
            assert caps.supports_prepare == is_pessimistic
            assert caps.supports_snapshot == is_pessimistic

    def test_only_timestamp_uses_timestamps(self):
        for model, caps in CAPABILITIES.items():
            assert caps.uses_timestamps == (model is TransactionModel.TIMESTAMP)

    def test_backend_exposes_capabilities(self):
        backend = create_backend("pessimistic")
        assert backend.supports_transactions
        assert backend.supports_get_for_update
        assert backend.supports_prepare
        assert not backend.uses_timestamps
        assert backend.name == "pessimistic"


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------

class TestFailurePolicy:
    """Expected vs unexpected outcomes per model."""

    def test_pessimistic_expired_commit_is_expected(self):
        assert not is_unexpected_commit(TransactionModel.PESSIMISTIC, Status.expired())

    @pytest.mark.parametrize("model", [
        TransactionModel.BATCH,
        TransactionModel.OPTIMISTIC,
        TransactionModel.TIMESTAMP,
    ])
    def test_expired_commit_is_unexpected_elsewhere(self, model):
        assert is_unexpected_commit(model, Status.expired())

    def test_pessimistic_other_commit_failures_are_unexpected(self):
        for status in (Status.conflict("Busy"), Status.not_found(), Status.unexpected("IO")):
            assert is_unexpected_commit(TransactionModel.PESSIMISTIC, status)

    def test_optimistic_commit_conflict_is_expected(self):
        assert not is_unexpected_commit(TransactionModel.OPTIMISTIC, Status.conflict("Busy"))

    def test_timestamp_commit_conflict_is_expected(self):
        assert not is_unexpected_commit(TransactionModel.TIMESTAMP, Status.conflict("Busy"))

    def test_ok_is_never_unexpected(self):
        for model in TransactionModel:
            assert not is_unexpected_commit(model, Status.ok())

    @pytest.mark.parametrize("model", list(TransactionModel))
    def test_corruption_is_always_unexpected(self, model):
        policy = POLICIES[model]
        corrupt = Status.corruption("bad value")
        assert not policy.read_is_expected(corrupt)
        assert not policy.write_is_expected(corrupt, locked=True)
        assert not policy.write_is_expected(corrupt, locked=False)
        assert not policy.commit_is_expected(corrupt)

    def test_batch_expects_nothing(self):
        policy = POLICIES[TransactionModel.BATCH]
        for outcome in Outcome:
            status = Status(outcome)
            assert not policy.batch_write_is_expected(status)
            assert not policy.read_is_expected(status)

    def test_pessimistic_locked_write_must_not_fail(self):
        policy = POLICIES[TransactionModel.PESSIMISTIC]
        busy = Status.conflict("Busy")
        assert policy.write_is_expected(busy, locked=False)
        assert not policy.write_is_expected(busy, locked=True)

    def test_optimistic_reads_and_writes_must_not_fail(self):
        policy = POLICIES[TransactionModel.OPTIMISTIC]
        busy = Status.conflict("Busy")
        assert not policy.read_is_expected(busy)
        assert not policy.write_is_expected(busy, locked=False)


# ---------------------------------------------------------------------------
# Unsupported operations
# ---------------------------------------------------------------------------

class TestUnsupportedOperations:

    def test_batch_backend_cannot_begin(self):
        with pytest.raises(UnsupportedOperationError):
            create_backend("batch").begin()

    def test_optimistic_has_no_get_for_update(self):
        txn = create_backend("optimistic").begin()
        with pytest.raises(UnsupportedOperationError):
            txn.get_for_update("00010")
        with pytest.raises(UnsupportedOperationError):
            txn.prepare()

    def test_pessimistic_has_no_timestamps(self):
        txn = create_backend("pessimistic").begin()
        with pytest.raises(UnsupportedOperationError):
            txn.set_read_timestamp(5)
        with pytest.raises(UnsupportedOperationError):
            txn.set_commit_timestamp(5)
        txn.rollback()

    def test_timestamp_has_no_snapshot(self):
        txn = create_backend("timestamp").begin()
        with pytest.raises(UnsupportedOperationError):
            txn.set_snapshot()


# ---------------------------------------------------------------------------
# WriteBatch
# ---------------------------------------------------------------------------

class TestWriteBatch:

    def test_collects_entries(self):
        batch = WriteBatch()
        assert len(batch) == 0
        batch.put("00011", "5")
        batch.delete("00012", group="cf1")
        assert len(batch) == 2
        assert batch.entries == [(None, "00011", "5"), ("cf1", "00012", None)]

    def test_applied_atomically(self):
        backend = create_backend("batch")
        batch = WriteBatch()
        batch.put("00011", "5")
        batch.put("00021", "5")
        seq_before = backend.store.sequence
        assert backend.write(batch).is_ok
        assert backend.store.sequence == seq_before + 1
        assert backend.get("00011").value == "5"
        assert backend.get("00021").value == "5"
