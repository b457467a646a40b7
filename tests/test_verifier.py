"""Tests for kvfuzz.verifier.

Tests:
- Empty and freshly populated stores verify as consistent
- Scan totals and point-lookup totals agree
- Total mismatches and reserved/unparseable values are reported
- Snapshots are released on every path
- Visitation order, method selection and statistics recording
"""

import numpy as np
import pytest

from kvfuzz.inserter import TransactionInserter
from kvfuzz.keyspace import MAX_VALUE, encode_key
from kvfuzz.memory import create_backend
from kvfuzz.stats import Statistics
from kvfuzz.status import Outcome
from kvfuzz.verifier import (
    POINT_LOOKUP,
    SCAN,
    lookup_total,
    scan_total,
    verify_invariant,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def populated_backend(model="optimistic", num_sets=3, num_keys=20, txns=100, seed=1):
    backend = create_backend(model)
    ins = TransactionInserter(
        backend,
        rng=np.random.RandomState(seed),
        num_sets=num_sets,
        num_keys=num_keys,
    )
    for _ in range(txns):
        assert ins.run_one()
    return backend


# ---------------------------------------------------------------------------
# Set totals
# ---------------------------------------------------------------------------

class TestSetTotals:

    def test_scan_equals_lookup(self):
        backend = populated_backend()
        for set_id in range(3):
            s_status, s_total = scan_total(backend, set_id)
            l_status, l_total = lookup_total(backend, set_id, 20)
            assert s_status.is_ok and l_status.is_ok
            assert s_total == l_total > 0

    def test_scan_stays_inside_set(self):
        backend = create_backend("batch")
        backend.store.force(encode_key(0, 1), "5")
        backend.store.force(encode_key(1, 1), "7")
        backend.store.force(encode_key(2, 1), "11")
        assert scan_total(backend, 1)[1] == 7

    def test_missing_keys_count_as_zero(self):
        backend = create_backend("batch")
        backend.store.force(encode_key(0, 3), "5")
        assert lookup_total(backend, 0, 10)[1] == 5

    def test_deleted_keys_are_skipped(self):
        backend = create_backend("batch")
        backend.store.force(encode_key(0, 3), "5")
        backend.store.force(encode_key(0, 4), "6")
        backend.store.force(encode_key(0, 4), None)
        assert scan_total(backend, 0)[1] == 5
        assert lookup_total(backend, 0, 10)[1] == 5


# ---------------------------------------------------------------------------
# verify_invariant
# ---------------------------------------------------------------------------

class TestVerifyInvariant:

    def test_empty_store_is_consistent(self):
        result = verify_invariant(create_backend("batch"), 5, 10)
        assert result.consistent
        assert [t.total for t in result.totals] == [0] * 5

    @pytest.mark.parametrize("model", ["batch", "pessimistic", "optimistic", "timestamp"])
    def test_populated_store_is_consistent(self, model):
        backend = populated_backend(model)
        result = verify_invariant(backend, 3, 20, take_snapshot=True,
                                  rng=np.random.RandomState(0))
        assert result.consistent, str(result.status)
        assert len({t.total for t in result.totals}) == 1

    def test_mismatch_reported(self):
        backend = populated_backend()
        backend.store.force(encode_key(1, 0), "123456")
        result = verify_invariant(backend, 3, 20, permute=False)
        assert not result.consistent
        assert result.status.outcome is Outcome.CORRUPTION
        assert "found inconsistent totals" in result.status.message
        assert len(result.offending_sets) == 2
        assert 1 in result.offending_sets
        a, b = result.offending_totals
        assert a != b

    @pytest.mark.parametrize("bad", ["0", str(MAX_VALUE), "12x"])
    def test_reserved_value_reported(self, bad):
        backend = populated_backend()
        backend.store.force(encode_key(2, 5), bad)
        result = verify_invariant(backend, 3, 20)
        assert result.status.outcome is Outcome.CORRUPTION
        assert result.offending_sets == (2,)

    def test_reserved_value_found_by_lookup(self):
        backend = populated_backend()
        backend.store.force(encode_key(0, 5), "0")
        result = verify_invariant(backend, 3, 20, permute=False,
                                  rng=np.random.RandomState(0), point_lookup_one_in=1)
        assert result.status.outcome is Outcome.CORRUPTION
        assert result.offending_sets == (0,)

    def test_snapshot_released_when_consistent(self):
        backend = populated_backend()
        verify_invariant(backend, 3, 20, take_snapshot=True)
        assert backend.store.live_snapshots == 0

    def test_snapshot_released_on_corruption(self):
        backend = populated_backend()
        backend.store.force(encode_key(0, 0), "0")
        result = verify_invariant(backend, 3, 20, take_snapshot=True)
        assert not result.consistent
        assert backend.store.live_snapshots == 0

    def test_snapshot_hides_later_writes(self):
        backend = populated_backend()
        snapshot = backend.get_snapshot()
        backend.store.force(encode_key(1, 0), "999")
        status, total = scan_total(backend, 1, snapshot)
        _, other = scan_total(backend, 0, snapshot)
        backend.release_snapshot(snapshot)
        assert status.is_ok
        assert total == other

    def test_index_order_without_permute(self):
        result = verify_invariant(populated_backend(num_sets=4), 4, 20, permute=False)
        assert [t.set_id for t in result.totals] == [0, 1, 2, 3]

    def test_permuted_order_covers_every_set(self):
        result = verify_invariant(populated_backend(num_sets=6), 6, 20,
                                  rng=np.random.RandomState(3))
        assert sorted(t.set_id for t in result.totals) == list(range(6))

    def test_without_rng_always_scans(self):
        result = verify_invariant(populated_backend(), 3, 20)
        assert all(t.method == SCAN for t in result.totals)

    def test_lookup_every_set(self):
        result = verify_invariant(populated_backend(), 3, 20,
                                  rng=np.random.RandomState(0), point_lookup_one_in=1)
        assert all(t.method == POINT_LOOKUP for t in result.totals)

    def test_zero_keys_disables_lookups(self):
        result = verify_invariant(populated_backend(), 3, 0,
                                  rng=np.random.RandomState(0), point_lookup_one_in=1)
        assert result.consistent
        assert all(t.method == SCAN for t in result.totals)

    def test_records_in_stats(self):
        stats = Statistics()
        backend = populated_backend()
        verify_invariant(backend, 3, 20, stats=stats)
        backend.store.force(encode_key(0, 0), "0")
        verify_invariant(backend, 3, 20, stats=stats)
        assert stats.verifications == 2
        assert stats.verification_failures == 1
