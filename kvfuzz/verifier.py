"""Cross-set invariant verification.

Every committed read-modify-write transaction adds the same amount to
one key of each set, so at any consistent point all sets have the same
total. verify_invariant() recomputes each set's total, by range scan or
(occasionally) by point lookups over the whole key range, and compares
each total with the set visited just before it.

The check stops at the first problem:
- a stored value that is 0, the max sentinel, or not a number
- two consecutive sets with different totals
Both are reported as a Corruption status; there are no retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from kvfuzz.backend import Backend, Snapshot
from kvfuzz.keyspace import decode_value, encode_key, is_reserved_value, set_prefix
from kvfuzz.stats import Statistics
from kvfuzz.status import Outcome, Status

logger = logging.getLogger(__name__)

# 1 in N sets is verified with point lookups instead of a scan.
POINT_LOOKUP_ONE_IN = 10

SCAN = "scan"
POINT_LOOKUP = "point_lookup"


@dataclass(frozen=True)
class SetTotal:
    """Total of one set and how it was computed."""
    set_id: int
    total: int
    method: str


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of one verification pass.

    Attributes:
        status: OK when consistent, CORRUPTION otherwise.
        totals: Totals in visitation order, up to the point of failure.
        offending_sets: Sets named by the failure (empty when consistent).
        offending_totals: Totals of offending_sets, where known.
    """
    status: Status
    totals: Tuple[SetTotal, ...] = ()
    offending_sets: Tuple[int, ...] = ()
    offending_totals: Tuple[int, ...] = ()

    @property
    def consistent(self) -> bool:
        return self.status.is_ok


def _check_value(key: str, text: str) -> Tuple[Status, int]:
    try:
        value = decode_value(text)
    except ValueError:
        value = None
    if value is None or is_reserved_value(value):
        return Status.corruption(f"{key!r} holds unexpected value {text[:32]!r}"), 0
    return Status.ok(), value


def scan_total(
    backend: Backend,
    set_id: int,
    snapshot: Optional[Snapshot] = None,
) -> Tuple[Status, int]:
    """Sum a set by iterating its key range from the set prefix."""
    prefix = set_prefix(set_id)
    total = 0
    for key, text in backend.scan(prefix, snapshot):
        if key[:len(prefix)] != prefix:
            break
        status, value = _check_value(key, text)
        if not status.is_ok:
            logger.error(f"Iterator returned unexpected value: {status}")
            return status, total
        total += value
    return Status.ok(), total


def lookup_total(
    backend: Backend,
    set_id: int,
    num_keys: int,
    snapshot: Optional[Snapshot] = None,
) -> Tuple[Status, int]:
    """Sum a set by reading every key in [0, num_keys)."""
    total = 0
    for k in range(num_keys):
        key = encode_key(set_id, k)
        result = backend.get(key, snapshot)
        if result.status.is_not_found:
            continue
        if not result.found:
            logger.error(f"Get returned an unexpected error for {key!r}: {result.status}")
            return result.status, total
        status, value = _check_value(key, result.value)
        if not status.is_ok:
            logger.error(f"Get returned unexpected value: {status}")
            return status, total
        total += value
    return Status.ok(), total


def verify_invariant(
    backend: Backend,
    num_sets: int,
    num_keys_per_set: int,
    take_snapshot: bool = False,
    rng: Optional[np.random.RandomState] = None,
    stats: Optional[Statistics] = None,
    point_lookup_one_in: int = POINT_LOOKUP_ONE_IN,
    permute: bool = True,
) -> VerifyResult:
    """Check that all ``num_sets`` sets have equal totals.

    Args:
        backend: Store under test.
        num_sets: Number of sets to check.
        num_keys_per_set: Key range for point lookups; 0 disables them.
        take_snapshot: Read every set from one snapshot, released on
            every exit path.
        rng: Source of the visitation order and the scan/lookup choice.
            Without it sets are visited in a fresh random order and
            always scanned.
        stats: Session statistics to record the outcome in.
        point_lookup_one_in: 1 in N sets uses point lookups.
        permute: Visit sets in random order instead of index order.
    """
    snapshot = backend.get_snapshot() if take_snapshot else None
    try:
        result = _verify(
            backend, num_sets, num_keys_per_set, snapshot, rng,
            point_lookup_one_in, permute,
        )
    finally:
        if snapshot is not None:
            backend.release_snapshot(snapshot)

    if stats is not None:
        stats.record_verification(result.consistent)
    return result


def _verify(
    backend: Backend,
    num_sets: int,
    num_keys_per_set: int,
    snapshot: Optional[Snapshot],
    rng: Optional[np.random.RandomState],
    point_lookup_one_in: int,
    permute: bool,
) -> VerifyResult:
    if permute:
        order_rng = rng if rng is not None else np.random.RandomState()
        order = [int(s) for s in order_rng.permutation(num_sets)]
    else:
        order = list(range(num_sets))

    totals: list[SetTotal] = []
    prev: Optional[SetTotal] = None

    for set_id in order:
        use_lookup = (
            num_keys_per_set != 0
            and rng is not None
            and int(rng.randint(point_lookup_one_in)) == 0
        )
        if use_lookup:
            status, total = lookup_total(backend, set_id, num_keys_per_set, snapshot)
            method = POINT_LOOKUP
        else:
            status, total = scan_total(backend, set_id, snapshot)
            method = SCAN

        if not status.is_ok:
            return VerifyResult(
                status=status if status.outcome is Outcome.CORRUPTION
                else Status.corruption(f"set {set_id}: {status}"),
                totals=tuple(totals),
                offending_sets=(set_id,),
            )

        current = SetTotal(set_id=set_id, total=total, method=method)
        if prev is not None and current.total != prev.total:
            message = (
                f"found inconsistent totals. Set[{prev.set_id}]: {prev.total}, "
                f"Set[{current.set_id}]: {current.total}"
            )
            logger.error(message)
            return VerifyResult(
                status=Status.corruption(message),
                totals=tuple(totals) + (current,),
                offending_sets=(prev.set_id, current.set_id),
                offending_totals=(prev.total, current.total),
            )
        totals.append(current)
        prev = current

    logger.debug(f"Verified {num_sets} sets, total {prev.total if prev else 0} each")
    return VerifyResult(status=Status.ok(), totals=tuple(totals))
