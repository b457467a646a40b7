"""Outcome and throughput statistics for a harness session.

One Statistics instance is shared by every worker thread of a session.
Workers never touch counters directly: each transaction is summarized in
a TransactionRecord and submitted through record(), which updates all
counters under one lock.
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from hdrh.histogram import HdrHistogram

from kvfuzz.status import Status

# Latencies are recorded in microseconds, up to ten minutes.
_MAX_LATENCY_US = 10 * 60 * 1000 * 1000


@dataclass(frozen=True)
class TransactionRecord:
    """Immutable summary of one harness transaction."""
    txn_name: str
    model: str                 # "batch", "pessimistic", "optimistic", "timestamp"
    mode: str                  # "increment" or "write_random"
    status: Status             # terminal status of the transaction
    committed: bool
    rolled_back: bool
    unexpected: bool
    sets_touched: int
    gets: int
    puts: int
    deletes: int
    found: int
    bytes_inserted: int
    bytes_read: int
    latency_us: int


_ARROW_SCHEMA = pa.schema([
    ("txn_name", pa.string()),
    ("model", pa.string()),
    ("mode", pa.string()),
    ("outcome", pa.string()),
    ("message", pa.string()),
    ("committed", pa.bool_()),
    ("rolled_back", pa.bool_()),
    ("unexpected", pa.bool_()),
    ("sets_touched", pa.int32()),
    ("gets", pa.int32()),
    ("puts", pa.int32()),
    ("deletes", pa.int32()),
    ("found", pa.int32()),
    ("bytes_inserted", pa.int64()),
    ("bytes_read", pa.int64()),
    ("latency_us", pa.int64()),
])


def _record_to_row(r: TransactionRecord) -> dict:
    return {
        "txn_name": r.txn_name,
        "model": r.model,
        "mode": r.mode,
        "outcome": r.status.outcome.value,
        "message": r.status.message,
        "committed": r.committed,
        "rolled_back": r.rolled_back,
        "unexpected": r.unexpected,
        "sets_touched": r.sets_touched,
        "gets": r.gets,
        "puts": r.puts,
        "deletes": r.deletes,
        "found": r.found,
        "bytes_inserted": r.bytes_inserted,
        "bytes_read": r.bytes_read,
        "latency_us": r.latency_us,
    }


class Statistics:
    """Thread-safe running totals for one harness session.

    Counters are never reset mid-run. When keep_records is False only
    the aggregates and the latency histogram are kept.
    """

    def __init__(self, keep_records: bool = True):
        self._lock = threading.Lock()
        self._keep_records = keep_records
        self.latency = HdrHistogram(1, _MAX_LATENCY_US, 3)

        # Transaction outcomes
        self.success_count = 0
        self.failure_count = 0
        self.unexpected_count = 0
        self.rollback_count = 0     # deliberate and failure rollbacks
        self.last_status: Optional[Status] = None

        # Operation and volume counters
        self.bytes_inserted = 0
        self.bytes_read = 0
        self.gets_done = 0
        self.puts_done = 0
        self.deletes_done = 0
        self.found = 0

        # Verification outcomes
        self.verifications = 0
        self.verification_failures = 0

        self.records: list[TransactionRecord] = []

    def record(self, rec: TransactionRecord) -> None:
        """Fold one transaction into the totals."""
        with self._lock:
            if rec.status.is_ok:
                self.success_count += 1
            else:
                self.failure_count += 1
            if rec.unexpected:
                self.unexpected_count += 1
            if rec.rolled_back:
                self.rollback_count += 1
            self.last_status = rec.status

            self.bytes_inserted += rec.bytes_inserted
            self.bytes_read += rec.bytes_read
            self.gets_done += rec.gets
            self.puts_done += rec.puts
            self.deletes_done += rec.deletes
            self.found += rec.found

            self.latency.record_value(min(max(rec.latency_us, 1), _MAX_LATENCY_US))
            if self._keep_records:
                self.records.append(rec)

    def record_verification(self, consistent: bool) -> None:
        with self._lock:
            self.verifications += 1
            if not consistent:
                self.verification_failures += 1

    @property
    def total(self) -> int:
        """Total transactions recorded."""
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.success_count / self.total

    def to_dataframe(self) -> pd.DataFrame:
        """Per-transaction records as a DataFrame (empty if none kept)."""
        with self._lock:
            rows = [_record_to_row(r) for r in self.records]
        if not rows:
            return pd.DataFrame(columns=_ARROW_SCHEMA.names)
        return _rows_to_arrow_table(rows).to_pandas()

    def export_parquet(self, path: str) -> None:
        """Write per-transaction records to a parquet file."""
        with self._lock:
            rows = [_record_to_row(r) for r in self.records]
        if not rows:
            table = pa.table(
                {f.name: pa.array([], type=f.type) for f in _ARROW_SCHEMA},
                schema=_ARROW_SCHEMA,
            )
        else:
            table = _rows_to_arrow_table(rows)
        pq.write_table(table, path, compression="snappy")

    def print_summary(self, out=None) -> None:
        out = out if out is not None else sys.stdout
        with self._lock:
            total = self.success_count + self.failure_count
            print("\nHarness Summary:", file=out)
            print(f"  Total transactions: {total}", file=out)
            if total > 0:
                print(f"  Succeeded: {self.success_count} ({100*self.success_count/total:.1f}%)", file=out)
                print(f"  Failed: {self.failure_count} ({100*self.failure_count/total:.1f}%)", file=out)
            else:
                print("  Succeeded: 0", file=out)
                print("  Failed: 0", file=out)
            print(f"  Unexpected errors: {self.unexpected_count}", file=out)
            print(f"  Rollbacks: {self.rollback_count}", file=out)
            print(f"  Operations: gets={self.gets_done} (found {self.found}) "
                  f"puts={self.puts_done} deletes={self.deletes_done}", file=out)
            print(f"  Bytes inserted: {self.bytes_inserted}", file=out)
            print(f"  Bytes read: {self.bytes_read}", file=out)
            if self.last_status is not None:
                print(f"  Last status: {self.last_status}", file=out)
            if self.verifications:
                print(f"  Verifications: {self.verifications} "
                      f"({self.verification_failures} failed)", file=out)
            if total > 0:
                print("  Transaction latency (us):", file=out)
                print(f"    Mean: {self.latency.get_mean_value():.1f}", file=out)
                print(f"    P50: {self.latency.get_value_at_percentile(50)}", file=out)
                print(f"    P99: {self.latency.get_value_at_percentile(99)}", file=out)
                print(f"    Max: {self.latency.get_max_value()}", file=out)


def _rows_to_arrow_table(rows: list[dict]) -> pa.Table:
    """Convert row dicts to a pyarrow Table with the shared schema."""
    arrays = {}
    for field in _ARROW_SCHEMA:
        arrays[field.name] = pa.array(
            [row[field.name] for row in rows],
            type=field.type,
        )
    return pa.table(arrays, schema=_ARROW_SCHEMA)
