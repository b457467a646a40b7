"""Multi-threaded harness driver.

Coordinates worker threads, each running its own TransactionInserter
against a shared backend, and the invariant checks around them.

Key types:
- HarnessConfig: Complete harness configuration (frozen)
- HarnessResult: Statistics plus every verification result
- Harness: Runs workers and verification, returns HarnessResult
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from kvfuzz.backend import Backend
from kvfuzz.inserter import DEFAULT_VALUE_SIZE, TransactionIds, TransactionInserter
from kvfuzz.stats import Statistics
from kvfuzz.verifier import POINT_LOOKUP_ONE_IN, VerifyResult, verify_invariant

logger = logging.getLogger(__name__)

MODE_INCREMENT = "increment"
MODE_WRITE_RANDOM = "write_random"
VALID_MODES = (MODE_INCREMENT, MODE_WRITE_RANDOM)


# ---------------------------------------------------------------------------
# HarnessConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HarnessConfig:
    """Complete harness configuration.

    The backend is fully constructed before the run starts. Per-worker
    RNGs are derived from ``seed`` so a seeded single-threaded run is
    reproducible.
    """
    backend: Backend

    # Key space
    num_sets: int = 3
    num_keys: int = 1000

    # Workload
    mode: str = MODE_INCREMENT
    read_percent: int = 0
    delete_percent: int = 0
    conflict_level: int = 0
    value_size: int = DEFAULT_VALUE_SIZE

    # Execution
    threads: int = 1
    transactions: int = 1000       # per thread
    seed: Optional[int] = None

    # Verification
    verify_snapshot: bool = True
    point_lookup_one_in: int = POINT_LOOKUP_ONE_IN
    verify_interval_ms: Optional[float] = None


@dataclass
class HarnessResult:
    """Everything a run observed."""
    stats: Statistics
    verifications: List[VerifyResult] = field(default_factory=list)
    unexpected: bool = False

    @property
    def consistent(self) -> bool:
        return all(v.consistent for v in self.verifications)

    @property
    def ok(self) -> bool:
        return not self.unexpected and self.consistent


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------

class Harness:
    """Runs concurrent inserters and verifies the invariant.

    Usage:
        config = HarnessConfig(backend=create_backend("optimistic"), threads=4)
        result = Harness(config).run()
        assert result.ok

    A worker stops after its quota of transactions, or as soon as any
    worker hits an unexpected error or a verification fails.
    """

    def __init__(
        self,
        config: HarnessConfig,
        stats: Optional[Statistics] = None,
        progress: Optional[Callable[[int], None]] = None,
    ):
        if config.mode not in VALID_MODES:
            raise ValueError(f"Unknown mode {config.mode!r}. Valid: {list(VALID_MODES)}")
        self._config = config
        self._stats = stats if stats is not None else Statistics()
        self._progress = progress
        self._txn_ids = TransactionIds()
        self._stop = threading.Event()
        self._results_lock = threading.Lock()
        self._verifications: List[VerifyResult] = []

    @property
    def stats(self) -> Statistics:
        return self._stats

    def _rng(self, offset: int) -> np.random.RandomState:
        seed = self._config.seed
        if seed is None:
            return np.random.RandomState()
        return np.random.RandomState(seed + offset)

    def run(self) -> HarnessResult:
        """Run all workers, then verify; return the collected result."""
        cfg = self._config
        unexpected = False

        monitor = None
        monitor_stop = threading.Event()
        if cfg.verify_interval_ms and cfg.mode == MODE_INCREMENT:
            monitor = threading.Thread(
                target=self._monitor,
                args=(monitor_stop,),
                name="kvfuzz-verify",
                daemon=True,
            )
            monitor.start()

        logger.info(
            f"Running {cfg.threads} thread(s) x {cfg.transactions} {cfg.mode} "
            f"transactions against {cfg.backend.name} backend"
        )
        try:
            with ThreadPoolExecutor(max_workers=cfg.threads,
                                    thread_name_prefix="kvfuzz-worker") as pool:
                futures = [pool.submit(self._worker, i) for i in range(cfg.threads)]
                for future in as_completed(futures):
                    if not future.result():
                        unexpected = True
        finally:
            monitor_stop.set()
            if monitor is not None:
                monitor.join()

        if cfg.mode == MODE_INCREMENT and not unexpected:
            self._verify(self._rng(cfg.threads + 1), cfg.verify_snapshot)

        return HarnessResult(
            stats=self._stats,
            verifications=list(self._verifications),
            unexpected=unexpected,
        )

    def _worker(self, index: int) -> bool:
        """Run this worker's quota; False on an unexpected error."""
        cfg = self._config
        inserter = TransactionInserter(
            cfg.backend,
            stats=self._stats,
            rng=self._rng(index),
            num_keys=cfg.num_keys,
            num_sets=cfg.num_sets,
            read_percent=cfg.read_percent,
            delete_percent=cfg.delete_percent,
            conflict_level=cfg.conflict_level,
            value_size=cfg.value_size,
            txn_ids=self._txn_ids,
            worker=index,
        )
        step = inserter.run_one if cfg.mode == MODE_INCREMENT else inserter.write_random
        try:
            for _ in range(cfg.transactions):
                if self._stop.is_set():
                    logger.debug(f"Worker {index} stopping early")
                    break
                if not step():
                    logger.error(
                        f"Worker {index} hit an unexpected error: {inserter.last_status}"
                    )
                    self._stop.set()
                    return False
                if self._progress is not None:
                    self._progress(1)
        except BaseException:
            self._stop.set()
            raise
        return True

    def _verify(self, rng: np.random.RandomState, take_snapshot: bool) -> VerifyResult:
        cfg = self._config
        result = verify_invariant(
            cfg.backend,
            cfg.num_sets,
            cfg.num_keys,
            take_snapshot=take_snapshot,
            rng=rng,
            stats=self._stats,
            point_lookup_one_in=cfg.point_lookup_one_in,
        )
        with self._results_lock:
            self._verifications.append(result)
        if result.consistent:
            logger.info(f"Invariant holds across {cfg.num_sets} sets")
        else:
            logger.error(f"Invariant violated: {result.status}")
        return result

    def _monitor(self, done: threading.Event) -> None:
        """Verify periodically while workers run.

        Always reads from a snapshot: with writers still active the totals
        only agree at a single sequence number.
        """
        rng = self._rng(self._config.threads)
        interval_s = self._config.verify_interval_ms / 1000.0
        while not done.wait(interval_s):
            if not self._verify(rng, take_snapshot=True).consistent:
                self._stop.set()
                return
