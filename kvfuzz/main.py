#!/usr/bin/env python
"""Command-line entry point for the kvfuzz consistency harness."""

from __future__ import annotations

import argparse
import logging
import sys

from tqdm import tqdm

from kvfuzz.config import ConfigurationError, build_harness_config, load_harness_config
from kvfuzz.runner import Harness, HarnessConfig, HarnessResult
from kvfuzz.stats import Statistics

logger = logging.getLogger(__name__)


def print_configuration(config: HarnessConfig, source: str) -> None:
    """Print configuration summary."""
    backend = config.backend
    print("\n" + "="*70)
    print("  KVFUZZ HARNESS CONFIGURATION")
    print("="*70)

    print("\n[Harness]")
    print(f"  Config:       {source}")
    print(f"  Mode:         {config.mode}")
    print(f"  Threads:      {config.threads}")
    print(f"  Transactions: {config.transactions:,} per thread")
    if config.seed is not None:
        print(f"  Random Seed:  {config.seed}")
    else:
        print(f"  Random Seed:  <auto-generated>")

    print("\n[Workload]")
    print(f"  Sets:         {config.num_sets}")
    print(f"  Keys/set:     {config.num_keys:,}")
    if config.conflict_level:
        print(f"  Conflict:     level {config.conflict_level} "
              f"(~{max(config.num_keys // 10**config.conflict_level, 1)} distinct keys)")
    if config.mode == "write_random":
        print(f"  Reads:        {config.read_percent}%")
        print(f"  Deletes:      {config.delete_percent}%")
        print(f"  Value size:   {config.value_size} bytes")

    print("\n[Backend]")
    print(f"  Model:        {backend.name}")
    if backend.column_groups:
        print(f"  Col. groups:  {', '.join(backend.column_groups)}")

    print("\n[Verify]")
    print(f"  Snapshot:     {config.verify_snapshot}")
    print(f"  Lookups:      1 in {config.point_lookup_one_in} sets")
    if config.verify_interval_ms:
        print(f"  Interval:     {config.verify_interval_ms:g} ms")
    print("="*70 + "\n")


def run_harness(
    config: HarnessConfig,
    show_progress: bool,
    keep_records: bool = False,
) -> HarnessResult:
    """Run the harness, with a progress bar if requested.

    Per-transaction records are only kept when ``keep_records`` is set;
    otherwise the statistics hold aggregates and the latency histogram.
    """
    stats = Statistics(keep_records=keep_records)
    if not show_progress:
        return Harness(config, stats=stats).run()
    total = config.threads * config.transactions
    with tqdm(total=total, unit='txn', unit_scale=True, desc="Running",
              bar_format='{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]') as pbar:
        return Harness(config, stats=stats, progress=pbar.update).run()


def cli(argv: list[str] | None = None) -> int:
    """CLI entry point for the kvfuzz harness."""
    parser = argparse.ArgumentParser(
        description="Randomized consistency testing for transactional key-value stores"
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=None,
        help="Path to TOML configuration file (default: built-in defaults)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all logging except errors"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override the configured random seed"
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Write per-transaction records to this parquet file"
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar"
    )
    args = parser.parse_args(argv)

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    # Load and validate configuration
    try:
        if args.config is not None:
            config = load_harness_config(args.config, seed_override=args.seed)
        else:
            config = build_harness_config({}, seed_override=args.seed)
    except ConfigurationError as e:
        print("Configuration validation failed:")
        for error in e.errors:
            print(f"  ✗ {error}")
        return 1

    if not args.quiet:
        print_configuration(config, args.config or "<defaults>")

    show_progress = not args.no_progress and not args.verbose and not args.quiet
    result = run_harness(config, show_progress, keep_records=bool(args.output))
    logger.info("Harness run complete")

    if not args.quiet:
        result.stats.print_summary()

    if args.output:
        logger.info(f"Exporting results to {args.output}")
        result.stats.export_parquet(args.output)

    if result.unexpected:
        logger.error(f"Run stopped on an unexpected error: {result.stats.last_status}")
    if not result.consistent:
        failed = [v for v in result.verifications if not v.consistent]
        logger.error(f"{len(failed)} verification(s) found inconsistent totals")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(cli())
