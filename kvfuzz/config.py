"""Configuration parsing and validation for the kvfuzz harness.

This module contains:
- load_harness_config(): the entry point from a TOML file
- build_harness_config(): the same from an already-parsed dict
- Configuration validation
"""

from __future__ import annotations

import logging
from typing import Optional

import tomllib

from kvfuzz.backend import Backend, TransactionModel
from kvfuzz.inserter import DEFAULT_VALUE_SIZE
from kvfuzz.keyspace import MAX_SETS
from kvfuzz.memory import create_backend
from kvfuzz.runner import MODE_INCREMENT, MODE_WRITE_RANDOM, VALID_MODES, HarnessConfig
from kvfuzz.verifier import POINT_LOOKUP_ONE_IN

logger = logging.getLogger(__name__)

VALID_MODELS = [m.value for m in TransactionModel]


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_harness_config(
    config_path: str,
    *,
    seed_override: int | None = None,
) -> HarnessConfig:
    """Load harness configuration from a TOML file.

    All parameters are validated before returning.

    Args:
        config_path: Path to TOML configuration file.
        seed_override: If provided, overrides the seed in the config file.

    Returns:
        Fully constructed HarnessConfig ready to run.
    """
    with open(config_path, "rb") as f:
        raw = tomllib.load(f)
    return build_harness_config(raw, seed_override=seed_override)


def build_harness_config(
    raw: dict,
    *,
    seed_override: int | None = None,
) -> HarnessConfig:
    """Validate a parsed config dict and build the HarnessConfig.

    Raises:
        ConfigurationError: With every fatal error found.
    """
    if seed_override is not None:
        raw.setdefault("harness", {})["seed"] = seed_override

    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)

    harness_cfg = raw.get("harness", {})
    workload_cfg = raw.get("workload", {})
    verify_cfg = raw.get("verify", {})

    backend = _build_backend(raw.get("backend", {}))

    return HarnessConfig(
        backend=backend,
        num_sets=workload_cfg.get("num_sets", 3),
        num_keys=workload_cfg.get("num_keys", 1000),
        mode=harness_cfg.get("mode", MODE_INCREMENT),
        read_percent=workload_cfg.get("read_percent", 0),
        delete_percent=workload_cfg.get("delete_percent", 0),
        conflict_level=workload_cfg.get("conflict_level", 0),
        value_size=workload_cfg.get("value_size", DEFAULT_VALUE_SIZE),
        threads=harness_cfg.get("threads", 1),
        transactions=harness_cfg.get("transactions", 1000),
        seed=harness_cfg.get("seed"),
        verify_snapshot=verify_cfg.get("take_snapshot", True),
        point_lookup_one_in=verify_cfg.get("point_lookup_one_in", POINT_LOOKUP_ONE_IN),
        verify_interval_ms=verify_cfg.get("interval_ms"),
    )


def _build_backend(backend_cfg: dict) -> Backend:
    model = backend_cfg.get("model", TransactionModel.PESSIMISTIC.value)
    column_groups = tuple(backend_cfg.get("column_groups", ()))
    if model != TransactionModel.TIMESTAMP.value:
        column_groups = ()
    backend = create_backend(
        model,
        column_groups=column_groups,
        lock_timeout_ms=backend_cfg.get("lock_timeout_ms", 50.0),
        expiration_ms=backend_cfg.get("expiration_ms"),
    )
    logger.debug(f"Built {backend.name} backend with column groups {list(column_groups)}")
    return backend


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_positive(section: dict, name: str, prefix: str, errors: list[str],
                    minimum: float = 1) -> None:
    value = section.get(name)
    if value is not None and value < minimum:
        errors.append(f"{prefix}.{name} must be >= {minimum}, got {value}")


def validate_config(config: dict) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors/warnings.

    Returns:
        (errors, warnings) where:
        - errors: List of fatal configuration errors
        - warnings: List of non-fatal warnings
    """
    errors = []
    warnings = []

    # Harness section
    harness = config.get('harness', {})
    threads = harness.get('threads', 1)
    if threads < 1:
        errors.append(f"harness.threads must be >= 1, got {threads}")
    transactions = harness.get('transactions', 1000)
    if transactions < 0:
        errors.append(f"harness.transactions must be >= 0, got {transactions}")
    mode = harness.get('mode', MODE_INCREMENT)
    if mode not in VALID_MODES:
        errors.append(f"harness.mode must be one of {list(VALID_MODES)}, got '{mode}'")

    # Workload section
    workload = config.get('workload', {})
    num_sets = workload.get('num_sets', 3)
    if not 1 <= num_sets <= MAX_SETS:
        errors.append(f"workload.num_sets must be in [1, {MAX_SETS}], got {num_sets}")
    _check_positive(workload, 'num_keys', 'workload', errors)
    _check_positive(workload, 'value_size', 'workload', errors)

    read_percent = workload.get('read_percent', 0)
    delete_percent = workload.get('delete_percent', 0)
    for name, pct in (('read_percent', read_percent), ('delete_percent', delete_percent)):
        if not 0 <= pct <= 100:
            errors.append(f"workload.{name} must be in [0, 100], got {pct}")
    if read_percent + delete_percent > 100:
        errors.append(
            f"workload.read_percent + delete_percent must be <= 100, "
            f"got {read_percent + delete_percent}"
        )
    conflict_level = workload.get('conflict_level', 0)
    if conflict_level < 0:
        errors.append(f"workload.conflict_level must be >= 0, got {conflict_level}")

    if mode == MODE_INCREMENT and (read_percent or delete_percent):
        warnings.append(
            "workload.read_percent/delete_percent only apply to write_random mode; ignored"
        )

    # Backend section
    backend = config.get('backend', {})
    model = backend.get('model', TransactionModel.PESSIMISTIC.value)
    if model not in VALID_MODELS:
        errors.append(f"backend.model must be one of {VALID_MODELS}, got '{model}'")
    _check_positive(backend, 'lock_timeout_ms', 'backend', errors, minimum=0)
    _check_positive(backend, 'expiration_ms', 'backend', errors, minimum=0)

    column_groups = backend.get('column_groups', [])
    if len(set(column_groups)) != len(column_groups):
        errors.append(f"backend.column_groups must be unique, got {column_groups}")
    if column_groups and model != TransactionModel.TIMESTAMP.value:
        warnings.append(
            f"backend.column_groups only apply to the timestamp model, "
            f"not '{model}'; ignored"
        )
    if model != TransactionModel.PESSIMISTIC.value and (
        'lock_timeout_ms' in backend or 'expiration_ms' in backend
    ):
        warnings.append(
            f"backend.lock_timeout_ms/expiration_ms only apply to the pessimistic model, "
            f"not '{model}'; ignored"
        )

    if mode == MODE_WRITE_RANDOM and model != TransactionModel.TIMESTAMP.value:
        errors.append(f"harness.mode='write_random' requires backend.model='timestamp', got '{model}'")
    if model == TransactionModel.BATCH.value and threads > 1:
        warnings.append(
            f"backend.model='batch' with {threads} threads: batch reads are not isolated, "
            "so concurrent increments can be lost and verification is expected to fail"
        )

    # Verify section
    verify = config.get('verify', {})
    _check_positive(verify, 'point_lookup_one_in', 'verify', errors)
    interval_ms: Optional[float] = verify.get('interval_ms')
    if interval_ms is not None:
        if interval_ms <= 0:
            errors.append(f"verify.interval_ms must be > 0, got {interval_ms}")
        elif mode != MODE_INCREMENT:
            warnings.append("verify.interval_ms only applies to increment mode; ignored")

    return errors, warnings
