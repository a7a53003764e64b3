"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from compensation.density import DensityPolicy
from db.config import load_env_files


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


@dataclass(frozen=True)
class CalculationSettings:
    """
    Runtime settings for batch calculation.
    """

    max_workers: int = 4
    include_traces_in_response: bool = False


@dataclass(frozen=True)
class PersistenceSettings:
    """
    Timeout and retry behaviour for the atomic batch write.
    """

    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class DensitySettings:
    """
    Thresholds and learning parameters for pattern density tracking.
    """

    full_trace_max: float = 0.70
    silent_min: float = 0.95
    silent_min_executions: int = 10
    learning_rate: float = 0.2
    anomaly_decay: float = 0.5

    def to_policy(self) -> DensityPolicy:
        return DensityPolicy(
            full_trace_max=self.full_trace_max,
            silent_min=self.silent_min,
            silent_min_executions=self.silent_min_executions,
            learning_rate=self.learning_rate,
            anomaly_decay=self.anomaly_decay,
        )


@lru_cache(maxsize=1)
def get_calculation_settings() -> CalculationSettings:
    """
    Return cached calculation settings from environment variables.
    """

    return CalculationSettings(
        max_workers=max(1, _get_int_env("CALC_MAX_WORKERS", 4)),
        include_traces_in_response=_get_bool_env("CALC_INCLUDE_TRACES", False),
    )


@lru_cache(maxsize=1)
def get_persistence_settings() -> PersistenceSettings:
    """
    Return batch persistence settings from environment variables.
    """

    return PersistenceSettings(
        timeout_seconds=max(1.0, _get_float_env("CALC_PERSIST_TIMEOUT_SECONDS", 30.0)),
        max_retries=max(0, _get_int_env("CALC_PERSIST_MAX_RETRIES", 3)),
        backoff_initial_seconds=max(0.0, _get_float_env("CALC_PERSIST_BACKOFF_INITIAL_SECONDS", 0.5)),
        backoff_multiplier=max(1.0, _get_float_env("CALC_PERSIST_BACKOFF_MULTIPLIER", 2.0)),
    )


@lru_cache(maxsize=1)
def get_density_settings() -> DensitySettings:
    """
    Return density tracking settings from environment variables.

    Thresholds are clamped to [0, 1] and ``silent_min`` never drops below
    ``full_trace_max``.
    """

    full_trace_max = min(1.0, max(0.0, _get_float_env("DENSITY_FULL_TRACE_MAX", 0.70)))
    silent_min = min(1.0, max(full_trace_max, _get_float_env("DENSITY_SILENT_MIN", 0.95)))
    return DensitySettings(
        full_trace_max=full_trace_max,
        silent_min=silent_min,
        silent_min_executions=max(1, _get_int_env("DENSITY_SILENT_MIN_EXECUTIONS", 10)),
        learning_rate=min(1.0, max(0.01, _get_float_env("DENSITY_LEARNING_RATE", 0.2))),
        anomaly_decay=min(0.99, max(0.0, _get_float_env("DENSITY_ANOMALY_DECAY", 0.5))),
    )
