"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubeplan.models.config import (
    ExecutorConfig,
    KubeplanConfig,
    LogConfig,
    RetryConfig,
    StateConfig,
)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEPLAN_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_state_path(value: str) -> str:
    if not value.strip():
        raise ValueError("State path must not be empty")
    return value


def load_config() -> KubeplanConfig:
    """Load configuration from KUBEPLAN_* environment variables."""
    return KubeplanConfig(
        executor=ExecutorConfig(
            max_workers=_env_int("MAX_WORKERS", 10, min_val=1, max_val=256),
            create_timeout=_env_float("CREATE_TIMEOUT", 1800.0, min_val=1.0),
            update_timeout=_env_float("UPDATE_TIMEOUT", 1800.0, min_val=1.0),
            delete_timeout=_env_float("DELETE_TIMEOUT", 1800.0, min_val=1.0),
        ),
        retry=RetryConfig(
            max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3, min_val=1, max_val=10),
            backoff_seconds=_env_float("RETRY_BACKOFF", 1.0, min_val=0.0),
            backoff_max_seconds=_env_float("RETRY_BACKOFF_MAX", 30.0, min_val=0.0),
        ),
        state=StateConfig(
            path=_validate_state_path(_env("STATE_PATH", "kubeplan.state.json")),
            lock_enabled=_env_bool("STATE_LOCK", True),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
