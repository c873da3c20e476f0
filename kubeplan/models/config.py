"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ExecutorConfig:
    """Worker pool and default timeout configuration."""

    max_workers: int = 10
    create_timeout: float = 1800.0
    update_timeout: float = 1800.0
    delete_timeout: float = 1800.0


@dataclass
class RetryConfig:
    """Retry policy for transient collaborator errors."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 30.0


@dataclass
class StateConfig:
    """State store configuration."""

    path: str = "kubeplan.state.json"
    lock_enabled: bool = True


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubeplanConfig:
    """Top-level kubeplan configuration."""

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    state: StateConfig = field(default_factory=StateConfig)
    log: LogConfig = field(default_factory=LogConfig)
