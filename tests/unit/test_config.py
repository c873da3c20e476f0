"""Unit tests for environment-driven configuration."""

from __future__ import annotations

import os

import pytest

from kubeplan.config import load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("KUBEPLAN_"):
            monkeypatch.delenv(key)


def test_defaults() -> None:
    config = load_config()
    assert config.executor.max_workers == 10
    assert config.executor.create_timeout == 1800.0
    assert config.retry.max_attempts == 3
    assert config.retry.backoff_seconds == 1.0
    assert config.retry.backoff_max_seconds == 30.0
    assert config.state.path == "kubeplan.state.json"
    assert config.state.lock_enabled is True
    assert config.log.level == "info"


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPLAN_MAX_WORKERS", "4")
    monkeypatch.setenv("KUBEPLAN_DELETE_TIMEOUT", "2400")
    monkeypatch.setenv("KUBEPLAN_RETRY_BACKOFF_MAX", "5")
    monkeypatch.setenv("KUBEPLAN_STATE_PATH", "/var/lib/kubeplan/prod.json")
    monkeypatch.setenv("KUBEPLAN_STATE_LOCK", "false")
    monkeypatch.setenv("KUBEPLAN_LOG_LEVEL", "DEBUG")

    config = load_config()

    assert config.executor.max_workers == 4
    assert config.executor.delete_timeout == 2400.0
    assert config.retry.backoff_max_seconds == 5.0
    assert config.state.path == "/var/lib/kubeplan/prod.json"
    assert config.state.lock_enabled is False
    assert config.log.level == "debug"


@pytest.mark.parametrize(
    ("name", "value", "attr", "expected"),
    [
        ("KUBEPLAN_MAX_WORKERS", "0", "max_workers", 1),
        ("KUBEPLAN_MAX_WORKERS", "10000", "max_workers", 256),
        ("KUBEPLAN_CREATE_TIMEOUT", "0", "create_timeout", 1.0),
    ],
)
def test_executor_values_are_clamped(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, attr: str, expected: float
) -> None:
    monkeypatch.setenv(name, value)
    assert getattr(load_config().executor, attr) == expected


def test_retry_attempts_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPLAN_RETRY_MAX_ATTEMPTS", "50")
    assert load_config().retry.max_attempts == 10


def test_invalid_log_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPLAN_LOG_LEVEL", "verbose")
    with pytest.raises(ValueError, match="Invalid log level"):
        load_config()


def test_empty_state_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPLAN_STATE_PATH", "  ")
    with pytest.raises(ValueError, match="State path"):
        load_config()
