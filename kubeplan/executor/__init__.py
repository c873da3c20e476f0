"""Executor: runs plans concurrently against registered collaborators."""

from kubeplan.executor.clock import Clock, SimulatedClock, SystemClock
from kubeplan.executor.executor import Executor

__all__ = ["Clock", "Executor", "SimulatedClock", "SystemClock"]
