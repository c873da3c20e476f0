"""Planner: desired-vs-prior diffing and deterministic apply/destroy ordering."""

from kubeplan.planner.hashing import compute_config_hash
from kubeplan.planner.planner import plan, plan_destroy

__all__ = ["compute_config_hash", "plan", "plan_destroy"]
