"""Core data structures for kubeplan."""

from kubeplan.models.config import KubeplanConfig
from kubeplan.models.plan import Action, BlockedNode, Plan, PlanMode, PlanStep
from kubeplan.models.report import (
    BarrierWait,
    ErrorInfo,
    ExecutionReport,
    FailureKind,
    NodeOutcome,
    RunStatus,
    StepStatus,
)
from kubeplan.models.resources import Node, NodeKind, Phase, Ref, Timeouts
from kubeplan.models.state import SCHEMA_VERSION, NodeStatus, State, StateRecord

__all__ = [
    "Action",
    "BarrierWait",
    "BlockedNode",
    "ErrorInfo",
    "ExecutionReport",
    "FailureKind",
    "KubeplanConfig",
    "Node",
    "NodeKind",
    "NodeOutcome",
    "NodeStatus",
    "Phase",
    "Plan",
    "PlanMode",
    "PlanStep",
    "Ref",
    "RunStatus",
    "SCHEMA_VERSION",
    "State",
    "StateRecord",
    "StepStatus",
    "Timeouts",
]
