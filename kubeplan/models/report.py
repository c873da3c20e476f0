"""Execution report data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from kubeplan.models.plan import Action


class StepStatus(StrEnum):
    """Per-step execution state machine."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED)


class FailureKind(StrEnum):
    """Why a step failed."""

    TIMEOUT = "timeout"
    COLLABORATOR_ERROR = "collaborator_error"
    BLOCKED = "blocked"  # failed without attempt because a dependency failed
    CANCELLED = "cancelled"


class RunStatus(StrEnum):
    """Overall status of a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ErrorInfo:
    """Serialisable description of a step failure."""

    kind: FailureKind
    message: str
    caused_by: str | None = None  # key of the failed dependency, for BLOCKED


@dataclass
class NodeOutcome:
    """Final (or in-flight) status of one plan step."""

    key: str
    action: Action
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: ErrorInfo | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def failure_kind(self) -> FailureKind | None:
        return self.error.kind if self.error else None

    @property
    def attempted(self) -> bool:
        return self.attempts > 0


@dataclass(frozen=True)
class BarrierWait:
    """A timed barrier wait that elapsed during a run."""

    key: str
    seconds: float


@dataclass
class ExecutionReport:
    """Every requested node's final status, plus run-level information.

    ``order`` is the order in which steps started (no-ops and waits included).
    """

    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    waits: list[BarrierWait] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status(self) -> RunStatus:
        if any(o.status != StepStatus.SUCCEEDED for o in self.outcomes.values()):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    @property
    def succeeded(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if o.status == StepStatus.SUCCEEDED]

    @property
    def failed(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if o.status == StepStatus.FAILED]

    def outcome(self, key: str) -> NodeOutcome:
        return self.outcomes[key]
