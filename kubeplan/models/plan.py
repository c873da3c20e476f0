"""Plan data structures produced by the planner and consumed by the executor."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kubeplan.models.resources import NodeKind, Phase, Timeouts


class Action(StrEnum):
    """What the executor does with a node."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "noop"
    WAIT = "wait"  # destroy-time form of a timed barrier

    @property
    def phase(self) -> Phase | None:
        """Timeout phase governing this action, if any."""
        return {
            Action.CREATE: Phase.CREATE,
            Action.UPDATE: Phase.UPDATE,
            Action.DESTROY: Phase.DELETE,
        }.get(self)

    @property
    def is_destructive(self) -> bool:
        return self in (Action.DESTROY, Action.WAIT)


class PlanMode(StrEnum):
    """Whether the plan converges to the graph or tears everything down."""

    APPLY = "apply"
    DESTROY = "destroy"


@dataclass(frozen=True)
class PlanStep:
    """One (node, action) pair of a plan.

    ``predecessors`` are the keys of steps in the same plan that must
    succeed before this one may start.  For destroy steps the edges are
    already reversed.
    """

    key: str
    action: Action
    kind: NodeKind
    predecessors: frozenset[str] = frozenset()
    config: dict[str, Any] | None = field(default=None, compare=False)
    config_hash: str = ""
    dependencies: tuple[str, ...] = ()
    timeouts: Timeouts = field(default_factory=Timeouts)
    destroy_delay: float | None = None
    reason: str = ""


@dataclass(frozen=True)
class BlockedNode:
    """A node excluded from the executable plan."""

    key: str
    action: Action
    reason: str


@dataclass(frozen=True)
class Plan:
    """Ordered sequence of plan steps plus the nodes that could not be planned.

    Invariant: a step never appears before any of its predecessors.
    """

    mode: PlanMode
    steps: tuple[PlanStep, ...] = ()
    blocked: tuple[BlockedNode, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for step in self.steps:
            missing = step.predecessors - seen
            if missing:
                raise ValueError(f"plan step {step.key!r} precedes its predecessors {sorted(missing)}")
            seen.add(step.key)

    @property
    def keys(self) -> list[str]:
        return [s.key for s in self.steps]

    def step(self, key: str) -> PlanStep:
        for s in self.steps:
            if s.key == key:
                return s
        raise KeyError(key)

    def actionable(self) -> list[PlanStep]:
        """Steps that do something (everything except no-ops)."""
        return [s for s in self.steps if s.action != Action.NOOP]

    @property
    def is_empty(self) -> bool:
        return not self.actionable() and not self.blocked

    def summary(self) -> dict[str, int]:
        """Count steps per action, plus blocked nodes."""
        counts = Counter(s.action.value for s in self.steps)
        result = {a.value: counts.get(a.value, 0) for a in Action}
        result["blocked"] = len(self.blocked)
        return result

    def render(self) -> str:
        """Stable human-readable rendering of the plan."""
        lines = [f"plan ({self.mode.value}):"]
        symbols = {
            Action.CREATE: "+",
            Action.UPDATE: "~",
            Action.DESTROY: "-",
            Action.NOOP: " ",
            Action.WAIT: "…",
        }
        for s in self.steps:
            line = f"  {symbols[s.action]} {s.key} ({s.action.value})"
            if s.action == Action.WAIT:
                line += f" {s.destroy_delay:g}s"
            lines.append(line)
        for b in self.blocked:
            lines.append(f"  ! {b.key} ({b.action.value}, blocked: {b.reason})")
        summary = self.summary()
        lines.append(
            "{create} to create, {update} to update, {destroy} to destroy, "
            "{wait} waits, {blocked} blocked.".format(**summary)
        )
        return "\n".join(lines)
