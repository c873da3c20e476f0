"""Resource node data structures and enumerations."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class NodeKind(StrEnum):
    """Kind of provisionable unit a node represents."""

    MANAGED_RESOURCE = "managed_resource"
    MODULE_BOUNDARY = "module_boundary"
    IMPERATIVE_ACTION = "imperative_action"
    TIMED_BARRIER = "timed_barrier"


class Phase(StrEnum):
    """Lifecycle phase a timeout applies to."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Timeouts:
    """Per-node lifecycle timeouts in seconds.  ``None`` means engine default."""

    create: float | None = None
    update: float | None = None
    delete: float | None = None

    def for_phase(self, phase: Phase) -> float | None:
        return {
            Phase.CREATE: self.create,
            Phase.UPDATE: self.update,
            Phase.DELETE: self.delete,
        }[phase]

    def to_dict(self) -> dict[str, float | None]:
        return {"create": self.create, "update": self.update, "delete": self.delete}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Timeouts:
        data = data or {}
        if not isinstance(data, Mapping):
            raise TypeError(f"timeouts must be an object, got {type(data).__name__}")
        return cls(
            create=_opt_float(data.get("create")),
            update=_opt_float(data.get("update")),
            delete=_opt_float(data.get("delete")),
        )


@dataclass(frozen=True)
class Ref:
    """Reference to an attribute produced by another node.

    ``Ref("aws_vpc.main", "id")`` is equivalent to the interpolation string
    ``"${aws_vpc.main.id}"`` inside a config payload.
    """

    key: str
    attribute: str = ""

    def __str__(self) -> str:
        if self.attribute:
            return f"${{{self.key}.{self.attribute}}}"
        return f"${{{self.key}}}"


@dataclass(frozen=True)
class Node:
    """A provisionable unit in the resource graph.

    Produced by whatever parses the declarations, consumed by the graph
    builder.  ``config`` is opaque to the engine apart from reference scanning
    and ``dynamic`` block expansion.
    """

    key: str
    kind: NodeKind = NodeKind.MANAGED_RESOURCE
    config: Mapping[str, Any] = field(default_factory=dict, hash=False)
    depends_on: tuple[str, ...] = ()
    timeouts: Timeouts = field(default_factory=Timeouts)
    destroy_delay: float | None = None  # timed_barrier only

    def __post_init__(self) -> None:
        if not self.key or not self.key.strip():
            raise ValueError("node key must be a non-empty string")
        # accept any iterable for depends_on but store a tuple
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if self.kind == NodeKind.TIMED_BARRIER:
            if self.destroy_delay is None or self.destroy_delay < 0:
                raise ValueError(f"timed barrier {self.key!r} needs a non-negative destroy_delay")
        elif self.destroy_delay is not None:
            raise ValueError(f"destroy_delay is only valid on timed barriers, not {self.key!r}")

    @property
    def type(self) -> str:
        """The resource type part of the key (``aws_vpc`` for ``aws_vpc.main``)."""
        return self.key.split(".", 1)[0]


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)
