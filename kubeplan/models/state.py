"""Persisted state data structures."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kubeplan.models.resources import NodeKind, Timeouts

SCHEMA_VERSION = 1


class NodeStatus(StrEnum):
    """Last known status of a provisioned node."""

    HEALTHY = "healthy"
    FAILED = "failed"  # last operation timed out; external outcome unknown
    TAINTED = "tainted"  # last operation raised a collaborator error


@dataclass(frozen=True)
class StateRecord:
    """Last-known state of one node, keyed by node identity."""

    key: str
    kind: NodeKind
    config_hash: str
    blob: dict[str, Any] | None = None
    dependencies: tuple[str, ...] = ()
    timeouts: Timeouts = field(default_factory=Timeouts)
    destroy_delay: float | None = None
    status: NodeStatus = NodeStatus.HEALTHY
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def is_healthy(self) -> bool:
        return self.status == NodeStatus.HEALTHY

    def with_status(self, status: NodeStatus) -> StateRecord:
        return replace(self, status=status, updated_at=datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "config_hash": self.config_hash,
            "blob": self.blob,
            "dependencies": list(self.dependencies),
            "timeouts": self.timeouts.to_dict(),
            "destroy_delay": self.destroy_delay,
            "status": self.status.value,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> StateRecord:
        """Inverse of ``to_dict``.  Raises KeyError/ValueError/TypeError on bad input."""
        blob = data.get("blob")
        if blob is not None and not isinstance(blob, dict):
            raise TypeError(f"blob must be an object, got {type(blob).__name__}")
        deps = data.get("dependencies", [])
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            raise TypeError("dependencies must be a list of strings")
        delay = data.get("destroy_delay")
        return cls(
            key=key,
            kind=NodeKind(data["kind"]),
            config_hash=str(data["config_hash"]),
            blob=blob,
            dependencies=tuple(deps),
            timeouts=Timeouts.from_dict(data.get("timeouts")),
            destroy_delay=float(delay) if delay is not None else None,
            status=NodeStatus(data.get("status", NodeStatus.HEALTHY.value)),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class State:
    """Keyed collection of state records.

    ``serial`` increases on every save; ``lineage`` identifies the state
    across saves and is fixed by the first one.
    """

    records: dict[str, StateRecord] = field(default_factory=dict)
    serial: int = 0
    lineage: str = ""
    schema_version: int = SCHEMA_VERSION

    def get(self, key: str) -> StateRecord | None:
        return self.records.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.records

    def __len__(self) -> int:
        return len(self.records)

    def put(self, record: StateRecord) -> None:
        self.records[record.key] = record

    def remove(self, key: str) -> StateRecord | None:
        return self.records.pop(key, None)

    def snapshot(self) -> State:
        """Deep copy that later writes to this state cannot affect."""
        return State(
            records={k: replace(r, blob=copy.deepcopy(r.blob)) for k, r in self.records.items()},
            serial=self.serial,
            lineage=self.lineage,
            schema_version=self.schema_version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "serial": self.serial,
            "lineage": self.lineage,
            "records": {k: self.records[k].to_dict() for k in sorted(self.records)},
        }
