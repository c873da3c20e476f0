"""Collaborator contracts, one per node kind.

The engine performs no cloud or cluster calls itself.  Every side effect goes
through one of these abstract classes, registered per node kind (and
optionally per resource type) in a ``CollaboratorRegistry``.

Errors: implementations raise ``CollaboratorError`` for permanent failures
and ``TransientCollaboratorError`` for failures worth retrying.  Any other
exception is wrapped into ``CollaboratorError`` by the executor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from kubeplan.graph.models import Edge
from kubeplan.models.resources import Node


@dataclass(frozen=True)
class RunContext:
    """Per-run provider context handed to every collaborator call.

    Holds what the declarations configure globally (provider region,
    credential handles, cluster endpoints).  Passed explicitly at run start;
    collaborators must not keep it between runs.
    """

    run_id: str = field(default_factory=lambda: uuid4().hex[:12])
    provider: Mapping[str, Any] = field(default_factory=dict)
    credentials: Any = field(default=None, repr=False)


class ManagedResourceCollaborator(ABC):
    """Creates, updates, destroys and reads one family of managed resources.

    ``blob`` is whatever the collaborator returned last time for the node; the
    engine persists it verbatim and never looks inside.
    """

    @abstractmethod
    async def create(self, key: str, config: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        """Provision the resource and return its observed state."""

    @abstractmethod
    async def update(
        self,
        key: str,
        blob: dict[str, Any] | None,
        config: Mapping[str, Any],
        ctx: RunContext,
    ) -> dict[str, Any]:
        """Converge an existing resource to *config* and return its new state."""

    @abstractmethod
    async def destroy(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> None:
        """Remove the resource."""

    async def read(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> dict[str, Any] | None:
        """Return the current real state, or None if the resource is gone.

        Used for drift detection.  The default reports no drift.
        """
        return blob


class ImperativeActionCollaborator(ABC):
    """Runs a single blocking side effect (a patch, a rollout restart...).

    The call is expected to block until its external convergence condition
    holds; the engine only awaits it or cancels it on timeout.
    """

    @abstractmethod
    async def run(self, key: str, config: Mapping[str, Any], timeout: float, ctx: RunContext) -> int:
        """Run the action and return its exit status (0 means success)."""


@dataclass(frozen=True)
class Expansion:
    """Result of expanding a module boundary.

    Node keys are local to the module; the graph builder prefixes them with the
    module key.  ``outputs`` maps output names to config values whose
    references name the module-local nodes that produce them.
    """

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    outputs: Mapping[str, Any] = field(default_factory=dict)


class ModuleExpander(ABC):
    """Expands a module boundary into a nested sub-graph at build time."""

    @abstractmethod
    def expand(self, config: Mapping[str, Any]) -> Expansion:
        """Return the module's nodes, edges and outputs for *config*."""
