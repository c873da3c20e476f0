"""Exception hierarchy for kubeplan.

Build- and run-level errors (``CycleError``, ``ConfigMismatchError``,
``StateCorruptionError``, ``StateLockError``) abort before any action runs.
Node-level errors (``CollaboratorError``, ``NodeTimeoutError``) are caught
by the executor and recorded against the node; they only propagate to the
node's transitive dependents.
"""

from __future__ import annotations

from collections.abc import Sequence


class KubeplanError(Exception):
    """Base class for every error raised by kubeplan."""


class CycleError(KubeplanError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class ConfigMismatchError(KubeplanError):
    """A node references or depends on a node that was never declared."""

    def __init__(self, key: str, reference: str, detail: str = "") -> None:
        self.key = key
        self.reference = reference
        msg = f"Node '{key}' references undeclared node '{reference}'"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class StateCorruptionError(KubeplanError):
    """Persisted state cannot be read back."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"State at '{path}' is corrupt: {reason}")


class StateLockError(KubeplanError):
    """Another writer holds the state lock."""

    def __init__(self, path: str, holder: str = "") -> None:
        self.path = path
        self.holder = holder
        msg = f"State at '{path}' is locked"
        if holder:
            msg = f"{msg} by {holder}"
        super().__init__(msg)


class CollaboratorError(KubeplanError):
    """A collaborator call for a node failed."""

    def __init__(self, message: str, key: str = "") -> None:
        self.key = key
        self.message = message
        super().__init__(f"{key}: {message}" if key else message)


class TransientCollaboratorError(CollaboratorError):
    """A collaborator failure worth retrying (throttling, eventual consistency)."""


class NodeTimeoutError(KubeplanError):
    """A collaborator call exceeded the node's timeout."""

    def __init__(self, key: str, seconds: float) -> None:
        self.key = key
        self.seconds = seconds
        super().__init__(f"Node '{key}' timed out after {seconds:g}s")
