"""Registry mapping node kinds (and resource types) to collaborators."""

from __future__ import annotations

from collections.abc import Mapping

from kubeplan.collaborators.base import (
    ImperativeActionCollaborator,
    ManagedResourceCollaborator,
    ModuleExpander,
    RunContext,
)
from kubeplan.models.resources import Node
from kubeplan.observability.logging import get_logger

_logger = get_logger("collaborators.registry")


class CollaboratorRegistry:
    """Resolves the collaborator responsible for a node.

    Managed resources and imperative actions are looked up by resource type
    first (``helm_release`` for ``helm_release.ingress``) and fall back to the
    kind-wide default.  Module expanders are looked up by module key first and
    then by the module's ``source`` config value.

    Args:
        managed:    Default collaborator for every managed resource.
        imperative: Default collaborator for every imperative action.
        context:    Per-run provider context passed to every call.
    """

    def __init__(
        self,
        managed: ManagedResourceCollaborator | None = None,
        imperative: ImperativeActionCollaborator | None = None,
        context: RunContext | None = None,
    ) -> None:
        self._managed_default = managed
        self._imperative_default = imperative
        self._managed_by_type: dict[str, ManagedResourceCollaborator] = {}
        self._imperative_by_type: dict[str, ImperativeActionCollaborator] = {}
        self._expanders: dict[str, ModuleExpander] = {}
        self.context = context or RunContext()

    def register_managed(self, resource_type: str, collaborator: ManagedResourceCollaborator) -> None:
        self._managed_by_type[resource_type] = collaborator
        _logger.debug("managed_collaborator_registered", resource_type=resource_type)

    def register_imperative(self, resource_type: str, collaborator: ImperativeActionCollaborator) -> None:
        self._imperative_by_type[resource_type] = collaborator
        _logger.debug("imperative_collaborator_registered", resource_type=resource_type)

    def register_expander(self, name: str, expander: ModuleExpander) -> None:
        """Register an expander for a module key (``module.eks``) or a module source."""
        self._expanders[name] = expander

    def managed_for(self, key: str) -> ManagedResourceCollaborator | None:
        return self._managed_by_type.get(_resource_type(key), self._managed_default)

    def imperative_for(self, key: str) -> ImperativeActionCollaborator | None:
        return self._imperative_by_type.get(_resource_type(key), self._imperative_default)

    def expander_for(self, node: Node) -> ModuleExpander | None:
        expander = self._expanders.get(node.key)
        if expander is None:
            source = node.config.get("source")
            if isinstance(source, str):
                expander = self._expanders.get(source)
        return expander

    @property
    def expanders(self) -> Mapping[str, ModuleExpander]:
        return dict(self._expanders)

    def with_context(self, context: RunContext) -> CollaboratorRegistry:
        """Copy of this registry bound to another run context."""
        clone = CollaboratorRegistry(self._managed_default, self._imperative_default, context)
        clone._managed_by_type = dict(self._managed_by_type)
        clone._imperative_by_type = dict(self._imperative_by_type)
        clone._expanders = dict(self._expanders)
        return clone


def _resource_type(key: str) -> str:
    # module.eks.aws_eks_cluster.this -> aws_eks_cluster
    parts = key.split(".")
    while len(parts) > 2 and parts[0] == "module":
        parts = parts[2:]
    return parts[0]
