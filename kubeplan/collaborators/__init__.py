"""Collaborator contracts and registry."""

from kubeplan.collaborators.base import (
    Expansion,
    ImperativeActionCollaborator,
    ManagedResourceCollaborator,
    ModuleExpander,
    RunContext,
)
from kubeplan.collaborators.registry import CollaboratorRegistry
from kubeplan.collaborators.shell import ShellActionCollaborator

__all__ = [
    "CollaboratorRegistry",
    "Expansion",
    "ImperativeActionCollaborator",
    "ManagedResourceCollaborator",
    "ModuleExpander",
    "RunContext",
    "ShellActionCollaborator",
]
