"""Resource dependency graph: module expansion, reference inference, cycle checks.

Turns parsed node declarations plus explicit ordering edges into an immutable
DAG.  Inferred edges come from ``Ref`` objects and ``${key.attr}``
interpolations found in node configs.
"""

from kubeplan.graph.models import DAG, Edge, EdgeType, topological_sort
from kubeplan.graph.builder import build, find_cycle
from kubeplan.graph.references import expand_dynamic, iter_references

__all__ = [
    "DAG",
    "Edge",
    "EdgeType",
    "build",
    "expand_dynamic",
    "find_cycle",
    "iter_references",
    "topological_sort",
]
