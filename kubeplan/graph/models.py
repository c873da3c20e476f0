"""Data structures for the resource dependency graph."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from kubeplan.models.resources import Node


class EdgeType(StrEnum):
    """How an ordering edge came to exist."""

    EXPLICIT = "explicit"  # depends_on
    INFERRED = "inferred"  # attribute reference in config
    MODULE = "module"  # dependency on or of a module boundary


@dataclass(frozen=True)
class Edge:
    """``source`` must reach its target phase before ``target`` starts its own."""

    source: str
    target: str
    edge_type: EdgeType = EdgeType.EXPLICIT
    source_field: str = field(default="", compare=False)  # config path of the reference

    @property
    def pair(self) -> tuple[str, str]:
        return (self.source, self.target)


class DAG:
    """Immutable, acyclic graph of resource nodes.

    Only ``kubeplan.graph.builder.build`` should construct one: it is the
    place that validates keys and rejects cycles.  A changed declaration
    produces a new DAG; nothing here mutates after construction.
    """

    __slots__ = ("_nodes", "_edges", "_deps", "_dependents", "_order")

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        node_map = {n.key: n for n in nodes}
        deps: dict[str, set[str]] = {k: set() for k in node_map}
        dependents: dict[str, set[str]] = {k: set() for k in node_map}
        edge_set = frozenset(edges)
        for e in edge_set:
            deps[e.target].add(e.source)
            dependents[e.source].add(e.target)
        self._nodes: Mapping[str, Node] = MappingProxyType(node_map)
        self._edges: frozenset[Edge] = edge_set
        self._deps: Mapping[str, frozenset[str]] = MappingProxyType({k: frozenset(v) for k, v in deps.items()})
        self._dependents: Mapping[str, frozenset[str]] = MappingProxyType(
            {k: frozenset(v) for k, v in dependents.items()}
        )
        self._order: tuple[str, ...] = topological_sort(self._deps)

    def __setattr__(self, name: str, value: object) -> None:
        if hasattr(self, "_order"):
            raise AttributeError("DAG is immutable")
        object.__setattr__(self, name, value)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"DAG(nodes={len(self._nodes)}, edges={len(self._edges)})"

    @property
    def nodes(self) -> Mapping[str, Node]:
        return self._nodes

    @property
    def edges(self) -> frozenset[Edge]:
        return self._edges

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len({e.pair for e in self._edges})

    def node(self, key: str) -> Node:
        return self._nodes[key]

    def dependencies(self, key: str) -> frozenset[str]:
        """Keys that must come before *key*."""
        return self._deps[key]

    def dependents(self, key: str) -> frozenset[str]:
        """Keys that must come after *key*."""
        return self._dependents[key]

    def topological_order(self) -> tuple[str, ...]:
        """Kahn order with ties broken by ascending key."""
        return self._order

    def ancestors(self, keys: Iterable[str]) -> set[str]:
        """*keys* plus everything they transitively depend on."""
        return closure(keys, self._deps)

    def descendants(self, keys: Iterable[str]) -> set[str]:
        """*keys* plus everything that transitively depends on them."""
        return closure(keys, self._dependents)


def topological_sort(deps: Mapping[str, Iterable[str]]) -> tuple[str, ...]:
    """Deterministic Kahn sort: among ready keys the smallest goes first.

    *deps* maps each key to the keys it depends on.  Dependencies outside the
    mapping are ignored.  Raises ValueError if the keys do not form a DAG;
    callers that need the cycle itself use ``find_cycle``.
    """
    incoming = {k: 0 for k in deps}
    outgoing: dict[str, list[str]] = {k: [] for k in deps}
    for key, ds in deps.items():
        for d in set(ds):
            if d in deps:
                incoming[key] += 1
                outgoing[d].append(key)

    ready = [k for k, c in incoming.items() if c == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        key = heapq.heappop(ready)
        order.append(key)
        for child in outgoing[key]:
            incoming[child] -= 1
            if incoming[child] == 0:
                heapq.heappush(ready, child)

    if len(order) != len(incoming):
        raise ValueError("graph contains a cycle")
    return tuple(order)


def closure(keys: Iterable[str], adjacency: Mapping[str, frozenset[str]]) -> set[str]:
    seen: set[str] = set()
    stack = list(keys)
    while stack:
        key = stack.pop()
        if key in seen:
            continue
        seen.add(key)
        stack.extend(adjacency.get(key, ()))
    return seen
