"""Graph builder: declarations in, immutable DAG out.

Build runs in fixed passes:
    1. expand module boundaries recursively into a flat node set
    2. expand ``dynamic`` blocks in every node config
    3. resolve explicit ``depends_on`` edges and inferred reference edges
    4. deduplicate edges and reject cycles (three-colour DFS)

Everything that can go wrong here is fatal: ``ConfigMismatchError`` for
references to undeclared nodes, ``CycleError`` for cycles.  Nothing is
auto-corrected.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Union

from kubeplan.errors import ConfigMismatchError, CycleError
from kubeplan.graph.models import DAG, Edge, EdgeType
from kubeplan.graph.references import (
    expand_dynamic,
    iter_references,
    reference_root,
    resolve_key,
    rewrite_references,
)
from kubeplan.models.resources import Node, NodeKind
from kubeplan.observability.logging import get_logger

if TYPE_CHECKING:
    from kubeplan.collaborators.base import ModuleExpander
    from kubeplan.collaborators.registry import CollaboratorRegistry

_logger = get_logger("graph.builder")

_MAX_MODULE_DEPTH = 16

# Explicit beats module beats inferred when the same pair shows up twice.
_EDGE_RANK = {EdgeType.EXPLICIT: 0, EdgeType.MODULE: 1, EdgeType.INFERRED: 2}

EdgeSpec = Union[Edge, tuple[str, str]]
Expanders = Union["CollaboratorRegistry", Mapping[str, "ModuleExpander"], None]


@dataclass
class _Flattened:
    """Working set of the module expansion pass."""

    nodes: dict[str, Node] = field(default_factory=dict)
    edges: list[tuple[str, str]] = field(default_factory=list)
    # module key -> every flat key inside it, nested modules included
    members: dict[str, set[str]] = field(default_factory=dict)
    # module key -> output name -> (rewritten) output value
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    # module key -> the boundary node itself
    boundaries: dict[str, Node] = field(default_factory=dict)


def build(
    nodes: Iterable[Node],
    explicit_edges: Iterable[EdgeSpec] = (),
    expanders: Expanders = None,
) -> DAG:
    """Assemble *nodes* and *explicit_edges* into a validated DAG.

    Args:
        nodes:          Parsed node declarations.  Keys must be unique.
        explicit_edges: Extra ordering edges as ``Edge`` or ``(source, target)``
                        pairs, on top of each node's ``depends_on``.
        expanders:      Registry or mapping used to expand module boundaries.

    Raises:
        ConfigMismatchError: a dependency or reference names an undeclared node,
            or a module has no expander.
        CycleError: the resulting graph has a cycle.
    """
    flat = _Flattened()
    _flatten(list(nodes), [_as_pair(e) for e in explicit_edges], expanders, flat, depth=0)

    flat.nodes = {k: replace(n, config=expand_dynamic(n.config)) for k, n in flat.nodes.items()}

    edges = _resolve_edges(flat)
    deduped = _dedupe(edges)
    cycle = find_cycle(flat.nodes.keys(), deduped)
    if cycle:
        _logger.error("dependency_cycle", cycle=cycle)
        raise CycleError(cycle)

    dag = DAG(flat.nodes.values(), deduped)
    _logger.debug(
        "graph_built",
        nodes=dag.node_count,
        edges=dag.edge_count,
        modules=len(flat.members),
    )
    return dag


# ---------------------------------------------------------------------------
# Pass 1: module expansion
# ---------------------------------------------------------------------------


def _flatten(
    nodes: list[Node],
    edges: list[tuple[str, str]],
    expanders: Expanders,
    flat: _Flattened,
    depth: int,
) -> set[str]:
    """Add *nodes* to *flat*, expanding modules.  Returns the flat keys added."""
    added: set[str] = set()
    flat.edges.extend(edges)
    for node in nodes:
        if node.key in flat.nodes or node.key in flat.boundaries:
            raise ValueError(f"Duplicate node key: {node.key}")
        if node.kind != NodeKind.MODULE_BOUNDARY:
            flat.nodes[node.key] = node
            added.add(node.key)
            continue

        if depth >= _MAX_MODULE_DEPTH:
            # a module that keeps expanding into itself
            parts = node.key.split(".")
            raise CycleError([".".join(parts[: i + 2]) for i in range(0, len(parts) - 1, 2)])

        expander = _expander_for(expanders, node)
        if expander is None:
            source = node.config.get("source", "")
            raise ConfigMismatchError(node.key, str(source or node.key), "no module expander registered")

        flat.boundaries[node.key] = node
        expansion = expander.expand(expand_dynamic(node.config))
        prefix = node.key
        local_keys = {n.key for n in expansion.nodes}

        def _prefixed(path: str, _local: set[str] = local_keys, _prefix: str = prefix) -> str:
            return f"{_prefix}.{path}" if resolve_key(path, _local) else path

        sub_nodes = [
            replace(
                n,
                key=f"{prefix}.{n.key}",
                config=rewrite_references(n.config, _prefixed),
                depends_on=tuple(_prefixed(d) for d in n.depends_on),
            )
            for n in expansion.nodes
        ]
        sub_edges = [tuple(_prefixed(p) for p in _as_pair(e)) for e in expansion.edges]
        members = _flatten(sub_nodes, sub_edges, expanders, flat, depth + 1)  # type: ignore[arg-type]
        # nested module members are already in flat.members under their own key
        flat.members[prefix] = members
        flat.outputs[prefix] = {
            name: rewrite_references(value, _prefixed) for name, value in expansion.outputs.items()
        }
        added |= members
        _logger.debug("module_expanded", module=prefix, nodes=len(members), depth=depth)
    return added


def _expander_for(expanders: Expanders, node: Node) -> ModuleExpander | None:
    if expanders is None:
        return None
    lookup = getattr(expanders, "expander_for", None)
    if lookup is not None:
        return lookup(node)
    expander = expanders.get(node.key)  # type: ignore[union-attr]
    if expander is None:
        source = node.config.get("source")
        if isinstance(source, str):
            expander = expanders.get(source)  # type: ignore[union-attr]
    return expander


def _as_pair(edge: EdgeSpec) -> tuple[str, str]:
    if isinstance(edge, Edge):
        return edge.pair
    source, target = edge
    return (source, target)


# ---------------------------------------------------------------------------
# Pass 3: edge resolution
# ---------------------------------------------------------------------------


class _Resolver:
    """Maps a dotted reference path onto the flat node keys it stands for."""

    def __init__(self, flat: _Flattened) -> None:
        self._flat = flat

    def resolve(self, path: str, referrer: str, _seen: frozenset[str] = frozenset()) -> set[str]:
        key = resolve_key(path, self._flat.nodes)
        if key is not None:
            return {key}

        module = resolve_key(path, self._flat.members)
        if module is None:
            raise ConfigMismatchError(referrer, reference_root(path))

        rest = path[len(module) + 1 :]
        if not rest:
            return set(self._flat.members[module])

        output = rest.split(".", 1)[0]
        outputs = self._flat.outputs.get(module, {})
        if output not in outputs:
            raise ConfigMismatchError(referrer, f"{module}.{output}", "module has no such output")
        marker = f"{module}.{output}"
        if marker in _seen:
            raise CycleError([*sorted(_seen), marker])
        targets: set[str] = set()
        value = outputs[output]
        for ref in iter_references(value if isinstance(value, Mapping) else {"value": value}):
            targets |= self.resolve(ref.path, referrer, _seen | {marker})
        return targets


def _resolve_edges(flat: _Flattened) -> list[Edge]:
    resolver = _Resolver(flat)
    edges: list[Edge] = []

    for key, node in flat.nodes.items():
        for dep in node.depends_on:
            for source in resolver.resolve(dep, key):
                edge_type = EdgeType.EXPLICIT if dep in flat.nodes else EdgeType.MODULE
                edges.append(Edge(source, key, edge_type, source_field="depends_on"))
        for ref in iter_references(node.config):
            for source in resolver.resolve(ref.path, key):
                edges.append(Edge(source, key, EdgeType.INFERRED, source_field=ref.field))

    for source_path, target_path in flat.edges:
        for target in resolver.resolve(target_path, target_path):
            for source in resolver.resolve(source_path, target_path):
                edges.append(Edge(source, target, EdgeType.EXPLICIT))

    # a module's own dependencies apply to everything inside it
    for module, boundary in flat.boundaries.items():
        members = flat.members[module]
        sources: list[tuple[str, str]] = [(d, "depends_on") for d in boundary.depends_on]
        sources += [(r.path, r.field) for r in iter_references(expand_dynamic(boundary.config))]
        for path, where in sources:
            for source in resolver.resolve(path, module):
                if source in members:
                    continue
                for member in members:
                    edges.append(Edge(source, member, EdgeType.MODULE, source_field=where))

    return [e for e in edges if e.source != e.target]


def _dedupe(edges: list[Edge]) -> list[Edge]:
    best: dict[tuple[str, str], Edge] = {}
    for edge in edges:
        current = best.get(edge.pair)
        if current is None or _EDGE_RANK[edge.edge_type] < _EDGE_RANK[current.edge_type]:
            best[edge.pair] = edge
    return [best[p] for p in sorted(best)]


# ---------------------------------------------------------------------------
# Pass 4: cycle detection
# ---------------------------------------------------------------------------

_WHITE, _GRAY, _BLACK = 0, 1, 2


def find_cycle(keys: Iterable[str], edges: Iterable[Edge | tuple[str, str]]) -> list[str] | None:
    """Return one cycle as ``[a, b, ..., a]`` in edge direction, or None.

    Iterative depth-first search with white/gray/black marking; a gray node
    reached again closes a cycle.  Keys and children are visited in sorted
    order so the reported cycle is deterministic.
    """
    adjacency: dict[str, list[str]] = {k: [] for k in keys}
    for edge in edges:
        source, target = _as_pair(edge)
        adjacency.setdefault(source, []).append(target)
        adjacency.setdefault(target, [])
    for children in adjacency.values():
        children.sort()

    color = dict.fromkeys(adjacency, _WHITE)
    for root in sorted(adjacency):
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if color[child] == _GRAY:
                return [*path[path.index(child) :], child]
            if color[child] == _WHITE:
                color[child] = _GRAY
                path.append(child)
                stack.append(iter(adjacency[child]))
    return None
