"""Load already-parsed node declarations from a JSON document.

This is the node model serialised, not a declaration language::

    {
      "nodes": [
        {"key": "aws_vpc.main", "config": {"cidr": "10.0.0.0/16"}},
        {"key": "aws_eks_cluster.main",
         "config": {"vpc_id": "${aws_vpc.main.id}"},
         "timeouts": {"delete": 1800}},
        {"key": "time_sleep.lbc", "kind": "timed_barrier", "destroy_delay": 90,
         "depends_on": ["helm_release.lbc"]}
      ],
      "edges": [["aws_vpc.main", "aws_eks_cluster.main"]]
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from kubeplan.models.resources import Node, NodeKind, Timeouts


def load_document(path: str | Path) -> tuple[list[Node], list[tuple[str, str]]]:
    """Read *path* and return ``(nodes, explicit_edges)``.

    Raises ValueError with the offending entry on malformed input.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_document(raw)


def parse_document(raw: Any) -> tuple[list[Node], list[tuple[str, str]]]:
    if not isinstance(raw, dict) or not isinstance(raw.get("nodes"), list):
        raise ValueError("document must be an object with a 'nodes' list")

    nodes = [_parse_node(i, entry) for i, entry in enumerate(raw["nodes"])]

    edges: list[tuple[str, str]] = []
    for i, entry in enumerate(raw.get("edges", [])):
        if not (isinstance(entry, list) and len(entry) == 2 and all(isinstance(e, str) for e in entry)):
            raise ValueError(f"edges[{i}] must be a [source, target] pair of node keys")
        edges.append((entry[0], entry[1]))
    return nodes, edges


def _parse_node(index: int, entry: Any) -> Node:
    if not isinstance(entry, dict) or not isinstance(entry.get("key"), str):
        raise ValueError(f"nodes[{index}] must be an object with a string 'key'")
    depends_on = entry.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ValueError(f"nodes[{index}] ({entry['key']}): depends_on must be a list of node keys")
    try:
        delay = entry.get("destroy_delay")
        return Node(
            key=entry["key"],
            kind=NodeKind(entry.get("kind", NodeKind.MANAGED_RESOURCE.value)),
            config=dict(entry.get("config") or {}),
            depends_on=tuple(depends_on),
            timeouts=Timeouts.from_dict(entry.get("timeouts")),
            destroy_delay=float(delay) if delay is not None else None,
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"nodes[{index}] ({entry['key']}): {exc}") from exc
