"""Deterministic hashing of a node's desired configuration."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from kubeplan.models.resources import Node


def compute_config_hash(node: Node) -> str:
    """SHA-256 over canonical JSON of the parts of a node that need provisioning.

    Keys are sorted and separators compact, so equivalent configs hash the
    same regardless of key order.  ``Ref`` objects hash as their
    ``${key.attr}`` interpolation form.  Timeouts and dependencies do not
    participate: changing them never requires touching the real resource.
    """
    return hash_payload(
        {
            "kind": node.kind.value,
            "config": node.config,
            "destroy_delay": node.destroy_delay,
        }
    )


def hash_payload(payload: Mapping[str, Any]) -> str:
    canonical = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_encode,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _encode(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, Mapping):
        return dict(value)
    return str(value)
