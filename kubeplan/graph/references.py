"""Reference scanning and build-time config expansion.

Pure functions over config mappings; nothing here touches a graph.

References take two forms inside a config payload:
    Ref("aws_vpc.main", "id")      -- explicit reference object
    "${aws_vpc.main.id}"           -- interpolation inside any string

A node key is ``<type>.<name>``; module sub-nodes are addressed as
``module.<name>.<type>.<name>`` and module outputs as
``module.<name>.<output>``.  Resolving which prefix of a dotted path is a
node key needs the set of known keys, so scanning returns raw dotted paths.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from kubeplan.models.resources import Ref

_RE_INTERPOLATION = re.compile(r"\$\{\s*([A-Za-z_][\w.\-\[\]\"*]*)\s*\}")

# Names that are not node references inside interpolations.
_RESERVED_ROOTS = frozenset({"each", "var", "local", "path", "count", "self", "terraform"})


@dataclass(frozen=True)
class FoundReference:
    """A dotted reference path and where in the config it was found."""

    path: str
    field: str  # e.g. "subnets[0]" or "values.clusterName"


def iter_references(config: Mapping[str, Any]) -> Iterator[FoundReference]:
    """Yield every node reference found anywhere in *config*."""
    yield from _walk(config, "")


def _walk(value: Any, where: str) -> Iterator[FoundReference]:
    if isinstance(value, Ref):
        path = f"{value.key}.{value.attribute}" if value.attribute else value.key
        yield FoundReference(path=path, field=where)
    elif isinstance(value, str):
        for match in _RE_INTERPOLATION.finditer(value):
            path = _strip_index(match.group(1))
            if path.split(".", 1)[0] not in _RESERVED_ROOTS:
                yield FoundReference(path=path, field=where)
    elif isinstance(value, Mapping):
        for k, v in value.items():
            yield from _walk(v, f"{where}.{k}" if where else str(k))
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            yield from _walk(v, f"{where}[{i}]")


def _strip_index(path: str) -> str:
    # aws_subnet.private[0].id -> aws_subnet.private.id
    return re.sub(r"\[[^\]]*\]", "", path)


def resolve_key(path: str, known: Mapping[str, Any] | set[str] | frozenset[str]) -> str | None:
    """Return the longest dotted prefix of *path* that is a known key."""
    parts = path.split(".")
    for i in range(len(parts), 0, -1):
        candidate = ".".join(parts[:i])
        if candidate in known:
            return candidate
    return None


def reference_root(path: str) -> str:
    """Best guess at the node key of an unresolvable reference, for error messages."""
    return ".".join(path.split(".")[:2])


def rewrite_references(config: Any, rewrite: Callable[[str], str]) -> Any:
    """Return a copy of *config* with every reference path passed through *rewrite*."""
    if isinstance(config, Ref):
        return Ref(key=rewrite(config.key), attribute=config.attribute)
    if isinstance(config, str):

        def _sub(match: re.Match[str]) -> str:
            path = match.group(1)
            if path.split(".", 1)[0] in _RESERVED_ROOTS:
                return match.group(0)
            return "${" + rewrite(path) + "}"

        return _RE_INTERPOLATION.sub(_sub, config)
    if isinstance(config, Mapping):
        return {k: rewrite_references(v, rewrite) for k, v in config.items()}
    if isinstance(config, list):
        return [rewrite_references(v, rewrite) for v in config]
    if isinstance(config, tuple):
        return tuple(rewrite_references(v, rewrite) for v in config)
    return config


# ---------------------------------------------------------------------------
# dynamic blocks
# ---------------------------------------------------------------------------

_RE_EACH = re.compile(r"\$\{\s*each\.(key|value)((?:\.[\w\-]+)*)\s*\}")


def expand_dynamic(config: Mapping[str, Any]) -> dict[str, Any]:
    """Expand ``dynamic`` blocks into plain repeated entries.

    ``{"dynamic": {"set": {"for_each": {...}, "content": {...}}}}`` becomes
    ``{"set": [content, ...]}`` with ``${each.key}`` / ``${each.value}``
    substituted per iteration.  A mapping iterates its items in key order; a
    sequence uses the element as both key and value.  Entries already under
    the block name are kept and the generated ones appended.  The result
    shares no nested containers with *config*.
    """
    result = {k: copy.deepcopy(v) for k, v in config.items() if k != "dynamic"}
    dynamic = config.get("dynamic")
    if dynamic is None:
        return result
    if not isinstance(dynamic, Mapping):
        raise ValueError("'dynamic' must be a mapping of block name to block spec")

    for block, spec in dynamic.items():
        if not isinstance(spec, Mapping) or "for_each" not in spec or "content" not in spec:
            raise ValueError(f"dynamic block '{block}' needs 'for_each' and 'content'")
        for_each = spec["for_each"]
        if isinstance(for_each, Mapping):
            items = [(k, for_each[k]) for k in sorted(for_each)]
        elif isinstance(for_each, (list, tuple, set, frozenset)):
            seq = sorted(for_each) if isinstance(for_each, (set, frozenset)) else list(for_each)
            items = [(v, v) for v in seq]
        else:
            raise ValueError(f"dynamic block '{block}': for_each must be a mapping or a sequence")

        generated = [_substitute_each(spec["content"], k, v) for k, v in items]
        existing = result.get(block)
        if existing is None:
            result[block] = generated
        elif isinstance(existing, list):
            result[block] = [*existing, *generated]
        else:
            result[block] = [existing, *generated]
    return result


def _substitute_each(content: Any, each_key: Any, each_value: Any) -> Any:
    if isinstance(content, str):
        whole = _RE_EACH.fullmatch(content.strip())
        if whole:
            # a bare ${each.value} keeps the value's own type
            return _lookup_each(whole, each_key, each_value)
        return _RE_EACH.sub(lambda m: str(_lookup_each(m, each_key, each_value)), content)
    if isinstance(content, Mapping):
        return {
            _substitute_each(k, each_key, each_value): _substitute_each(v, each_key, each_value)
            for k, v in content.items()
        }
    if isinstance(content, (list, tuple)):
        return [_substitute_each(v, each_key, each_value) for v in content]
    return content


def _lookup_each(match: re.Match[str], each_key: Any, each_value: Any) -> Any:
    value = each_key if match.group(1) == "key" else each_value
    for attr in filter(None, match.group(2).split(".")):
        if not isinstance(value, Mapping) or attr not in value:
            raise ValueError(f"each.{match.group(1)}{match.group(2)} does not resolve")
        value = value[attr]
    return value
