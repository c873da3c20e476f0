"""Planner: diff desired graph against prior state and order the changes.

Apply plans list create/update/no-op steps in the DAG's deterministic
topological order (ties by ascending key), followed by destroy steps for
orphans (nodes in state but no longer declared) in the reverse of the prior
graph's topological order.  Destroy plans are the exact reverse of the
recorded graph's forward order, with timed barriers turned into wait steps.

Planning is a pure function of its inputs: the same DAG and state always
yield an equal plan.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from kubeplan.errors import ConfigMismatchError, StateCorruptionError
from kubeplan.graph.models import DAG, closure, topological_sort
from kubeplan.models.plan import Action, BlockedNode, Plan, PlanMode, PlanStep
from kubeplan.models.resources import NodeKind
from kubeplan.models.state import NodeStatus, State, StateRecord
from kubeplan.observability.logging import get_logger
from kubeplan.planner.hashing import compute_config_hash

_logger = get_logger("planner")

_TIMED_OUT_REASON = "last operation timed out; refresh, untaint or destroy it first"


def plan(dag: DAG, prior_state: State, targets: Iterable[str] | None = None) -> Plan:
    """Compute the apply plan converging *prior_state* to *dag*.

    Args:
        dag:         Desired graph.
        prior_state: Snapshot of persisted state.  Not modified.
        targets:     Optional node keys; the plan is limited to them plus
                     everything they depend on (orphan targets are destroyed
                     together with orphans that depended on them).

    Raises:
        ConfigMismatchError: a target is neither declared nor in state.
        StateCorruptionError: recorded dependencies of orphans form a cycle.
    """
    records = prior_state.records
    scope, orphan_scope = _apply_scope(dag, records, targets)

    steps: list[PlanStep] = []
    blocked: dict[str, BlockedNode] = {}
    planned: set[str] = set()

    for key in dag.topological_order():
        if key not in scope:
            continue
        node = dag.node(key)
        desired_hash = compute_config_hash(node)
        record = records.get(key)
        action, reason = _diff(record, desired_hash)
        deps = dag.dependencies(key)

        if record is not None and record.status == NodeStatus.FAILED:
            blocked[key] = BlockedNode(key, Action.UPDATE, _TIMED_OUT_REASON)
            continue
        blocked_dep = next((d for d in sorted(deps) if d in blocked), None)
        if blocked_dep is not None:
            blocked[key] = BlockedNode(key, action, f"dependency {blocked_dep} is blocked")
            continue

        steps.append(
            PlanStep(
                key=key,
                action=action,
                kind=node.kind,
                predecessors=frozenset(deps & planned),
                config=dict(node.config),
                config_hash=desired_hash,
                dependencies=tuple(sorted(deps)),
                timeouts=node.timeouts,
                destroy_delay=node.destroy_delay,
                reason=reason,
            )
        )
        planned.add(key)

    steps.extend(_orphan_steps(records, orphan_scope, planned, blocked))

    result = Plan(mode=PlanMode.APPLY, steps=tuple(steps), blocked=tuple(blocked[k] for k in sorted(blocked)))
    _logger.info("plan_computed", mode=result.mode.value, **result.summary())
    return result


def plan_destroy(prior_state: State, targets: Iterable[str] | None = None) -> Plan:
    """Compute the plan that destroys everything recorded in *prior_state*.

    Ordering uses the dependencies recorded when each node was applied, so a
    node is destroyed only after everything that depended on it is gone.
    With *targets*, only they and their recorded dependents are destroyed.
    """
    records = prior_state.records
    if targets is None:
        scope = set(records)
    else:
        target_set = set(targets)
        unknown = sorted(target_set - set(records))
        if unknown:
            raise ConfigMismatchError("<targets>", unknown[0], "not present in state")
        scope = closure(target_set, _recorded_dependents(records))

    steps = _destroy_steps(records, scope, extra_predecessors={}, reason="destroy requested")
    result = Plan(mode=PlanMode.DESTROY, steps=tuple(steps))
    _logger.info("plan_computed", mode=result.mode.value, **result.summary())
    return result


def _diff(record: StateRecord | None, desired_hash: str) -> tuple[Action, str]:
    if record is None:
        return Action.CREATE, "not in state"
    if record.status == NodeStatus.TAINTED:
        if record.blob is None:
            return Action.CREATE, "tainted"
        return Action.UPDATE, "tainted"
    if record.config_hash != desired_hash:
        return Action.UPDATE, "configuration changed"
    return Action.NOOP, ""


def _apply_scope(
    dag: DAG,
    records: Mapping[str, StateRecord],
    targets: Iterable[str] | None,
) -> tuple[set[str], set[str]]:
    orphans = {k for k in records if k not in dag}
    if targets is None:
        return set(dag.nodes), orphans

    target_set = set(targets)
    unknown = sorted(t for t in target_set if t not in dag and t not in records)
    if unknown:
        raise ConfigMismatchError("<targets>", unknown[0], "not declared and not in state")
    declared = {t for t in target_set if t in dag}
    orphan_targets = target_set - declared
    orphan_scope = closure(orphan_targets, _recorded_dependents(records)) & orphans
    return dag.ancestors(declared), orphan_scope


def _orphan_steps(
    records: Mapping[str, StateRecord],
    orphans: set[str],
    planned: set[str],
    blocked: dict[str, BlockedNode],
) -> list[PlanStep]:
    """Destroy steps for orphans, waiting on current nodes that used to depend on them."""
    if not orphans:
        return []
    extra: dict[str, set[str]] = {k: set() for k in orphans}
    for key, record in records.items():
        if key in orphans:
            continue
        for dep in record.dependencies:
            if dep not in orphans:
                continue
            if key in blocked:
                action = Action.WAIT if records[dep].kind == NodeKind.TIMED_BARRIER else Action.DESTROY
                blocked[dep] = BlockedNode(dep, action, f"former dependent {key} is blocked")
            elif key in planned:
                extra[dep].add(key)

    # whatever a blocked orphan depends on has to outlive it
    dependencies = {k: frozenset(r.dependencies) for k, r in records.items()}
    for key in [k for k in blocked if k in orphans]:
        for other in sorted((closure({key}, dependencies) & orphans) - {key}):
            action = Action.WAIT if records[other].kind == NodeKind.TIMED_BARRIER else Action.DESTROY
            blocked.setdefault(other, BlockedNode(other, action, f"former dependent {key} is blocked"))

    scope = orphans - set(blocked)
    return _destroy_steps(records, scope, extra, reason="no longer declared")


def _destroy_steps(
    records: Mapping[str, StateRecord],
    scope: set[str],
    extra_predecessors: Mapping[str, set[str]],
    reason: str,
) -> list[PlanStep]:
    deps = {k: [d for d in records[k].dependencies if d in scope] for k in scope}
    try:
        forward = topological_sort(deps)
    except ValueError as exc:
        raise StateCorruptionError("<state>", "recorded dependencies form a cycle") from exc

    dependents: dict[str, set[str]] = {k: set() for k in scope}
    for key, ds in deps.items():
        for d in ds:
            dependents[d].add(key)

    steps: list[PlanStep] = []
    for key in reversed(forward):
        record = records[key]
        is_barrier = record.kind == NodeKind.TIMED_BARRIER
        steps.append(
            PlanStep(
                key=key,
                action=Action.WAIT if is_barrier else Action.DESTROY,
                kind=record.kind,
                predecessors=frozenset(dependents[key] | extra_predecessors.get(key, set())),
                config_hash=record.config_hash,
                dependencies=record.dependencies,
                timeouts=record.timeouts,
                destroy_delay=record.destroy_delay,
                reason=reason,
            )
        )
    return steps


def _recorded_dependents(records: Mapping[str, StateRecord]) -> dict[str, frozenset[str]]:
    dependents: dict[str, set[str]] = {k: set() for k in records}
    for key, record in records.items():
        for dep in record.dependencies:
            if dep in dependents:
                dependents[dep].add(key)
    return {k: frozenset(v) for k, v in dependents.items()}
