"""kubeplan command-line interface.

Commands operate on a JSON document of already-parsed nodes (see
``kubeplan.graph.loader``) and on the state file named by ``--state`` or
``KUBEPLAN_STATE_PATH``.  Applying and destroying need provider collaborators
and are driven through ``kubeplan.engine.Engine`` from Python instead.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import click

from kubeplan import __version__
from kubeplan.config import load_config
from kubeplan.errors import KubeplanError
from kubeplan.graph.builder import build
from kubeplan.graph.loader import load_document
from kubeplan.graph.models import DAG
from kubeplan.models.state import NodeStatus, State, StateRecord
from kubeplan.observability.logging import setup_logging
from kubeplan.planner import plan as compute_plan
from kubeplan.state.store import FileStateStore


def _load_dag(path: str) -> DAG:
    try:
        nodes, edges = load_document(path)
        return build(nodes, edges)
    except (KubeplanError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(__version__, prog_name="kubeplan")
@click.option("--state", "state_path", default=None, help="State file (default: KUBEPLAN_STATE_PATH).")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default=None,
    help="Log level (default: KUBEPLAN_LOG_LEVEL).",
)
@click.pass_context
def cli(ctx: click.Context, state_path: str | None, log_level: str | None) -> None:
    """Plan and inspect dependency-ordered infrastructure changes."""
    config = load_config()
    setup_logging(log_level or config.log.level)
    ctx.obj = FileStateStore(state_path or config.state.path)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def validate(file: str) -> None:
    """Build the graph in FILE and report cycles or undeclared references."""
    dag = _load_dag(file)
    click.echo(f"valid: {dag.node_count} nodes, {dag.edge_count} edges")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--target", "targets", multiple=True, help="Limit the plan to these keys and their dependencies.")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON.")
@click.option("--detailed-exitcode", is_flag=True, help="Exit 2 when the plan has changes.")
@click.pass_obj
def plan(store: FileStateStore, file: str, targets: tuple[str, ...], as_json: bool, detailed_exitcode: bool) -> None:
    """Show what applying FILE against the current state would do."""
    dag = _load_dag(file)
    try:
        result = compute_plan(dag, store.load(), targets or None)
    except KubeplanError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload: dict[str, Any] = {
            "mode": result.mode.value,
            "steps": [
                {
                    "key": s.key,
                    "action": s.action.value,
                    "predecessors": sorted(s.predecessors),
                    "reason": s.reason,
                }
                for s in result.steps
            ],
            "blocked": [{"key": b.key, "action": b.action.value, "reason": b.reason} for b in result.blocked],
            "summary": result.summary(),
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(result.render())

    if detailed_exitcode and not result.is_empty:
        raise SystemExit(2)


# ---------------------------------------------------------------------------
# State inspection and surgery
# ---------------------------------------------------------------------------


@cli.group()
def state() -> None:
    """Inspect and edit recorded state."""


@state.command("list")
@click.pass_obj
def state_list(store: FileStateStore) -> None:
    """List recorded node keys with their status."""
    current = _load_state(store)
    for key in sorted(current.records):
        record = current.records[key]
        click.echo(f"{key}\t{record.kind.value}\t{record.status.value}")


@state.command("show")
@click.argument("key")
@click.pass_obj
def state_show(store: FileStateStore, key: str) -> None:
    """Print the record for KEY as JSON."""
    record = _load_state(store).get(key)
    if record is None:
        raise click.ClickException(f"no record for {key}")
    click.echo(json.dumps({key: record.to_dict()}, indent=2, sort_keys=True))


@state.command("rm")
@click.argument("keys", nargs=-1, required=True)
@click.pass_obj
def state_rm(store: FileStateStore, keys: tuple[str, ...]) -> None:
    """Forget KEYS without destroying them."""
    _edit_state(store, keys, lambda record: None, "removed")


@state.command("taint")
@click.argument("keys", nargs=-1, required=True)
@click.pass_obj
def state_taint(store: FileStateStore, keys: tuple[str, ...]) -> None:
    """Mark KEYS tainted so the next apply retries them."""
    _edit_state(store, keys, lambda record: record.with_status(NodeStatus.TAINTED), "tainted")


@state.command("untaint")
@click.argument("keys", nargs=-1, required=True)
@click.pass_obj
def state_untaint(store: FileStateStore, keys: tuple[str, ...]) -> None:
    """Mark KEYS healthy again (also clears a timed-out 'failed' status)."""
    _edit_state(store, keys, lambda record: record.with_status(NodeStatus.HEALTHY), "untainted")


@cli.command("force-unlock")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def force_unlock(store: FileStateStore, yes: bool) -> None:
    """Remove a stale state lock left by a crashed run."""
    if not yes:
        click.confirm(f"Remove the lock on {store.path}?", abort=True)
    if store.force_unlock():
        click.echo("lock removed")
    else:
        click.echo("no lock held")


def _load_state(store: FileStateStore) -> State:
    try:
        return store.load()
    except KubeplanError as exc:
        raise click.ClickException(str(exc)) from exc


def _edit_state(
    store: FileStateStore,
    keys: tuple[str, ...],
    change: Callable[[StateRecord], StateRecord | None],
    verb: str,
) -> None:
    try:
        with store.lock():
            current = store.load()
            missing = [k for k in keys if k not in current]
            if missing:
                raise click.ClickException(f"no record for {', '.join(missing)}")
            for key in keys:
                updated = change(current.records[key])
                if updated is None:
                    current.remove(key)
                else:
                    current.put(updated)
            store.save(current)
    except KubeplanError as exc:
        raise click.ClickException(str(exc)) from exc
    for key in keys:
        click.echo(f"{verb} {key}")
