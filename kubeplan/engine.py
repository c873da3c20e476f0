"""Engine: wires state store, planner and executor into runs.

Every mutating run follows the same sequence::

    lock state -> load snapshot -> plan -> execute -> release lock

Build- and run-level errors (cycles, undeclared references, corrupt or
locked state) raise before any collaborator is called.  Node-level failures
end up in the returned ``ExecutionReport``.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field, replace
from typing import TypeVar

from kubeplan.collaborators.base import RunContext
from kubeplan.collaborators.registry import CollaboratorRegistry
from kubeplan.errors import CollaboratorError
from kubeplan.executor.clock import Clock, SystemClock
from kubeplan.executor.executor import Executor
from kubeplan.graph.builder import EdgeSpec, build
from kubeplan.graph.models import DAG
from kubeplan.models.config import KubeplanConfig
from kubeplan.models.plan import Plan
from kubeplan.models.report import ExecutionReport
from kubeplan.models.resources import Node, NodeKind
from kubeplan.models.state import NodeStatus
from kubeplan.observability.logging import bind_run, get_logger, unbind_run
from kubeplan.planner import plan as compute_plan
from kubeplan.planner import plan_destroy as compute_destroy_plan
from kubeplan.state.store import FileStateStore, StateStore

T = TypeVar("T")

_logger = get_logger("engine")


@dataclass
class RunResult:
    """The plan a run executed and what happened to it."""

    plan: Plan
    report: ExecutionReport


@dataclass
class RefreshResult:
    """What drift detection changed in state."""

    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)  # failed -> healthy
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.removed or self.recovered)


class Engine:
    """Plans and executes provisioning runs against one state store.

    Args:
        config:   Engine configuration; defaults apply when omitted.
        registry: Collaborators per node kind (and module expanders).
        store:    State store; defaults to a ``FileStateStore`` at
                  ``config.state.path``.
        clock:    Time source for the executor.
    """

    def __init__(
        self,
        config: KubeplanConfig | None = None,
        registry: CollaboratorRegistry | None = None,
        store: StateStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or KubeplanConfig()
        self.registry = registry or CollaboratorRegistry()
        self.store = store or FileStateStore(self.config.state.path)
        self.clock = clock or SystemClock()
        self.executor = Executor(
            self.store,
            clock=self.clock,
            config=self.config.executor,
            retry=self.config.retry,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def build(self, nodes: Iterable[Node], edges: Iterable[EdgeSpec] = ()) -> DAG:
        """Build the DAG, expanding modules with the registry's expanders."""
        return build(nodes, edges, self.registry)

    def plan(self, dag: DAG, targets: Iterable[str] | None = None) -> Plan:
        """Apply plan against the current state, without locking or executing."""
        return compute_plan(dag, self.store.load(), targets)

    def plan_destroy(self, targets: Iterable[str] | None = None) -> Plan:
        return compute_destroy_plan(self.store.load(), targets)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def apply(
        self,
        dag: DAG,
        targets: Iterable[str] | None = None,
        cancel: asyncio.Event | None = None,
        context: RunContext | None = None,
    ) -> RunResult:
        """Converge state to *dag*."""
        return await self._run("apply", lambda state: compute_plan(dag, state, targets), cancel, context)

    async def destroy(
        self,
        targets: Iterable[str] | None = None,
        cancel: asyncio.Event | None = None,
        context: RunContext | None = None,
    ) -> RunResult:
        """Destroy everything in state (or *targets* and their dependents)."""
        return await self._run("destroy", lambda state: compute_destroy_plan(state, targets), cancel, context)

    async def _run(
        self,
        mode: str,
        planner: Callable[..., Plan],
        cancel: asyncio.Event | None,
        context: RunContext | None,
    ) -> RunResult:
        ctx = context or self.registry.context
        registry = self.registry.with_context(ctx)
        bind_run(ctx.run_id, mode)
        try:
            with self._locked():
                state = self.store.load()
                plan = planner(state.snapshot())
                if plan.is_empty:
                    _logger.info("run_skipped", reason="no changes")
                report = await self.executor.apply(plan, registry, state, cancel)
            _logger.info("run_completed", status=report.status.value, **plan.summary())
            return RunResult(plan, report)
        finally:
            unbind_run()

    async def refresh(self, dag: DAG | None = None, context: RunContext | None = None) -> RefreshResult:
        """Detect drift by reading every managed resource back.

        A read returning None means the resource is gone: its record is dropped
        so the next plan re-creates it.  A successful read of a record left
        ``failed`` by a timeout marks it healthy again.  With *dag*, only the
        records of nodes it declares are refreshed.
        """
        ctx = context or self.registry.context
        result = RefreshResult()
        bind_run(ctx.run_id, "refresh")
        try:
            with self._locked():
                state = self.store.load()
                for key in sorted(state.records):
                    record = state.records[key]
                    if record.kind != NodeKind.MANAGED_RESOURCE:
                        continue
                    if dag is not None and key not in dag:
                        continue
                    collaborator = self.registry.managed_for(key)
                    if collaborator is None:
                        result.errors[key] = "no managed resource collaborator registered"
                        continue
                    try:
                        blob = await self.clock.wait_for(
                            collaborator.read(key, record.blob, ctx),
                            record.timeouts.update or self.config.executor.update_timeout,
                        )
                    except TimeoutError:
                        result.errors[key] = "read timed out"
                        _logger.warning("refresh_failed", key=key, error="timeout")
                        continue
                    except CollaboratorError as exc:
                        result.errors[key] = exc.message
                        _logger.warning("refresh_failed", key=key, error=exc.message)
                        continue
                    except Exception as exc:
                        result.errors[key] = f"{exc.__class__.__name__}: {exc}"
                        _logger.warning("refresh_failed", key=key, error=str(exc), exc_info=True)
                        continue

                    if blob is None:
                        state.remove(key)
                        result.removed.append(key)
                        _logger.info("drift_detected", key=key, drift="deleted")
                        continue
                    status = record.status
                    if status == NodeStatus.FAILED:
                        status = NodeStatus.HEALTHY
                        result.recovered.append(key)
                    if blob != record.blob:
                        result.updated.append(key)
                        _logger.info("drift_detected", key=key, drift="changed")
                    if status != record.status or blob != record.blob:
                        state.put(replace(record.with_status(status), blob=blob))
                if result.changed:
                    self.store.save(state)
            _logger.info(
                "refresh_completed",
                updated=len(result.updated),
                removed=len(result.removed),
                recovered=len(result.recovered),
                errors=len(result.errors),
            )
            return result
        finally:
            unbind_run()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        if not self.config.state.lock_enabled:
            yield
            return
        with self.store.lock():
            yield


async def run_until_signal(run: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run ``run(cancel)`` with SIGINT/SIGTERM wired to the cancel event.

    The first signal requests a cooperative cancel: no new steps start and
    in-flight calls are cancelled.  Handlers are removed when the run ends.
    """
    loop = asyncio.get_running_loop()
    cancel = asyncio.Event()

    def _request_cancel() -> None:
        if cancel.is_set():
            return
        _logger.warning("cancel_requested")
        cancel.set()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, _request_cancel)
    try:
        return await run(cancel)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
