"""Plan executor.

Runs plan steps on an asyncio worker pool, never starting a step before all
of its predecessors succeeded.  Every step follows the state machine::

    pending -> running -> succeeded
                       -> failed
                       -> retrying -> running ...

Node-level failures (collaborator errors, timeouts) are recorded against the
node and fail its transitive dependents without attempting them; unrelated
subtrees keep going.  A run-level cancel stops new starts and cancels
in-flight calls; work that already succeeded is kept (no rollback).

State is written back through the store after every step completes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, TypeVar

from kubeplan.collaborators.registry import CollaboratorRegistry
from kubeplan.errors import CollaboratorError, NodeTimeoutError, TransientCollaboratorError
from kubeplan.executor.clock import Clock, SystemClock
from kubeplan.models.config import ExecutorConfig, RetryConfig
from kubeplan.models.plan import Action, Plan, PlanStep
from kubeplan.models.report import (
    BarrierWait,
    ErrorInfo,
    ExecutionReport,
    FailureKind,
    NodeOutcome,
    StepStatus,
)
from kubeplan.models.resources import NodeKind, Phase
from kubeplan.models.state import NodeStatus, State, StateRecord
from kubeplan.observability.logging import get_logger
from kubeplan.observability.metrics import (
    barrier_wait_seconds_total,
    inflight_steps,
    retries_total,
    step_duration_seconds,
    steps_total,
    timeouts_total,
)
from kubeplan.state.store import StateStore

T = TypeVar("T")

_logger = get_logger("executor")


class Executor:
    """Executes plans against a collaborator registry.

    Args:
        store:  Where state is saved after each step.  None keeps state in
                memory only (the caller owns persistence).
        clock:  Time source for timeouts, backoff and barrier waits.
        config: Worker limit and default timeouts.
        retry:  Retry policy for transient collaborator errors.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        clock: Clock | None = None,
        config: ExecutorConfig | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or ExecutorConfig()
        self._retry = retry or RetryConfig()

    async def apply(
        self,
        plan: Plan,
        registry: CollaboratorRegistry,
        state: State,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionReport:
        """Run *plan*, updating *state* in place as steps complete.

        Blocked plan entries are reported as failed without attempt.  The
        returned report covers every step and every blocked entry.
        """
        run = _Run(self, plan, registry, state)
        return await run.execute(cancel)

    # ------------------------------------------------------------------
    # Step bodies
    # ------------------------------------------------------------------

    def _default_timeout(self, phase: Phase) -> float:
        return {
            Phase.CREATE: self._config.create_timeout,
            Phase.UPDATE: self._config.update_timeout,
            Phase.DELETE: self._config.delete_timeout,
        }[phase]

    def _timeout_for(self, step: PlanStep) -> float:
        phase = step.action.phase or Phase.CREATE
        return step.timeouts.for_phase(phase) or self._default_timeout(phase)

    async def _call(
        self,
        step: PlanStep,
        outcome: NodeOutcome,
        factory: Callable[[], Awaitable[T]],
        retryable: bool,
    ) -> T:
        """Invoke a collaborator with timeout, retry and error wrapping."""
        timeout = self._timeout_for(step)
        attempt = 0
        while True:
            attempt += 1
            outcome.attempts = attempt
            outcome.status = StepStatus.RUNNING
            started = self._clock.monotonic()
            try:
                return await self._clock.wait_for(factory(), timeout)
            except TimeoutError:
                timeouts_total.labels(kind=step.kind.value).inc()
                raise NodeTimeoutError(step.key, timeout) from None
            except TransientCollaboratorError as exc:
                if not retryable or attempt >= self._retry.max_attempts:
                    raise CollaboratorError(exc.message, step.key) from exc
                delay = min(
                    self._retry.backoff_seconds * (2 ** (attempt - 1)),
                    self._retry.backoff_max_seconds,
                )
                outcome.status = StepStatus.RETRYING
                retries_total.labels(kind=step.kind.value).inc()
                _logger.warning(
                    "step_retrying",
                    key=step.key,
                    action=step.action.value,
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                await self._clock.sleep(delay)
            except CollaboratorError as exc:
                if not exc.key:
                    raise CollaboratorError(exc.message, step.key) from exc
                raise
            except Exception as exc:
                raise CollaboratorError(f"{exc.__class__.__name__}: {exc}", step.key) from exc
            finally:
                step_duration_seconds.labels(kind=step.kind.value).observe(
                    max(self._clock.monotonic() - started, 0.0)
                )

    async def _run_managed(
        self,
        step: PlanStep,
        outcome: NodeOutcome,
        registry: CollaboratorRegistry,
        state: State,
    ) -> None:
        collaborator = registry.managed_for(step.key)
        if collaborator is None:
            raise CollaboratorError("no managed resource collaborator registered", step.key)
        ctx = registry.context
        record = state.get(step.key)
        blob = record.blob if record is not None else None
        config = step.config or {}

        if step.action == Action.DESTROY:
            await self._call(step, outcome, lambda: collaborator.destroy(step.key, blob, ctx), retryable=True)
            state.remove(step.key)
            return

        if step.action == Action.CREATE:
            result = await self._call(step, outcome, lambda: collaborator.create(step.key, config, ctx), retryable=True)
        else:
            result = await self._call(
                step, outcome, lambda: collaborator.update(step.key, blob, config, ctx), retryable=True
            )
        state.put(_record_for(step, _as_blob(step.key, result)))

    async def _run_imperative(
        self,
        step: PlanStep,
        outcome: NodeOutcome,
        registry: CollaboratorRegistry,
        state: State,
    ) -> None:
        if step.action == Action.DESTROY:
            # imperative actions have nothing to tear down
            outcome.attempts = 1
            state.remove(step.key)
            return
        collaborator = registry.imperative_for(step.key)
        if collaborator is None:
            raise CollaboratorError("no imperative action collaborator registered", step.key)
        timeout = self._timeout_for(step)
        exit_status = await self._call(
            step,
            outcome,
            lambda: collaborator.run(step.key, step.config or {}, timeout, registry.context),
            retryable=False,
        )
        if exit_status != 0:
            raise CollaboratorError(f"exited with status {exit_status}", step.key)
        state.put(_record_for(step, {"exit_status": exit_status}))

    async def _run_barrier(self, step: PlanStep, outcome: NodeOutcome, state: State, report: ExecutionReport) -> None:
        outcome.attempts = 1
        if step.action == Action.WAIT:
            delay = step.destroy_delay or 0.0
            _logger.info("barrier_wait", key=step.key, seconds=delay)
            await self._clock.sleep(delay)
            barrier_wait_seconds_total.inc(delay)
            report.waits.append(BarrierWait(step.key, delay))
            state.remove(step.key)
            return
        # create/update only records the barrier so destroy knows about it
        state.put(_record_for(step, {}))

    async def _persist(self, state: State) -> None:
        if self._store is None:
            return
        # saved from a worker thread; steps still in flight keep writing to *state*
        snapshot = state.snapshot()
        save = asyncio.get_running_loop().run_in_executor(None, self._store.save, snapshot)
        try:
            await asyncio.shield(save)
        except asyncio.CancelledError:
            # the write must land before the cancel path saves again
            await asyncio.gather(save, return_exceptions=True)
            raise
        finally:
            state.serial, state.lineage = snapshot.serial, snapshot.lineage


class _Run:
    """Book-keeping for a single ``Executor.apply`` call."""

    def __init__(self, executor: Executor, plan: Plan, registry: CollaboratorRegistry, state: State) -> None:
        self.executor = executor
        self.plan = plan
        self.registry = registry
        self.state = state
        self.report = ExecutionReport()
        self.pending: list[PlanStep] = list(plan.steps)
        self.running: dict[asyncio.Task[None], PlanStep] = {}
        self.succeeded: set[str] = set()
        self.failed: set[str] = set()

        for step in plan.steps:
            self.report.outcomes[step.key] = NodeOutcome(step.key, step.action)
        for entry in plan.blocked:
            self.report.outcomes[entry.key] = NodeOutcome(
                entry.key,
                entry.action,
                status=StepStatus.FAILED,
                error=ErrorInfo(FailureKind.BLOCKED, entry.reason),
            )
            steps_total.labels(action=entry.action.value, status=StepStatus.FAILED.value).inc()
            self.failed.add(entry.key)

    async def execute(self, cancel: asyncio.Event | None) -> ExecutionReport:
        max_workers = self.executor._config.max_workers
        cancel_waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        _logger.info("run_started", mode=self.plan.mode.value, steps=len(self.pending), workers=max_workers)
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    await self._cancel()
                    break
                await self._schedule(max_workers)
                if not self.running:
                    break
                waitables: set[asyncio.Future[Any]] = set(self.running)
                if cancel_waiter is not None:
                    waitables.add(cancel_waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is cancel_waiter:
                        continue
                    await self._collect(task)  # type: ignore[arg-type]
        except asyncio.CancelledError:
            await self._cancel()
            raise
        except Exception:
            await self._abandon()
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        # predecessors missing from the plan can never succeed
        for step in self.pending:
            self._fail_unattempted(step, FailureKind.BLOCKED, "predecessor never ran")
        self.pending.clear()

        _logger.info(
            "run_finished",
            mode=self.plan.mode.value,
            status=self.report.status.value,
            succeeded=len(self.report.succeeded),
            failed=len(self.report.failed),
        )
        return self.report

    async def _schedule(self, max_workers: int) -> None:
        """Start every ready step, in plan order, up to the worker limit."""
        progressed = True
        while progressed:
            progressed = False
            for step in list(self.pending):
                failed_pred = next((p for p in sorted(step.predecessors) if p in self.failed), None)
                if failed_pred is not None:
                    self.pending.remove(step)
                    self._fail_unattempted(step, FailureKind.BLOCKED, f"dependency {failed_pred} failed", failed_pred)
                    progressed = True
                    continue
                if not step.predecessors <= self.succeeded:
                    continue
                if step.action == Action.NOOP:
                    self.pending.remove(step)
                    await self._noop(step)
                    progressed = True
                    continue
                if len(self.running) >= max_workers:
                    continue
                self.pending.remove(step)
                self._start(step)

    def _start(self, step: PlanStep) -> None:
        outcome = self.report.outcomes[step.key]
        outcome.status = StepStatus.RUNNING
        outcome.started_at = datetime.now(tz=UTC)
        self.report.order.append(step.key)
        inflight_steps.inc()
        _logger.info("step_started", key=step.key, action=step.action.value, kind=step.kind.value)
        task = asyncio.create_task(self._run_step(step, outcome), name=f"step:{step.key}")
        self.running[task] = step

    async def _run_step(self, step: PlanStep, outcome: NodeOutcome) -> None:
        executor = self.executor
        try:
            if step.kind == NodeKind.TIMED_BARRIER:
                await executor._run_barrier(step, outcome, self.state, self.report)
            elif step.kind == NodeKind.IMPERATIVE_ACTION:
                await executor._run_imperative(step, outcome, self.registry, self.state)
            else:
                await executor._run_managed(step, outcome, self.registry, self.state)
        except NodeTimeoutError as exc:
            self._mark_failed(step, outcome, FailureKind.TIMEOUT, str(exc), NodeStatus.FAILED)
        except CollaboratorError as exc:
            self._mark_failed(step, outcome, FailureKind.COLLABORATOR_ERROR, exc.message, NodeStatus.TAINTED)
        else:
            outcome.status = StepStatus.SUCCEEDED
            _logger.info("step_succeeded", key=step.key, action=step.action.value, attempts=outcome.attempts)
        finally:
            inflight_steps.dec()
            outcome.finished_at = datetime.now(tz=UTC)

    def _mark_failed(
        self,
        step: PlanStep,
        outcome: NodeOutcome,
        kind: FailureKind,
        message: str,
        record_status: NodeStatus,
    ) -> None:
        outcome.status = StepStatus.FAILED
        outcome.error = ErrorInfo(kind, message)
        record = self.state.get(step.key)
        if record is not None:
            # a failed create leaves no record; anything else is marked
            self.state.put(record.with_status(record_status))
        _logger.error(
            "step_failed",
            key=step.key,
            action=step.action.value,
            failure=kind.value,
            error=message,
            attempts=outcome.attempts,
        )

    async def _collect(self, task: asyncio.Task[None]) -> None:
        step = self.running.pop(task)
        outcome = self.report.outcomes[step.key]
        exc = task.exception()
        if exc is not None:
            # _run_step only lets unexpected engine bugs through
            outcome.status = StepStatus.FAILED
            outcome.error = ErrorInfo(FailureKind.COLLABORATOR_ERROR, f"{exc.__class__.__name__}: {exc}")
            _logger.error("step_crashed", key=step.key, error=str(exc))
        if outcome.status == StepStatus.SUCCEEDED:
            self.succeeded.add(step.key)
        else:
            self.failed.add(step.key)
        steps_total.labels(action=step.action.value, status=outcome.status.value).inc()
        await self.executor._persist(self.state)

    async def _noop(self, step: PlanStep) -> None:
        outcome = self.report.outcomes[step.key]
        outcome.status = StepStatus.SUCCEEDED
        outcome.started_at = outcome.finished_at = datetime.now(tz=UTC)
        self.report.order.append(step.key)
        self.succeeded.add(step.key)
        steps_total.labels(action=step.action.value, status=outcome.status.value).inc()
        record = self.state.get(step.key)
        if record is not None and (record.dependencies != step.dependencies or record.timeouts != step.timeouts):
            self.state.put(replace(record, dependencies=step.dependencies, timeouts=step.timeouts))
            await self.executor._persist(self.state)

    def _fail_unattempted(self, step: PlanStep, kind: FailureKind, message: str, caused_by: str | None = None) -> None:
        outcome = self.report.outcomes[step.key]
        outcome.status = StepStatus.FAILED
        outcome.error = ErrorInfo(kind, message, caused_by=caused_by)
        self.failed.add(step.key)
        steps_total.labels(action=step.action.value, status=outcome.status.value).inc()
        _logger.warning("step_skipped", key=step.key, action=step.action.value, reason=message)

    async def _cancel(self) -> None:
        """Stop everything: cancel in-flight calls, fail what never started."""
        self.report.cancelled = True
        _logger.warning("run_cancelled", running=len(self.running), pending=len(self.pending))
        tasks = list(self.running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in tasks:
            step = self.running.pop(task)
            outcome = self.report.outcomes[step.key]
            if outcome.status == StepStatus.SUCCEEDED:
                self.succeeded.add(step.key)
            elif outcome.status != StepStatus.FAILED:
                outcome.status = StepStatus.FAILED
                outcome.error = ErrorInfo(FailureKind.CANCELLED, "run cancelled while in flight")
                self.failed.add(step.key)
            steps_total.labels(action=step.action.value, status=outcome.status.value).inc()
        for step in self.pending:
            self._fail_unattempted(step, FailureKind.CANCELLED, "run cancelled before start")
        self.pending.clear()
        await self.executor._persist(self.state)

    async def _abandon(self) -> None:
        """Cancel and await in-flight steps before an engine error leaves the run."""
        tasks = list(self.running)
        _logger.error("run_aborted", running=len(tasks), pending=len(self.pending))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.running.clear()


def _record_for(step: PlanStep, blob: dict[str, Any]) -> StateRecord:
    return StateRecord(
        key=step.key,
        kind=step.kind,
        config_hash=step.config_hash,
        blob=blob,
        dependencies=step.dependencies,
        timeouts=step.timeouts,
        destroy_delay=step.destroy_delay,
        status=NodeStatus.HEALTHY,
    )


def _as_blob(key: str, result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if not isinstance(result, dict):
        raise CollaboratorError(f"collaborator returned {type(result).__name__}, expected a mapping", key)
    try:
        json.dumps(result)
    except (TypeError, ValueError) as exc:
        raise CollaboratorError(f"collaborator result cannot be stored as JSON: {exc}", key) from exc
    return result
