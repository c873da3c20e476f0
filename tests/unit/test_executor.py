"""Unit tests for kubeplan.executor on hand-built plans."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import pytest
from structlog.testing import capture_logs

from kubeplan.collaborators.base import ManagedResourceCollaborator, RunContext
from kubeplan.collaborators.registry import CollaboratorRegistry
from kubeplan.executor import Executor, SimulatedClock
from kubeplan.models.config import ExecutorConfig
from kubeplan.models.plan import Action, BlockedNode, Plan, PlanMode, PlanStep
from kubeplan.models.report import FailureKind, RunStatus, StepStatus
from kubeplan.models.resources import NodeKind, Timeouts
from kubeplan.models.state import NodeStatus, State, StateRecord
from kubeplan.state.store import MemoryStateStore

MANAGED = NodeKind.MANAGED_RESOURCE
FAST = "aws_iam_role.fast"
SLOW = "aws_eks_cluster.slow"


class _Recorder(ManagedResourceCollaborator):
    def __init__(self, result: Any = None, hang: bool = False) -> None:
        self.result = {"id": "x"} if result is None else result
        self.hang = hang
        self.calls: list[tuple[str, str]] = []

    async def _maybe_hang(self) -> None:
        if self.hang:
            await asyncio.Event().wait()

    async def create(self, key: str, config: Mapping[str, Any], ctx: RunContext) -> Any:
        self.calls.append(("create", key))
        await self._maybe_hang()
        return self.result

    async def update(self, key: str, blob: dict[str, Any] | None, config: Mapping[str, Any], ctx: RunContext) -> Any:
        self.calls.append(("update", key))
        return self.result

    async def destroy(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> None:
        self.calls.append(("destroy", key))

    async def read(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> dict[str, Any] | None:
        return blob


class _Split(_Recorder):
    """Answers the fast key at once; the slow key finishes later or never."""

    def __init__(self, fast_result: Any, slow_hangs: bool = False) -> None:
        super().__init__()
        self.fast_result = fast_result
        self.slow_hangs = slow_hangs
        self.cancelled: list[str] = []

    async def create(self, key: str, config: Mapping[str, Any], ctx: RunContext) -> Any:
        self.calls.append(("create", key))
        if key == FAST:
            return self.fast_result
        try:
            if self.slow_hangs:
                await asyncio.Event().wait()
            await asyncio.sleep(0.02)
        except asyncio.CancelledError:
            self.cancelled.append(key)
            raise
        return {"id": "slow"}


class _FailingStore(MemoryStateStore):
    def save(self, state: State) -> None:
        raise OSError("No space left on device")


class _ThreadRecordingStore(MemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.threads: set[int] = set()

    def save(self, state: State) -> None:
        self.threads.add(threading.get_ident())
        super().save(state)


@pytest.fixture()
def clock() -> SimulatedClock:
    return SimulatedClock(settle=0.1)


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


def _executor(store: MemoryStateStore, clock: SimulatedClock, **config: Any) -> Executor:
    return Executor(store=store, clock=clock, config=ExecutorConfig(**config))


def _step(key: str, action: Action, kind: NodeKind = MANAGED, *preds: str, **fields: Any) -> PlanStep:
    return PlanStep(key=key, action=action, kind=kind, predecessors=frozenset(preds), **fields)


class TestStepBodies:
    async def test_create_records_blob_and_metadata(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        collaborator = _Recorder({"arn": "arn:aws:s3:::logs"})
        step = _step(
            "aws_s3_bucket.logs",
            Action.CREATE,
            config={"acl": "private"},
            config_hash="h1",
            dependencies=("aws_kms_key.logs",),
            timeouts=Timeouts(create=120),
        )
        state = State()

        report = await _executor(store, clock).apply(
            Plan(PlanMode.APPLY, (step,)), CollaboratorRegistry(managed=collaborator), state
        )

        assert report.status == RunStatus.SUCCEEDED
        record = state.records["aws_s3_bucket.logs"]
        assert record.blob == {"arn": "arn:aws:s3:::logs"}
        assert record.config_hash == "h1"
        assert record.dependencies == ("aws_kms_key.logs",)
        assert record.timeouts == Timeouts(create=120)
        assert store.load().records["aws_s3_bucket.logs"].blob == record.blob

    async def test_non_mapping_result_fails_create(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        state = State()
        report = await _executor(store, clock).apply(
            Plan(PlanMode.APPLY, (_step("aws_s3_bucket.logs", Action.CREATE),)),
            CollaboratorRegistry(managed=_Recorder(result="created")),
            state,
        )
        outcome = report.outcome("aws_s3_bucket.logs")
        assert outcome.failure_kind == FailureKind.COLLABORATOR_ERROR
        assert "expected a mapping" in outcome.error.message
        assert "aws_s3_bucket.logs" not in state

    async def test_node_timeout_overrides_default(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        plan = Plan(
            PlanMode.APPLY,
            (
                _step("aws_eks_cluster.a", Action.CREATE, timeouts=Timeouts(create=2400)),
                _step("aws_eks_cluster.b", Action.CREATE),
            ),
        )
        report = await _executor(store, clock, create_timeout=600).apply(
            plan, CollaboratorRegistry(managed=_Recorder(hang=True)), State()
        )
        assert sorted(clock.timeouts) == [600, 2400]
        assert {report.outcome(k).failure_kind for k in report.outcomes} == {FailureKind.TIMEOUT}

    async def test_type_specific_collaborator_wins(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        default, helm = _Recorder(), _Recorder()
        registry = CollaboratorRegistry(managed=default)
        registry.register_managed("helm_release", helm)
        plan = Plan(
            PlanMode.APPLY,
            (_step("aws_vpc.main", Action.CREATE), _step("module.eks.helm_release.lbc", Action.CREATE)),
        )

        await _executor(store, clock).apply(plan, registry, State())

        assert default.calls == [("create", "aws_vpc.main")]
        assert helm.calls == [("create", "module.eks.helm_release.lbc")]

    def test_registration_is_logged_with_component(self) -> None:
        with capture_logs() as logs:
            CollaboratorRegistry().register_managed("helm_release", _Recorder())
        (entry,) = [e for e in logs if e["event"] == "managed_collaborator_registered"]
        assert entry["component"] == "collaborators.registry"
        assert entry["resource_type"] == "helm_release"

    async def test_barrier_create_only_records(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        state = State()
        step = _step("time_sleep.lbc", Action.CREATE, NodeKind.TIMED_BARRIER, destroy_delay=90)

        await _executor(store, clock).apply(Plan(PlanMode.APPLY, (step,)), CollaboratorRegistry(), state)

        assert clock.sleeps == []
        assert state.records["time_sleep.lbc"].destroy_delay == 90
        assert state.records["time_sleep.lbc"].blob == {}

    async def test_barrier_wait_sleeps_and_forgets(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        state = State(records={"time_sleep.lbc": StateRecord("time_sleep.lbc", NodeKind.TIMED_BARRIER, "h", blob={})})
        step = _step("time_sleep.lbc", Action.WAIT, NodeKind.TIMED_BARRIER, destroy_delay=90)

        report = await _executor(store, clock).apply(Plan(PlanMode.DESTROY, (step,)), CollaboratorRegistry(), state)

        assert clock.sleeps == [90]
        assert [(w.key, w.seconds) for w in report.waits] == [("time_sleep.lbc", 90)]
        assert "time_sleep.lbc" not in state


class TestBookkeeping:
    async def test_noop_refreshes_recorded_metadata(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        collaborator = _Recorder()
        record = StateRecord("aws_vpc.main", MANAGED, "h", blob={"id": "vpc-1"})
        state = State(records={record.key: record})
        step = _step("aws_vpc.main", Action.NOOP, dependencies=("aws_kms_key.a",), timeouts=Timeouts(delete=60))

        report = await _executor(store, clock).apply(
            Plan(PlanMode.APPLY, (step,)), CollaboratorRegistry(managed=collaborator), state
        )

        assert collaborator.calls == []
        assert report.outcome("aws_vpc.main").status == StepStatus.SUCCEEDED
        assert not report.outcome("aws_vpc.main").attempted
        assert state.records["aws_vpc.main"].dependencies == ("aws_kms_key.a",)
        assert state.records["aws_vpc.main"].blob == {"id": "vpc-1"}
        assert store.saves == 1

    async def test_unchanged_noop_does_not_save(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        record = StateRecord("aws_vpc.main", MANAGED, "h", blob={})
        state = State(records={record.key: record})

        await _executor(store, clock).apply(
            Plan(PlanMode.APPLY, (_step("aws_vpc.main", Action.NOOP),)), CollaboratorRegistry(), state
        )

        assert store.saves == 0

    async def test_state_saved_after_every_step(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        plan = Plan(
            PlanMode.APPLY,
            (
                _step("aws_vpc.main", Action.CREATE),
                _step("aws_subnet.a", Action.CREATE, MANAGED, "aws_vpc.main"),
                _step("aws_subnet.b", Action.CREATE, MANAGED, "aws_vpc.main"),
            ),
        )
        await _executor(store, clock).apply(plan, CollaboratorRegistry(managed=_Recorder()), State())
        assert store.saves == 3

    async def test_blocked_entries_are_reported_as_failed(
        self, store: MemoryStateStore, clock: SimulatedClock
    ) -> None:
        plan = Plan(
            PlanMode.APPLY,
            (_step("aws_s3_bucket.logs", Action.CREATE),),
            blocked=(BlockedNode("aws_vpc.main", Action.UPDATE, "last operation timed out"),),
        )

        report = await _executor(store, clock).apply(plan, CollaboratorRegistry(managed=_Recorder()), State())

        blocked = report.outcome("aws_vpc.main")
        assert blocked.status == StepStatus.FAILED
        assert blocked.failure_kind == FailureKind.BLOCKED
        assert not blocked.attempted
        assert report.outcome("aws_s3_bucket.logs").status == StepStatus.SUCCEEDED
        assert report.status == RunStatus.FAILED

    async def test_failed_update_taints_record(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        record = StateRecord("aws_vpc.main", MANAGED, "h", blob={"id": "vpc-1"})
        state = State(records={record.key: record})

        report = await _executor(store, clock).apply(
            Plan(PlanMode.APPLY, (_step("aws_vpc.main", Action.UPDATE),)),
            CollaboratorRegistry(managed=_Recorder(result=["not", "a", "mapping"])),
            state,
        )

        assert report.outcome("aws_vpc.main").status == StepStatus.FAILED
        assert state.records["aws_vpc.main"].status == NodeStatus.TAINTED
        assert state.records["aws_vpc.main"].blob == {"id": "vpc-1"}

    async def test_without_store_nothing_is_persisted(self, clock: SimulatedClock) -> None:
        state = State()
        report = await Executor(clock=clock).apply(
            Plan(PlanMode.APPLY, (_step("aws_vpc.main", Action.CREATE),)),
            CollaboratorRegistry(managed=_Recorder()),
            state,
        )
        assert report.status == RunStatus.SUCCEEDED
        assert "aws_vpc.main" in state

    async def test_unstorable_result_fails_only_that_node(self, store: MemoryStateStore, clock: SimulatedClock) -> None:
        collaborator = _Split(fast_result={"created": datetime.now(tz=UTC)})
        plan = Plan(PlanMode.APPLY, (_step(FAST, Action.CREATE), _step(SLOW, Action.CREATE)))
        state = State()

        report = await _executor(store, clock).apply(plan, CollaboratorRegistry(managed=collaborator), state)

        assert report.status == RunStatus.FAILED
        fast = report.outcome(FAST)
        assert fast.failure_kind == FailureKind.COLLABORATOR_ERROR
        assert "cannot be stored as JSON" in fast.error.message
        assert report.outcome(SLOW).status == StepStatus.SUCCEEDED
        assert FAST not in state
        assert sorted(store.load().records) == [SLOW]

    async def test_store_error_cancels_in_flight_steps(self) -> None:
        collaborator = _Split(fast_result={"id": "fast"}, slow_hangs=True)
        plan = Plan(PlanMode.APPLY, (_step(FAST, Action.CREATE), _step(SLOW, Action.CREATE)))
        executor = Executor(store=_FailingStore(), clock=SimulatedClock(settle=30.0))

        with pytest.raises(OSError, match="No space left"):
            await executor.apply(plan, CollaboratorRegistry(managed=collaborator), State())

        assert collaborator.cancelled == [SLOW]
        assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("step:")]

    async def test_saves_run_off_the_event_loop_thread(self, clock: SimulatedClock) -> None:
        store = _ThreadRecordingStore()
        state = State()

        await Executor(store=store, clock=clock).apply(
            Plan(PlanMode.APPLY, (_step("aws_vpc.main", Action.CREATE),)),
            CollaboratorRegistry(managed=_Recorder()),
            state,
        )

        assert store.saves == 1
        assert threading.get_ident() not in store.threads
        assert state.serial == 1
        assert state.lineage == store.load().lineage
