"""Shared fixtures for kubeplan integration tests.

Provides in-memory collaborators that record every call, an engine wired to a
memory state store and a simulated clock, and the EKS-style scenario graph
(VPC, cluster, Fargate profile, OIDC provider, ingress and load-balancer
controllers, a 90-second destroy barrier and an ALB route) so integration
tests can drive full plan/apply/destroy runs without touching any cloud.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from kubeplan.collaborators.base import (
    ImperativeActionCollaborator,
    ManagedResourceCollaborator,
    RunContext,
)
from kubeplan.collaborators.registry import CollaboratorRegistry
from kubeplan.engine import Engine
from kubeplan.errors import CollaboratorError, TransientCollaboratorError
from kubeplan.executor.clock import SimulatedClock
from kubeplan.models.config import ExecutorConfig, KubeplanConfig, RetryConfig
from kubeplan.models.resources import Node, NodeKind, Ref, Timeouts
from kubeplan.state.store import MemoryStateStore

# ---------------------------------------------------------------------------
# Scenario keys
# ---------------------------------------------------------------------------

VPC = "aws_vpc.main"
CLUSTER = "aws_eks_cluster.main"
FARGATE = "aws_eks_fargate_profile.main"
OIDC = "aws_iam_openid_connect_provider.main"
INGRESS = "helm_release.ingress_nginx"
LB_CONTROLLER = "helm_release.lb_controller"
BARRIER = "time_sleep.lb_controller"
ALB_ROUTE = "kubernetes_ingress.alb_route"

APPLY_ORDER = [VPC, CLUSTER, FARGATE, OIDC, INGRESS, LB_CONTROLLER, BARRIER, ALB_ROUTE]


def scenario_nodes(cluster_version: str = "1.29") -> list[Node]:
    """The EKS scenario graph, mixing depends_on, ``Ref`` and interpolation edges."""
    return [
        Node(VPC, config={"cidr_block": "10.0.0.0/16"}),
        Node(
            CLUSTER,
            config={"version": cluster_version, "vpc_config": {"vpc_id": Ref(VPC, "id")}},
            timeouts=Timeouts(delete=1800),
        ),
        Node(
            FARGATE,
            config={"cluster_name": "${aws_eks_cluster.main.name}", "selectors": [{"namespace": "kube-system"}]},
        ),
        Node(OIDC, config={"url": "${aws_eks_cluster.main.identity.oidc.issuer}"}),
        Node(
            INGRESS,
            config={"chart": "ingress-nginx", "values": {"clusterName": "${aws_eks_cluster.main.name}"}},
            depends_on=(FARGATE, OIDC),
        ),
        Node(
            LB_CONTROLLER,
            config={"chart": "aws-load-balancer-controller", "role_arn": "${aws_iam_openid_connect_provider.main.arn}"},
        ),
        Node(BARRIER, kind=NodeKind.TIMED_BARRIER, depends_on=(LB_CONTROLLER,), destroy_delay=90),
        Node(
            ALB_ROUTE,
            config={"annotations": {"alb.ingress.kubernetes.io/scheme": "internet-facing"}},
            depends_on=(INGRESS, BARRIER),
        ),
    ]


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeManaged(ManagedResourceCollaborator):
    """Records calls; failure behaviour is configured per key.

    Args:
        clock:     Records virtual time of every call when given.
        fail:      Keys whose calls raise ``CollaboratorError``.
        transient: Key -> number of ``TransientCollaboratorError`` raised
                   before the call succeeds.
        hang:      Keys whose calls never return.
        delay:     Real seconds each call takes.
    """

    def __init__(
        self,
        clock: SimulatedClock | None = None,
        fail: set[str] | None = None,
        transient: dict[str, int] | None = None,
        hang: set[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.clock = clock
        self.fail = set(fail or ())
        self.transient = dict(transient or {})
        self.hang = set(hang or ())
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.times: dict[tuple[str, str], float] = {}
        self.contexts: list[RunContext] = []
        self.gone: set[str] = set()
        self.drifted: dict[str, dict[str, Any]] = {}
        self.active = 0
        self.max_active = 0

    def actions(self, action: str) -> list[str]:
        return [k for a, k in self.calls if a == action]

    async def _call(self, action: str, key: str, ctx: RunContext) -> None:
        self.calls.append((action, key))
        self.contexts.append(ctx)
        if self.clock is not None:
            self.times[(action, key)] = self.clock.monotonic()
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if key in self.hang:
                await asyncio.Event().wait()
            if self.transient.get(key, 0) > 0:
                self.transient[key] -= 1
                raise TransientCollaboratorError("throttled", key)
            if key in self.fail:
                raise CollaboratorError(f"{action} rejected", key)
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    async def create(self, key: str, config: Mapping[str, Any], ctx: RunContext) -> dict[str, Any]:
        await self._call("create", key, ctx)
        return {"id": f"{key}-id", "generation": 1}

    async def update(
        self,
        key: str,
        blob: dict[str, Any] | None,
        config: Mapping[str, Any],
        ctx: RunContext,
    ) -> dict[str, Any]:
        await self._call("update", key, ctx)
        previous = blob or {}
        return {"id": previous.get("id", f"{key}-id"), "generation": previous.get("generation", 0) + 1}

    async def destroy(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> None:
        await self._call("destroy", key, ctx)

    async def read(self, key: str, blob: dict[str, Any] | None, ctx: RunContext) -> dict[str, Any] | None:
        self.calls.append(("read", key))
        if key in self.gone:
            return None
        return self.drifted.get(key, blob)


class FakeImperative(ImperativeActionCollaborator):
    """Imperative action runner with per-key exit codes and hangs."""

    def __init__(self, exit_codes: dict[str, int] | None = None, hang: set[str] | None = None) -> None:
        self.exit_codes = dict(exit_codes or {})
        self.hang = set(hang or ())
        self.runs: list[str] = []
        self.timeouts: dict[str, float] = {}
        self.cancelled: list[str] = []

    async def run(self, key: str, config: Mapping[str, Any], timeout: float, ctx: RunContext) -> int:
        self.runs.append(key)
        self.timeouts[key] = timeout
        if key in self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(key)
                raise
        return self.exit_codes.get(key, 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> SimulatedClock:
    return SimulatedClock(settle=0.2)


@pytest.fixture()
def managed(clock: SimulatedClock) -> FakeManaged:
    return FakeManaged(clock=clock)


@pytest.fixture()
def imperative() -> FakeImperative:
    return FakeImperative()


@pytest.fixture()
def registry(managed: FakeManaged, imperative: FakeImperative) -> CollaboratorRegistry:
    return CollaboratorRegistry(managed=managed, imperative=imperative, context=RunContext(run_id="test-run"))


@pytest.fixture()
def store() -> MemoryStateStore:
    return MemoryStateStore()


def make_engine(
    registry: CollaboratorRegistry,
    store: MemoryStateStore,
    clock: SimulatedClock,
    max_workers: int = 10,
    max_attempts: int = 3,
    backoff_max_seconds: float = 30.0,
) -> Engine:
    """Engine over a memory store; backoff starts at one (virtual) second."""
    config = KubeplanConfig(
        executor=ExecutorConfig(max_workers=max_workers),
        retry=RetryConfig(max_attempts=max_attempts, backoff_seconds=1.0, backoff_max_seconds=backoff_max_seconds),
    )
    return Engine(config=config, registry=registry, store=store, clock=clock)


@pytest.fixture()
def engine(registry: CollaboratorRegistry, store: MemoryStateStore, clock: SimulatedClock) -> Engine:
    return make_engine(registry, store, clock)


@pytest.fixture()
def serial_engine(registry: CollaboratorRegistry, store: MemoryStateStore, clock: SimulatedClock) -> Engine:
    """Single worker: execution order equals plan order."""
    return make_engine(registry, store, clock, max_workers=1)
