"""Shared fixtures for pattern orchestrator tests.

Provides a virtual-time clock, an in-memory cluster, and recording fakes for
the deploy and secrets collaborators.  Nothing here touches a real cluster
or sleeps in real time.
"""

from __future__ import annotations

import asyncio
import heapq
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

from src.pattern_orchestrator.clock import CancelSignal
from src.pattern_orchestrator.config import OrchestratorConfig, PatternInfo
from src.pattern_orchestrator.constants import (
    KIND_APPLICATION,
    KIND_NAMESPACE,
    KIND_SUBSCRIPTION,
)
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.models import (
    Category,
    Component,
    MonitorType,
    Resolution,
)
from src.pattern_orchestrator.protocols import ManifestRef
from src.pattern_orchestrator.registry import ComponentDirectory


# ---------------------------------------------------------------------------
# Virtual clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Clock whose ``sleep`` completes in virtual time.

    A driver task lets every runnable task settle, then jumps virtual time
    to the earliest pending deadline and wakes that sleeper.
    """

    def __init__(self, wall_start: float = 1_700_000_000.0) -> None:
        self.wall0 = wall_start
        self.t = 0.0
        self._waiters: list[tuple[float, int, asyncio.Future]] = []
        self._seq = 0
        self._driver: asyncio.Task | None = None
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.wall0 + self.t

    def monotonic(self) -> float:
        return self.t

    async def sleep(self, seconds: float, cancel: CancelSignal | None = None) -> bool:
        if cancel is not None and cancel.is_set():
            return True
        self.sleeps.append(seconds)
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._seq += 1
        heapq.heappush(self._waiters, (self.t + max(seconds, 0), self._seq, fut))
        if self._driver is None or self._driver.done():
            self._driver = asyncio.create_task(self._drive())
        if cancel is None:
            await fut
            return False
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({fut, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not fut.done():
                fut.cancel()
        return cancel.is_set()

    async def _drive(self) -> None:
        while True:
            for _ in range(50):
                await asyncio.sleep(0)
            while self._waiters and self._waiters[0][2].done():
                heapq.heappop(self._waiters)
            if not self._waiters:
                return
            deadline, _, fut = heapq.heappop(self._waiters)
            self.t = max(self.t, deadline)
            fut.set_result(None)


# ---------------------------------------------------------------------------
# In-memory cluster
# ---------------------------------------------------------------------------

ResourceKey = tuple[str, str, "str | None"]


class FakeCluster:
    """In-memory :class:`ClusterClient`.

    Install-side objects appear on a virtual-time schedule; teardown-side
    objects are plain resources with labels.  Every mutating call is
    recorded.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        # (name, namespace) -> (appears_at, ready_at or None)
        self.subscriptions: dict[tuple[str, str], tuple[float, float | None]] = {}
        # name -> (namespace, appears_at, healthy_at or None, stuck status)
        self.applications: dict[str, tuple[str, float, float | None, tuple[str, str]]] = {}
        self.resources: dict[ResourceKey, set[str]] = {}
        self.pods: dict[str, int] = {}
        self.needs_force: set[ResourceKey] = set()
        self.undeletable: set[ResourceKey] = set()
        self.failing_kinds: set[str] = set()
        self.deleted: list[tuple[str, str, str | None, bool]] = []
        self.selected: list[tuple[str, str, str]] = []
        self.listed: list[tuple[str, str, str]] = []
        self.stripped: list[ResourceKey] = []
        self.queries: list[str] = []
        self.vault_ready_at: float | None = 0
        self.vault_checks: list[float] = []

    # -- setup helpers ---------------------------------------------------

    def add_subscription(self, name: str, namespace: str, appears_at: float = 0, ready_at: float | None = 0) -> None:
        self.subscriptions[(name, namespace)] = (appears_at, ready_at)

    def add_application(
        self,
        name: str,
        namespace: str = "openshift-gitops",
        appears_at: float = 0,
        healthy_at: float | None = 0,
        status: tuple[str, str] = ("OutOfSync", "Progressing"),
    ) -> None:
        self.applications[name] = (namespace, appears_at, healthy_at, status)

    def add_resource(self, kind: str, name: str, namespace: str | None = None, labels: tuple[str, ...] = ()) -> None:
        self.resources[(kind, name, namespace)] = set(labels)

    def add_namespace(self, name: str, pods: int = 0) -> None:
        self.add_resource(KIND_NAMESPACE, name)
        if pods:
            self.pods[name] = pods

    def namespace_deletes(self) -> list[str]:
        return [name for kind, name, _, _ in self.deleted if kind == KIND_NAMESPACE]

    # -- queries ---------------------------------------------------------

    async def subscription_exists(self, name: str, namespace: str) -> bool:
        self.queries.append("subscription_exists")
        if (KIND_SUBSCRIPTION, name, namespace) in self.resources:
            return True
        entry = self.subscriptions.get((name, namespace))
        return entry is not None and self.clock.monotonic() >= entry[0]

    async def subscription_install_state(self, name: str, namespace: str) -> str:
        self.queries.append("subscription_install_state")
        _, ready_at = self.subscriptions[(name, namespace)]
        if ready_at is not None and self.clock.monotonic() >= ready_at:
            return "AtLatestKnown"
        return "UpgradePending"

    async def sync_unit_locate(self, name: str) -> str | None:
        self.queries.append("sync_unit_locate")
        for kind, res_name, namespace in self.resources:
            if kind == KIND_APPLICATION and res_name == name:
                return namespace
        entry = self.applications.get(name)
        if entry is not None and self.clock.monotonic() >= entry[1]:
            return entry[0]
        return None

    async def sync_unit_health(self, name: str, namespace: str) -> tuple[str, str]:
        self.queries.append("sync_unit_health")
        _, _, healthy_at, status = self.applications[name]
        if healthy_at is not None and self.clock.monotonic() >= healthy_at:
            return ("Synced", "Healthy")
        return status

    async def vault_ready(self, namespace: str) -> bool:
        self.vault_checks.append(self.clock.monotonic())
        return self.vault_ready_at is not None and self.clock.monotonic() >= self.vault_ready_at

    async def list_namespaces(self) -> list[str]:
        return [name for kind, name, _ in self.resources if kind == KIND_NAMESPACE]

    async def pod_count(self, namespace: str) -> int:
        if (KIND_NAMESPACE, namespace, None) not in self.resources:
            return 0
        return self.pods.get(namespace, 0)

    async def resource_exists(self, kind: str, name: str, namespace: str | None) -> bool:
        return (kind, name, namespace) in self.resources

    async def list_selected(self, kind: str, selector: str, namespace: str) -> list[str]:
        self.listed.append((kind, selector, namespace))
        return [
            key[1]
            for key, labels in self.resources.items()
            if key[0] == kind and key[2] == namespace and selector in labels
        ]

    async def count_resources(self, kind: str, name_pattern: str | None = None) -> int:
        names = [name for k, name, _ in self.resources if k == kind]
        if name_pattern:
            names = [n for n in names if re.search(name_pattern, n)]
        return len(names)

    # -- commands --------------------------------------------------------

    async def delete(self, kind: str, name: str, namespace: str | None, force: bool = False) -> bool:
        if kind in self.failing_kinds:
            raise RuntimeError(f"delete {kind} refused by API server")
        key = (kind, name, namespace)
        self.deleted.append((kind, name, namespace, force))
        if key in self.undeletable or (key in self.needs_force and not force):
            return True
        self.resources.pop(key, None)
        if kind == KIND_NAMESPACE:
            for other in [k for k in self.resources if k[2] == name]:
                self.resources.pop(other)
        return True

    async def delete_selected(self, kind: str, selector: str, namespace: str) -> int:
        self.selected.append((kind, selector, namespace))
        doomed = [
            key
            for key, labels in self.resources.items()
            if key[2] == namespace and (kind == "all" or key[0] == kind) and selector in labels
        ]
        for key in doomed:
            self.resources.pop(key)
        return len(doomed)

    async def strip_finalizers(self, kind: str, name: str, namespace: str | None) -> bool:
        self.stripped.append((kind, name, namespace))
        return True


# ---------------------------------------------------------------------------
# Deploy and secrets collaborators
# ---------------------------------------------------------------------------


class FakeDeployer:
    """Records every apply; fails a release a configurable number of times."""

    def __init__(self, clock: FakeClock, failures: dict[str, int] | None = None) -> None:
        self.clock = clock
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, float]] = []
        self.manifests: list[ManifestRef] = []

    async def apply(self, manifest: ManifestRef, opts: dict[str, Any] | None = None) -> tuple[bool, str]:
        self.calls.append((manifest.release, self.clock.monotonic()))
        self.manifests.append(manifest)
        remaining = self.failures.get(manifest.release, 0)
        if remaining:
            self.failures[manifest.release] = remaining - 1
            return (False, f"Error: rendering {manifest.chart} failed")
        return (True, "applied")

    def releases(self) -> list[str]:
        return [release for release, _ in self.calls]


class FakeSecrets:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls: list[str] = []

    async def load_secrets(self, pattern_name: str) -> bool:
        self.calls.append(pattern_name)
        return self.result


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

_UNSET = object()


def make_component(
    comp_id: str,
    category: Category,
    namespace: Any = "ns",
    version: Any = "1.0",
    subscription_name: Any = _UNSET,
    sync_unit_name: Any = _UNSET,
    monitor_type: MonitorType | None = None,
    **hints: Any,
) -> Component:
    """Build a resolved component; pass ``None`` for a field to make it unknown."""

    def res(value: Any) -> Resolution:
        if value is None:
            return Resolution.unknown("not set in test")
        return Resolution.found(str(value), "test")

    if subscription_name is _UNSET:
        subscription_name = comp_id.removesuffix("-op") if category is Category.OPERATOR else None
    if sync_unit_name is _UNSET:
        sync_unit_name = comp_id.removesuffix("-app") if category is Category.APPLICATION else None
    return Component(
        id=comp_id,
        category=category,
        display_name=comp_id.replace("-", " ").title(),
        monitor_type=monitor_type or MonitorType.parse(None, category),
        namespace=res(namespace),
        version=res(version),
        subscription_name=res(subscription_name),
        sync_unit_name=res(sync_unit_name),
        hints=hints,
    )


def make_config(**overrides: Any) -> OrchestratorConfig:
    cfg = OrchestratorConfig(pattern=PatternInfo(name="zero-trust", display_name="Zero Trust Pattern"))
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def make_context(
    components: list[Component],
    clock: FakeClock,
    cluster: FakeCluster | None = None,
    deployer: FakeDeployer | None = None,
    secrets: FakeSecrets | None = None,
    config: OrchestratorConfig | None = None,
) -> RunContext:
    return RunContext(
        config=config or make_config(),
        components=ComponentDirectory(components),
        cluster=cluster or FakeCluster(clock),
        deployer=deployer,
        secrets=secrets,
        clock=clock,
    )


def standard_components() -> list[Component]:
    """A small pattern: two infra, two operators, the controller, two apps."""
    return [
        make_component("vault-app", Category.INFRASTRUCTURE, namespace="vault", chart="hashicorp/vault"),
        make_component("eso-app", Category.INFRASTRUCTURE, namespace="external-secrets", chart="eso/external-secrets"),
        make_component("cert-manager-op", Category.OPERATOR, namespace="cert-manager-operator"),
        make_component("keycloak-op", Category.OPERATOR, namespace="keycloak-system", subscription_name="rhbk-operator"),
        make_component("pattern-cr", Category.CONTROLLER, namespace="openshift-operators"),
        make_component("keycloak-app", Category.APPLICATION, namespace="keycloak-system"),
        make_component("zero-trust-app", Category.APPLICATION, namespace="zero-trust"),
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster(clock: FakeClock) -> FakeCluster:
    return FakeCluster(clock)


@pytest.fixture
def deployer(clock: FakeClock) -> FakeDeployer:
    return FakeDeployer(clock)


@pytest.fixture
def secrets() -> FakeSecrets:
    return FakeSecrets()


@pytest.fixture
def tmp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test artifacts."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)
