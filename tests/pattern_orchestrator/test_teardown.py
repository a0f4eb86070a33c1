"""Tests for src.pattern_orchestrator.teardown."""

from __future__ import annotations

import logging
import random
from unittest.mock import AsyncMock

import pytest

from src.pattern_orchestrator.constants import (
    KIND_APPLICATION,
    KIND_CSV,
    KIND_INSTALLPLAN,
    KIND_NAMESPACE,
    KIND_PATTERN,
    KIND_SUBSCRIPTION,
    PROTECTED_NAMESPACE_NAMES,
)
from src.pattern_orchestrator.models import Category, NamespaceClass
from src.pattern_orchestrator.teardown import (
    FOOTPRINT_APPLICATIONS,
    FOOTPRINT_CSVS,
    FOOTPRINT_NAMESPACES,
    FOOTPRINT_PATTERN_CR,
    FOOTPRINT_PODS,
    FOOTPRINT_SUBSCRIPTIONS,
    TeardownOrchestrator,
    classify_namespace,
    cleanup_selectors,
)
from tests.pattern_orchestrator.conftest import (
    FakeClock,
    FakeCluster,
    make_component,
    make_context,
    standard_components,
)

GITOPS = "openshift-gitops"


def installed_cluster(clock: FakeClock) -> FakeCluster:
    """A cluster with the standard pattern fully installed."""
    cluster = FakeCluster(clock)
    for app in ("keycloak", "zero-trust", "zero-trust-hub"):
        cluster.add_resource(KIND_APPLICATION, app, GITOPS)
    cluster.add_resource(KIND_SUBSCRIPTION, "cert-manager", "cert-manager-operator")
    cluster.add_resource(KIND_SUBSCRIPTION, "rhbk-operator", "keycloak-system")
    cluster.add_resource(
        KIND_CSV,
        "cert-manager-operator.v1.13.0",
        "cert-manager-operator",
        labels=("operators.coreos.com/part-of=cert-manager",),
    )
    cluster.add_resource(KIND_PATTERN, "zero-trust", "openshift-operators")
    cluster.add_namespace("vault", pods=2)
    cluster.add_namespace("external-secrets", pods=1)
    cluster.add_namespace("cert-manager-operator", pods=1)
    cluster.add_namespace("keycloak-system", pods=3)
    cluster.add_namespace("zero-trust", pods=4)
    cluster.add_namespace("zero-trust-hub", pods=1)
    cluster.add_namespace("openshift-operators", pods=9)
    return cluster


def teardown_for(clock, cluster, components=None) -> TeardownOrchestrator:
    ctx = make_context(components or standard_components(), clock, cluster)
    ctx.audit = logging.getLogger("test.teardown.audit")
    return TeardownOrchestrator(ctx)


class TestClassification:
    @pytest.mark.parametrize(
        "name",
        sorted(PROTECTED_NAMESPACE_NAMES) + ["openshift-operators", "openshift-gitops", "kube-flannel"],
    )
    def test_protected(self, name: str) -> None:
        assert classify_namespace(name) is NamespaceClass.PROTECTED

    @pytest.mark.parametrize("name", ["vault", "zero-trust-hub", "keycloak-system", "my-openshift-app"])
    def test_pattern_owned(self, name: str) -> None:
        assert classify_namespace(name) is NamespaceClass.PATTERN_OWNED

    def test_cleanup_selectors_per_category(self) -> None:
        op = make_component("cert-manager-op", Category.OPERATOR, namespace="openshift-operators")
        assert cleanup_selectors(op, "zero-trust") == [
            (KIND_CSV, "operators.coreos.com/part-of=cert-manager"),
            (KIND_INSTALLPLAN, "operators.coreos.com/cert-manager.openshift-operators"),
        ]
        cr = make_component("pattern-cr", Category.CONTROLLER)
        assert cleanup_selectors(cr, "zero-trust") == [("all", "app.kubernetes.io/instance=zero-trust")]

    def test_cleanup_selectors_skip_unknown_fields(self) -> None:
        op = make_component("cert-manager-op", Category.OPERATOR, subscription_name=None)
        assert cleanup_selectors(op, "zero-trust") == []


class TestFootprint:
    async def test_counts(self, clock: FakeClock) -> None:
        teardown = teardown_for(clock, installed_cluster(clock))
        counts = await teardown.footprint()
        assert counts == {
            FOOTPRINT_PATTERN_CR: 1,
            FOOTPRINT_APPLICATIONS: 3,
            FOOTPRINT_NAMESPACES: 6,
            FOOTPRINT_PODS: 12,
            FOOTPRINT_SUBSCRIPTIONS: 2,
            FOOTPRINT_CSVS: 1,
        }

    async def test_clean_cluster(self, clock: FakeClock, cluster: FakeCluster) -> None:
        counts = await teardown_for(clock, cluster).footprint()
        assert sum(counts.values()) == 0

    async def test_installed_components(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        cluster.resources.pop((KIND_APPLICATION, "keycloak", GITOPS))
        installed = await teardown_for(clock, cluster).installed_components()
        assert installed["keycloak-app"] is False
        assert installed["zero-trust-app"] is True
        assert installed["keycloak-op"] is True
        assert installed["pattern-cr"] is True
        assert installed["vault-app"] is True

    async def test_namespace_plan(self, clock: FakeClock) -> None:
        plan = await teardown_for(clock, installed_cluster(clock)).namespace_plan()
        assert list(plan) == [
            "vault",
            "external-secrets",
            "cert-manager-operator",
            "keycloak-system",
            "openshift-operators",
            "zero-trust",
            "zero-trust-hub",
        ]
        assert plan["openshift-operators"] is NamespaceClass.PROTECTED


class TestFullTeardown:
    async def test_removes_everything(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        teardown = teardown_for(clock, cluster)
        report = await teardown.run()

        assert report.applications_deleted == 3
        assert report.operators_cleaned == 2
        assert report.namespaces_deleted == 6
        assert report.namespaces_preserved == 1
        assert report.stuck == []
        assert report.residue_total == 0
        assert "openshift-operators" not in cluster.namespace_deletes()
        assert (KIND_NAMESPACE, "openshift-operators", None) in cluster.resources

    async def test_stage_order(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        await teardown_for(clock, cluster).run()
        kinds = [kind for kind, _, _, _ in cluster.deleted]
        last_app = max(i for i, k in enumerate(kinds) if k == KIND_APPLICATION)
        first_sub = kinds.index(KIND_SUBSCRIPTION)
        first_ns = kinds.index(KIND_NAMESPACE)
        assert last_app < first_sub < first_ns < kinds.index(KIND_PATTERN)

    async def test_applications_removed_in_reverse(self, clock: FakeClock) -> None:
        components = [
            make_component("a-app", Category.APPLICATION, namespace="zero-trust"),
            make_component("b-app", Category.APPLICATION, namespace="zero-trust"),
            make_component("c-app", Category.APPLICATION, namespace="zero-trust"),
        ]
        cluster = FakeCluster(clock)
        for name in ("a", "b", "c", "zero-trust-hub"):
            cluster.add_resource(KIND_APPLICATION, name, GITOPS)
        await teardown_for(clock, cluster, components).run()
        apps = [name for kind, name, _, _ in cluster.deleted if kind == KIND_APPLICATION]
        assert apps == ["c", "b", "a", "zero-trust-hub"]

    async def test_operators_removed_in_reverse_with_csv_first(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        await teardown_for(clock, cluster).run()
        assert cluster.listed == [
            (KIND_CSV, "operators.coreos.com/part-of=rhbk-operator", "keycloak-system"),
            (KIND_CSV, "operators.coreos.com/part-of=cert-manager", "cert-manager-operator"),
        ]
        kinds = [(kind, name) for kind, name, _, _ in cluster.deleted if kind in (KIND_CSV, KIND_SUBSCRIPTION)]
        assert kinds == [
            (KIND_SUBSCRIPTION, "rhbk-operator"),
            (KIND_CSV, "cert-manager-operator.v1.13.0"),
            (KIND_SUBSCRIPTION, "cert-manager"),
        ]
        assert (KIND_CSV, "cert-manager-operator.v1.13.0", "cert-manager-operator") not in cluster.resources

    async def test_stuck_csv_escalates(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        key = (KIND_CSV, "cert-manager-operator.v1.13.0", "cert-manager-operator")
        cluster.needs_force.add(key)
        teardown = teardown_for(clock, cluster)
        await teardown._remove_operators()
        assert key in cluster.stripped
        assert (*key, True) in cluster.deleted
        assert key not in cluster.resources
        assert clock.monotonic() >= teardown.cfg.wait_for(KIND_CSV)

    async def test_csv_listing_failure_still_removes_subscription(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        cluster.list_selected = AsyncMock(side_effect=RuntimeError("forbidden"))
        teardown = teardown_for(clock, cluster)
        assert await teardown._remove_operators() == "2 operators cleaned"
        assert not any(kind == KIND_CSV for kind, _, _, _ in cluster.deleted)

    async def test_unknown_app_name_skipped(self, clock: FakeClock) -> None:
        components = [make_component("ghost-app", Category.APPLICATION, sync_unit_name=None)]
        cluster = FakeCluster(clock)
        await teardown_for(clock, cluster, components).run()
        assert all(name != "ghost" for _, name, _, _ in cluster.deleted)

    async def test_absent_resources_not_deleted(self, clock: FakeClock, cluster: FakeCluster) -> None:
        report = await teardown_for(clock, cluster).run()
        assert cluster.deleted == []
        assert report.applications_deleted == 0

    async def test_log_lines(self, clock: FakeClock, caplog) -> None:
        teardown = teardown_for(clock, installed_cluster(clock))
        with caplog.at_level(logging.INFO, logger="test.teardown.audit"):
            plan = await teardown.namespace_plan()
            teardown.log_preflight(plan)
            await teardown.run(plan)
        assert "System namespaces detected: openshift-operators" in caplog.text
        assert "STAGE 1: ARGOCD APPLICATIONS CLEANUP" in caplog.text
        assert "openshift-operators: PRESERVING" in caplog.text
        assert "UNINSTALL SUMMARY" in caplog.text
        assert "Cluster is clean" in caplog.text


class TestProtectedNamespaces:
    async def test_platform_system_gets_selector_cleanup_only(self, clock: FakeClock) -> None:
        components = [
            make_component(
                "platform-op",
                Category.OPERATOR,
                namespace="platform-system",
                subscription_name="platform-operator",
            )
        ]
        cluster = FakeCluster(clock)
        cluster.add_namespace("platform-system", pods=5)
        cluster.add_resource(KIND_SUBSCRIPTION, "platform-operator", "platform-system")
        cluster.add_resource(
            KIND_INSTALLPLAN,
            "install-abcde",
            "platform-system",
            labels=("operators.coreos.com/platform-operator.platform-system",),
        )
        report = await teardown_for(clock, cluster, components).run()

        assert cluster.namespace_deletes() == []
        assert (KIND_NAMESPACE, "platform-system", None) in cluster.resources
        assert (
            KIND_INSTALLPLAN,
            "operators.coreos.com/platform-operator.platform-system",
            "platform-system",
        ) in cluster.selected
        assert report.namespaces_preserved == 1
        assert report.subresources_cleaned == 1

    async def test_protected_csv_cleanup_runs_once(self, clock: FakeClock) -> None:
        components = [
            make_component(
                "platform-op",
                Category.OPERATOR,
                namespace="platform-system",
                subscription_name="platform-operator",
            )
        ]
        cluster = FakeCluster(clock)
        cluster.add_namespace("platform-system")
        cluster.add_resource(KIND_SUBSCRIPTION, "platform-operator", "platform-system")
        cluster.add_resource(
            KIND_CSV,
            "platform-operator.v2.1.0",
            "platform-system",
            labels=("operators.coreos.com/part-of=platform-operator",),
        )
        report = await teardown_for(clock, cluster, components).run()

        assert cluster.listed == []
        in_namespace = [(kind, sel) for kind, sel, ns in cluster.selected if ns == "platform-system"]
        assert in_namespace == cleanup_selectors(components[0], "zero-trust")
        assert in_namespace.count((KIND_CSV, "operators.coreos.com/part-of=platform-operator")) == 1
        assert (KIND_CSV, "platform-operator.v2.1.0", "platform-system") not in cluster.resources
        assert report.subresources_cleaned == 1
        assert report.operators_cleaned == 1

    async def test_direct_delete_of_protected_refused(self, clock: FakeClock) -> None:
        cluster = FakeCluster(clock)
        cluster.add_namespace("kube-system")
        teardown = teardown_for(clock, cluster)
        assert await teardown._delete_and_wait(KIND_NAMESPACE, "kube-system", None) == "refused"
        assert cluster.deleted == []

    @pytest.mark.parametrize("seed", range(15))
    async def test_no_protected_namespace_ever_deleted(self, seed: int) -> None:
        rng = random.Random(seed)
        clock = FakeClock()
        protected = sorted(PROTECTED_NAMESPACE_NAMES) + [
            "openshift-operators",
            "openshift-gitops",
            "kube-proxy",
            "openshift-monitoring",
        ]
        owned = ["vault", "keycloak-system", "zero-trust", "cert-manager", "external-secrets-x"]
        cluster = FakeCluster(clock)
        components = []
        for i in range(rng.randint(3, 10)):
            category = rng.choice(list(Category))
            namespace = rng.choice(protected + owned)
            components.append(make_component(f"c{i}-{category.value}", category, namespace=namespace))
        for ns in rng.sample(protected + owned, rng.randint(2, len(protected + owned))):
            cluster.add_namespace(ns, pods=rng.randint(0, 3))
        cluster.add_namespace("zero-trust-hub")
        live_protected = [ns for ns in await cluster.list_namespaces() if ns in protected]

        await teardown_for(clock, cluster, components).run()
        deleted = cluster.namespace_deletes()
        assert not [ns for ns in deleted if classify_namespace(ns) is NamespaceClass.PROTECTED]
        for ns in live_protected:
            assert (KIND_NAMESPACE, ns, None) in cluster.resources


class TestEscalation:
    async def test_finalizers_stripped_then_forced(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        cluster.needs_force.add((KIND_NAMESPACE, "zero-trust", None))
        report = await teardown_for(clock, cluster).run()
        assert (KIND_NAMESPACE, "zero-trust", None) in cluster.stripped
        assert ("namespace", "zero-trust", None, True) in cluster.deleted
        assert report.stuck == []
        assert report.residue_total == 0

    async def test_stuck_resource_recorded_and_residue_reported(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        cluster.undeletable.add((KIND_NAMESPACE, "zero-trust", None))
        report = await teardown_for(clock, cluster).run()
        assert report.stuck == ["namespace 'zero-trust' survived forced deletion"]
        assert report.residue[FOOTPRINT_NAMESPACES] == 1
        assert report.residue_total >= 1
        # the sweep carried on to the pattern CR
        assert (KIND_PATTERN, "zero-trust", "openshift-operators") not in cluster.resources

    async def test_failing_delete_calls_do_not_stop_sweep(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        cluster.failing_kinds.add(KIND_APPLICATION)
        report = await teardown_for(clock, cluster).run()
        assert len(report.stuck) == 3
        assert report.residue[FOOTPRINT_APPLICATIONS] == 3
        assert report.namespaces_deleted == 6


class TestInterrupt:
    async def test_cancel_stops_sweep_but_still_verifies(self, clock: FakeClock) -> None:
        cluster = installed_cluster(clock)
        teardown = teardown_for(clock, cluster)
        teardown.ctx.cancel.set("Interrupted by signal")
        report = await teardown.run()
        assert cluster.deleted == []
        assert report.residue[FOOTPRINT_PATTERN_CR] == 1
