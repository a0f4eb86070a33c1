"""Safety-gated, reverse-order pattern teardown.

Order of removal::

    application sync units (reverse install order)
    -> the controller's top-level sync unit (<pattern>-hub)
    -> operator CSVs and subscriptions (reverse install order)
    -> pattern-owned namespaces (protected ones only get selector cleanup)
    -> the pattern custom resource

Every deletion is non-blocking, followed by a bounded wait for the resource
to disappear.  Survivors get their finalizers stripped and a forced delete;
anything still present after that is recorded as stuck.  Failures are logged
and the sweep carries on.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from src.pattern_orchestrator.constants import (
    GITOPS_NAMESPACE,
    KIND_APPLICATION,
    KIND_CSV,
    KIND_INSTALLPLAN,
    KIND_NAMESPACE,
    KIND_PATTERN,
    KIND_SUBSCRIPTION,
    OPERATORS_NAMESPACE,
    PROTECTED_NAMESPACE_NAMES,
    PROTECTED_NAMESPACE_PREFIXES,
)
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.exceptions import ExternalActionFailure, StuckResourceError
from src.pattern_orchestrator.models import (
    Category,
    Component,
    NamespaceClass,
    TeardownReport,
)

logger = logging.getLogger(__name__)

# Sub-resources that may be removed from a protected namespace, per category.
# Selectors are formatted with the owning component's resolved fields; a rule
# whose fields are unknown is skipped.
PROTECTED_CLEANUP_RULES: dict[Category, tuple[tuple[str, str], ...]] = {
    Category.OPERATOR: (
        (KIND_CSV, "operators.coreos.com/part-of={subscription_name}"),
        (KIND_INSTALLPLAN, "operators.coreos.com/{subscription_name}.{namespace}"),
    ),
    Category.APPLICATION: (
        (KIND_APPLICATION, "app.kubernetes.io/instance={sync_unit_name}"),
    ),
    Category.INFRASTRUCTURE: (
        ("all", "app.kubernetes.io/instance={release}"),
    ),
    Category.CONTROLLER: (
        ("all", "app.kubernetes.io/instance={pattern}"),
    ),
}

FOOTPRINT_PATTERN_CR = "Pattern CR"
FOOTPRINT_APPLICATIONS = "ArgoCD applications"
FOOTPRINT_NAMESPACES = "Pattern namespaces"
FOOTPRINT_PODS = "Running pods in pattern namespaces"
FOOTPRINT_SUBSCRIPTIONS = "Operator subscriptions"
FOOTPRINT_CSVS = "Installed operators (CSVs)"


def classify_namespace(name: str) -> NamespaceClass:
    """Classify *name* against the fixed protected allow-list.

    Depends on nothing but the name, so no configuration can make a platform
    namespace deletable.
    """
    if name in PROTECTED_NAMESPACE_NAMES or name.startswith(PROTECTED_NAMESPACE_PREFIXES):
        return NamespaceClass.PROTECTED
    return NamespaceClass.PATTERN_OWNED


def cleanup_selectors(component: Component, pattern_name: str) -> list[tuple[str, str]]:
    """Resolve :data:`PROTECTED_CLEANUP_RULES` for *component*."""
    fields = {
        "pattern": pattern_name,
        "release": str(component.hints.get("release") or component.id),
        "namespace": component.namespace.value,
        "subscription_name": component.subscription_name.value,
        "sync_unit_name": component.sync_unit_name.value,
    }
    resolved: list[tuple[str, str]] = []
    for kind, template in PROTECTED_CLEANUP_RULES.get(component.category, ()):
        needed = re.findall(r"{(\w+)}", template)
        if any(fields.get(name) is None for name in needed):
            continue
        resolved.append((kind, template.format(**fields)))
    return resolved


class TeardownOrchestrator:
    """Removes a pattern from the cluster.

    Args:
        ctx: The run context.  ``ctx.audit`` should be the uninstall log.
    """

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.cfg = ctx.config.uninstall
        self.report = TeardownReport()
        self._stage_started = 0.0

    @property
    def hub_name(self) -> str:
        return f"{self.ctx.pattern_name}-hub"

    # ------------------------------------------------------------------
    # Footprint and classification
    # ------------------------------------------------------------------

    async def footprint(self) -> dict[str, int]:
        """Count every pattern-related resource kind currently on the cluster."""
        cluster = self.ctx.cluster
        counts: dict[str, int] = {}
        counts[FOOTPRINT_PATTERN_CR] = int(
            await self._safe(
                cluster.resource_exists(KIND_PATTERN, self.ctx.pattern_name, OPERATORS_NAMESPACE),
                False,
            )
        )
        counts[FOOTPRINT_APPLICATIONS] = await self._safe(
            cluster.count_resources(KIND_APPLICATION), 0
        )
        live = await self._safe(cluster.list_namespaces(), [])
        matcher = re.compile(self.cfg.namespace_pattern)
        counts[FOOTPRINT_NAMESPACES] = sum(1 for ns in live if matcher.search(ns))

        pods = 0
        for ns in self._pod_namespaces():
            pods += await self._safe(cluster.pod_count(ns), 0)
        counts[FOOTPRINT_PODS] = pods
        counts[FOOTPRINT_SUBSCRIPTIONS] = await self._safe(
            cluster.count_resources(KIND_SUBSCRIPTION, self.cfg.subscription_pattern), 0
        )
        counts[FOOTPRINT_CSVS] = await self._safe(
            cluster.count_resources(KIND_CSV, self.cfg.csv_pattern), 0
        )
        return counts

    def _pod_namespaces(self) -> list[str]:
        seen: list[str] = []
        for component in self.ctx.components:
            ns = component.namespace.value
            if ns and classify_namespace(ns) is NamespaceClass.PATTERN_OWNED and ns not in seen:
                seen.append(ns)
        if self.hub_name not in seen:
            seen.append(self.hub_name)
        return seen

    async def installed_components(self) -> dict[str, bool]:
        """Which components currently exist on the cluster, for the plan view."""
        cluster = self.ctx.cluster
        installed: dict[str, bool] = {}
        for component in self.ctx.components:
            present = False
            if component.category is Category.APPLICATION and component.sync_unit_name.known:
                present = await self._safe(
                    cluster.sync_unit_locate(component.sync_unit_name.value), None
                ) is not None
            elif (
                component.category is Category.OPERATOR
                and component.subscription_name.known
                and component.namespace.known
            ):
                present = await self._safe(
                    cluster.subscription_exists(
                        component.subscription_name.value, component.namespace.value
                    ),
                    False,
                )
            elif component.category is Category.CONTROLLER:
                present = await self._safe(
                    cluster.resource_exists(KIND_PATTERN, self.ctx.pattern_name, OPERATORS_NAMESPACE),
                    False,
                )
            elif component.namespace.known:
                present = component.namespace.value in await self._safe(cluster.list_namespaces(), [])
            installed[component.id] = bool(present)
        return installed

    async def namespace_plan(self) -> dict[str, NamespaceClass]:
        """Classify referenced and live pattern namespaces, in discovery order."""
        plan: dict[str, NamespaceClass] = {}
        for component in self.ctx.components:
            if component.namespace.known:
                plan.setdefault(component.namespace.value, classify_namespace(component.namespace.value))
        live = await self._safe(self.ctx.cluster.list_namespaces(), [])
        matcher = re.compile(self.cfg.namespace_pattern)
        for ns in live:
            if matcher.search(ns) or ns == self.hub_name:
                plan.setdefault(ns, classify_namespace(ns))
        return plan

    def log_preflight(self, plan: dict[str, NamespaceClass]) -> None:
        preserved = [ns for ns, cls in plan.items() if cls is NamespaceClass.PROTECTED]
        deleted = [ns for ns, cls in plan.items() if cls is NamespaceClass.PATTERN_OWNED]
        stamp = self._stamp()
        self._audit("SAFETY PREFLIGHT CHECK", stage="preflight")
        self._audit(
            f"{stamp} - System namespaces detected: {', '.join(preserved) or 'none'}",
            stage="preflight",
        )
        self._audit(
            f"{stamp} - Pattern namespaces to delete: {', '.join(deleted) or 'none'}",
            stage="preflight",
        )
        self._audit(f"{stamp} - Safety check: PASSED", stage="preflight", outcome="PASSED")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def run(self, plan: dict[str, NamespaceClass] | None = None) -> TeardownReport:
        """Run the full sweep, then verify.  Never raises for cluster failures."""
        if plan is None:
            plan = await self.namespace_plan()
        started = self.ctx.clock.monotonic()

        steps = (
            (1, "ARGOCD APPLICATIONS CLEANUP", self._remove_applications),
            (2, "OPERATORS CLEANUP", self._remove_operators),
            (3, "NAMESPACE CLEANUP", lambda: self._remove_namespaces(plan)),
            (4, "PATTERN CR CLEANUP", self._remove_pattern_cr),
        )
        for number, title, action in steps:
            if self.ctx.cancel.is_set():
                self._audit(
                    f"Uninstall interrupted before stage {number}: {self.ctx.cancel.reason}",
                    stage=title,
                    outcome="ABORTED",
                    level=logging.WARNING,
                )
                break
            self._stage_start(number, title)
            detail = await action()
            self._stage_end(number, detail)

        self.report.residue = await self.footprint()
        self._log_summary(self.ctx.clock.monotonic() - started)
        return self.report

    async def _remove_applications(self) -> str:
        apps = list(reversed(self.ctx.components.by_category(Category.APPLICATION)))
        for component in apps:
            name = component.sync_unit_name
            if not name.known:
                self._step(component.display_name, "SKIPPED", f"No ArgoCD app name found ({name.reason})")
                continue
            located = await self._safe(self.ctx.cluster.sync_unit_locate(name.value), None)
            namespace = located or GITOPS_NAMESPACE
            self._step(f"Deleting: {component.display_name} ({name.value})", "INFO")
            if await self._delete_and_wait(KIND_APPLICATION, name.value, namespace) == "deleted":
                self.report.applications_deleted += 1

        self._step(f"Deleting parent: {self.hub_name}", "INFO")
        if await self._delete_and_wait(KIND_APPLICATION, self.hub_name, GITOPS_NAMESPACE) == "deleted":
            self.report.applications_deleted += 1
        return f"{self.report.applications_deleted} applications deleted"

    async def _remove_operators(self) -> str:
        operators = list(reversed(self.ctx.components.by_category(Category.OPERATOR)))
        for component in operators:
            sub, ns = component.subscription_name, component.namespace
            if not sub.known or not ns.known:
                reason = sub.reason if not sub.known else ns.reason
                self._step(component.display_name, "SKIPPED", f"No subscription identity ({reason})")
                continue
            if classify_namespace(ns.value) is NamespaceClass.PROTECTED:
                self._step(f"{component.display_name} CSV", "DEFERRED", f"{ns.value} is a system namespace")
            else:
                await self._remove_csvs(component.display_name, sub.value, ns.value)
            outcome = await self._delete_and_wait(KIND_SUBSCRIPTION, sub.value, ns.value)
            if outcome in ("deleted", "absent"):
                self.report.operators_cleaned += 1
        return f"{self.report.operators_cleaned} operators cleaned"

    async def _remove_csvs(self, display_name: str, subscription: str, namespace: str) -> None:
        selector = f"operators.coreos.com/part-of={subscription}"
        try:
            names = await self.ctx.cluster.list_selected(KIND_CSV, selector, namespace)
        except Exception as exc:
            failure = ExternalActionFailure(f"list {KIND_CSV} -l {selector}", str(exc))
            self._step(f"{display_name} CSV", "FAILED", str(failure))
            return
        if not names:
            self._step(f"{display_name} CSV", "SKIPPED", "Not found or already deleted")
        for name in names:
            await self._delete_and_wait(KIND_CSV, name, namespace)

    async def _remove_namespaces(self, plan: dict[str, NamespaceClass]) -> str:
        for ns, cls in plan.items():
            if cls is NamespaceClass.PROTECTED:
                cleaned = await self._clean_protected(ns)
                self.report.namespaces_preserved += 1
                self._step(f"{ns}", "PRESERVING", f"system namespace - cleaned {cleaned} resources")
                continue
            self._step(f"{ns}", "DELETING", "pattern namespace")
            if await self._delete_and_wait(KIND_NAMESPACE, ns, None) == "deleted":
                self.report.namespaces_deleted += 1
        return (
            f"{self.report.namespaces_deleted} deleted, "
            f"{self.report.namespaces_preserved} preserved"
        )

    async def _clean_protected(self, namespace: str) -> int:
        cleaned = 0
        owners = [c for c in self.ctx.components if c.namespace.value == namespace]
        for component in owners:
            for kind, selector in cleanup_selectors(component, self.ctx.pattern_name):
                try:
                    removed = await self.ctx.cluster.delete_selected(kind, selector, namespace)
                except Exception as exc:
                    self._step(f"{namespace} {kind} -l {selector}", "FAILED", str(exc))
                    continue
                cleaned += removed
                self._step(f"{namespace} {kind} -l {selector}", "DELETED", f"{removed} removed")
        self.report.subresources_cleaned += cleaned
        return cleaned

    async def _remove_pattern_cr(self) -> str:
        self._step(f"Deleting Pattern CR: {self.ctx.pattern_name}", "INFO")
        outcome = await self._delete_and_wait(KIND_PATTERN, self.ctx.pattern_name, OPERATORS_NAMESPACE)
        return "Pattern CR deleted" if outcome == "deleted" else f"Pattern CR {outcome}"

    # ------------------------------------------------------------------
    # Delete, wait, escalate
    # ------------------------------------------------------------------

    async def _delete_and_wait(self, kind: str, name: str, namespace: str | None) -> str:
        """Delete one resource.

        Returns ``"deleted"``, ``"absent"``, ``"stuck"`` or ``"refused"``.
        """
        label = f"{kind}/{name}"
        if kind == KIND_NAMESPACE and classify_namespace(name) is NamespaceClass.PROTECTED:
            logger.error("Refusing to delete protected namespace %s", name)
            self._step(label, "SKIPPED", "protected namespace")
            return "refused"

        cluster = self.ctx.cluster
        if not await self._safe(cluster.resource_exists(kind, name, namespace), True):
            self._step(label, "SKIPPED", "Not found or already deleted")
            return "absent"

        if not await self._safe(cluster.delete(kind, name, namespace), False):
            self._step(label, "FAILED", str(ExternalActionFailure(f"delete {label}")))
        if await self._wait_gone(kind, name, namespace, self.cfg.wait_for(kind)):
            self._step(label, "DELETED")
            return "deleted"

        self._step(label, "STUCK", "stripping finalizers and forcing deletion")
        await self._safe(cluster.strip_finalizers(kind, name, namespace), False)
        await self._safe(cluster.delete(kind, name, namespace, force=True), False)
        if await self._wait_gone(kind, name, namespace, self.cfg.force_wait):
            self._step(label, "DELETED", "after forced deletion")
            return "deleted"

        error = StuckResourceError(kind, name, namespace)
        self.report.stuck.append(str(error))
        self._step(label, "FAILED", str(error), level=logging.ERROR)
        return "stuck"

    async def _wait_gone(self, kind: str, name: str, namespace: str | None, timeout: float) -> bool:
        clock = self.ctx.clock
        deadline = clock.monotonic() + timeout
        while True:
            if not await self._safe(self.ctx.cluster.resource_exists(kind, name, namespace), True):
                return True
            remaining = deadline - clock.monotonic()
            if remaining <= 0:
                return False
            if await clock.sleep(min(self.cfg.poll_interval, remaining), self.ctx.cancel):
                return not await self._safe(
                    self.ctx.cluster.resource_exists(kind, name, namespace), True
                )

    @staticmethod
    async def _safe(awaitable: Any, default: Any) -> Any:
        try:
            return await awaitable
        except Exception as exc:
            logger.warning("Cluster call failed: %s", exc)
            return default

    # ------------------------------------------------------------------
    # Uninstall log
    # ------------------------------------------------------------------

    def _stamp(self) -> str:
        return datetime.fromtimestamp(self.ctx.clock.now()).strftime("%H:%M:%S")

    def _audit(self, message: str, level: int = logging.INFO, **fields: Any) -> None:
        self.ctx.audit.log(level, message, extra={k: v for k, v in fields.items() if v is not None})
        logger.log(level, message)

    def _step(self, step: str, outcome: str, details: str = "", level: int | None = None) -> None:
        message = f"{self._stamp()} - {step}" if outcome == "INFO" else f"{self._stamp()} - {step}: {outcome}"
        if details:
            message = f"{message} - {details}"
        if level is None:
            level = logging.WARNING if outcome in ("FAILED", "STUCK") else logging.INFO
        self._audit(message, level=level, step=step, outcome=outcome)

    def _stage_start(self, number: int, title: str) -> None:
        self._stage_started = self.ctx.clock.monotonic()
        self._audit(f"STAGE {number}: {title}", stage=title, outcome="START")

    def _stage_end(self, number: int, detail: str) -> None:
        seconds = self.ctx.clock.monotonic() - self._stage_started
        self._audit(
            f"{self._stamp()} - Stage {number} completed in {int(seconds)} seconds - {detail}",
            outcome="SUCCESS",
            duration=round(seconds, 3),
        )

    def _log_summary(self, duration: float) -> None:
        minutes, seconds = divmod(int(duration), 60)
        r = self.report
        self._audit("🗑️  UNINSTALL SUMMARY")
        self._audit(f"Total uninstall time: {minutes}m {seconds}s", duration=round(duration, 3))
        self._audit(f"{r.applications_deleted} ArgoCD applications deleted")
        self._audit(f"{r.operators_cleaned} operators cleaned up")
        self._audit(f"{r.namespaces_deleted} pattern namespaces deleted")
        self._audit(f"{r.namespaces_preserved} system namespaces preserved")
        if r.stuck:
            self._audit(f"{len(r.stuck)} resources stuck: {'; '.join(r.stuck)}", level=logging.WARNING)
        if r.residue_total:
            leftover = ", ".join(f"{k}={v}" for k, v in r.residue.items() if v)
            self._audit(f"Residue remaining: {leftover}", level=logging.WARNING, outcome="RESIDUE")
        else:
            self._audit("Cluster is clean", outcome="CLEAN")
