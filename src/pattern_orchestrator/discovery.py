"""Resolve each component's namespace, version and identity from ranked probes.

Sources are probed in order until one yields a value.  Every attempt is
recorded as a :class:`DiscoveryRecord` and written to the discovery log.
Nothing in here raises: a field that cannot be resolved becomes
``Resolution.unknown(reason)``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml

from src.pattern_orchestrator.clock import Clock, SystemClock
from src.pattern_orchestrator.constants import (
    CONTROLLER_DEFAULT_NAMESPACE,
    INFRASTRUCTURE_DEFAULT_NAMESPACES,
    OPERATOR_DEFAULT_NAMESPACE,
    VALUES_GLOBAL_FILE,
    VALUES_HUB_FILE,
)
from src.pattern_orchestrator.exceptions import DiscoveryGap
from src.pattern_orchestrator.models import (
    Category,
    Component,
    ComponentDeclaration,
    DiscoveryRecord,
    Resolution,
)
from src.pattern_orchestrator.registry import ComponentDirectory

logger = logging.getLogger(__name__)

Probe = tuple[str, Callable[[], Any]]

_NOT_APPLICABLE = Resolution.unknown("not applicable")


class ValuesFile:
    """Lazily parsed YAML file with dotted-path lookups.

    Read and parse failures are remembered and re-raised as
    :class:`DiscoveryGap` on every lookup.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: Any = None
        self._error: str | None = None
        self._loaded = False

    def _load(self) -> Any:
        if not self._loaded:
            self._loaded = True
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    self._data = yaml.safe_load(f)
            except FileNotFoundError:
                self._error = f"{self.path.name} not found"
            except (OSError, UnicodeDecodeError) as exc:
                self._error = f"{self.path.name} unreadable: {exc}"
            except yaml.YAMLError as exc:
                self._error = f"{self.path.name} is malformed YAML: {exc}"
        if self._error:
            raise DiscoveryGap(self._error)
        return self._data

    def lookup(self, dotted: str) -> str:
        node = self._load()
        walked: list[str] = []
        for part in dotted.split("."):
            if not isinstance(node, dict):
                where = ".".join(walked) or "document root"
                raise DiscoveryGap(f"{where} is not a mapping in {self.path.name}")
            if part not in node:
                raise DiscoveryGap(f"{dotted} not set in {self.path.name}")
            node = node[part]
            walked.append(part)
        if node is None or node == "":
            raise DiscoveryGap(f"{dotted} is empty in {self.path.name}")
        if isinstance(node, (dict, list)):
            raise DiscoveryGap(f"{dotted} is not a scalar in {self.path.name}")
        return str(node)


def _strip_suffix(value: str, suffix: str) -> str:
    return value[: -len(suffix)] if value.endswith(suffix) else value


def subscription_key(decl: ComponentDeclaration) -> str:
    """Key of the component's entry under ``clusterGroup.subscriptions``."""
    return str(decl.hints.get("subscription_key") or _strip_suffix(decl.id, "-op"))


def application_key(decl: ComponentDeclaration) -> str:
    """Key of the component's entry under ``clusterGroup.applications``."""
    return str(decl.hints.get("application_key") or _strip_suffix(decl.id, "-app"))


class DiscoveryEngine:
    """Builds :class:`Component` records from declarations.

    Args:
        values_dir: Directory holding ``values-hub.yaml``, ``values-global.yaml``
            and any local chart paths.
        audit: Logger writing to the run's discovery log.  Falls back to the
            module logger.
        clock: Source of timestamps for log lines.
    """

    def __init__(
        self,
        values_dir: Path | str = ".",
        audit: logging.Logger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.values_dir = Path(values_dir)
        self.audit = audit or logger
        self.clock = clock or SystemClock()
        self.records: list[DiscoveryRecord] = []
        self._hub = ValuesFile(self.values_dir / VALUES_HUB_FILE)
        self._global = ValuesFile(self.values_dir / VALUES_GLOBAL_FILE)
        self._charts: dict[Path, ValuesFile] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def write_header(self, display_name: str) -> None:
        self.audit.info("📋 COMPONENT DISCOVERY REPORT")
        generated = datetime.fromtimestamp(self.clock.now())
        self.audit.info("Generated: %s", generated.isoformat(sep=" ", timespec="seconds"))
        self.audit.info("Pattern: %s", display_name)
        self.audit.info("=================================")
        self.audit.info("")

    def resolve_all(
        self, declarations: ComponentDirectory[ComponentDeclaration]
    ) -> ComponentDirectory[Component]:
        return ComponentDirectory([self.resolve(decl) for decl in declarations])

    def resolve(self, decl: ComponentDeclaration) -> Component:
        """Resolve every operational field of *decl*.  Never raises."""
        try:
            return self._resolve(decl)
        except Exception as exc:
            logger.exception("Discovery failed unexpectedly for %s", decl.id)
            reason = f"discovery error: {exc}"
            self._record(decl.id, "component", "discovery engine", Resolution.unknown(reason))
            gap = Resolution.unknown(reason)
            return Component(
                id=decl.id,
                category=decl.category,
                display_name=decl.display_name,
                monitor_type=decl.monitor_type,
                namespace=gap,
                version=gap,
                subscription_name=gap,
                sync_unit_name=gap,
                hints=dict(decl.hints),
            )

    def summary(self) -> tuple[int, int, dict[str, str]]:
        """Return ``(successes, failures, failing fields)`` for this run."""
        successes = sum(1 for r in self.records if r.outcome.known)
        failures = {
            f"{r.component_id}_{r.field}": r.reason for r in self.records if not r.outcome.known
        }
        return successes, len(self.records) - successes, failures

    def write_summary(self) -> None:
        successes, failed, failures = self.summary()
        self.audit.info("")
        self.audit.info("📊 DISCOVERY SUMMARY")
        self.audit.info("===================")
        self.audit.info("✅ Successful discoveries: %d", successes)
        self.audit.info("❌ Failed discoveries: %d", failed)
        if failures:
            self.audit.info("")
            self.audit.info("❌ FAILED DISCOVERIES REQUIRING ATTENTION:")
            for key, reason in failures.items():
                self.audit.info("  - %s: %s", key, reason)
            self.audit.info("")
            self.audit.info("🔧 RECOMMENDED ACTIONS:")
            self.audit.info("  1. Check %s for missing/incorrect entries", VALUES_HUB_FILE)
            self.audit.info("  2. Verify Chart.yaml files exist and have version fields")
            self.audit.info("  3. Add subscription_key/application_key hints to the pattern config")

    # ------------------------------------------------------------------
    # Per-category probe tables
    # ------------------------------------------------------------------

    def _resolve(self, decl: ComponentDeclaration) -> Component:
        namespace = self._resolve_field(decl, "namespace", self._namespace_probes(decl))
        version = self._resolve_field(decl, "version", self._version_probes(decl))
        subscription_name = _NOT_APPLICABLE
        sync_unit_name = _NOT_APPLICABLE
        if decl.category is Category.OPERATOR:
            subscription_name = self._resolve_field(
                decl, "subscription_name", self._subscription_name_probes(decl)
            )
        elif decl.category is Category.APPLICATION:
            sync_unit_name = self._resolve_field(
                decl, "sync_unit_name", self._sync_unit_probes(decl)
            )

        return Component(
            id=decl.id,
            category=decl.category,
            display_name=decl.display_name,
            monitor_type=decl.monitor_type,
            namespace=namespace,
            version=version,
            subscription_name=subscription_name,
            sync_unit_name=sync_unit_name,
            hints=dict(decl.hints),
        )

    def _override(self, decl: ComponentDeclaration, *keys: str) -> list[Probe]:
        for key in keys:
            if decl.hints.get(key):
                value = decl.hints[key]
                return [(f"pattern config override '{key}'", lambda value=value: value)]
        return []

    def _hub_probe(self, dotted: str) -> Probe:
        return (f"{VALUES_HUB_FILE} {dotted}", lambda: self._hub.lookup(dotted))

    def _global_probe(self, dotted: str) -> Probe:
        return (f"{VALUES_GLOBAL_FILE} {dotted}", lambda: self._global.lookup(dotted))

    @staticmethod
    def _fixed(source: str, value: str) -> Probe:
        return (source, lambda: value)

    def _namespace_probes(self, decl: ComponentDeclaration) -> list[Probe]:
        probes = self._override(decl, "namespace")
        if decl.category is Category.OPERATOR:
            key = subscription_key(decl)
            probes.append(self._hub_probe(f"clusterGroup.subscriptions.{key}.namespace"))
            probes.append(self._fixed("OLM default namespace", OPERATOR_DEFAULT_NAMESPACE))
        elif decl.category is Category.APPLICATION:
            key = application_key(decl)
            probes.append(self._hub_probe(f"clusterGroup.applications.{key}.namespace"))
        elif decl.category is Category.INFRASTRUCTURE:
            default = INFRASTRUCTURE_DEFAULT_NAMESPACES.get(decl.id)
            if default:
                probes.append(self._fixed("infrastructure default", default))
        elif decl.category is Category.CONTROLLER:
            probes.append(self._fixed("pattern controller default", CONTROLLER_DEFAULT_NAMESPACE))
        return probes

    def _version_probes(self, decl: ComponentDeclaration) -> list[Probe]:
        probes = self._override(decl, "version")
        if decl.category is Category.OPERATOR:
            key = subscription_key(decl)
            probes.append(self._hub_probe(f"clusterGroup.subscriptions.{key}.channel"))
        elif decl.category is Category.APPLICATION:
            key = application_key(decl)
            probes.append(self._hub_probe(f"clusterGroup.applications.{key}.chartVersion"))
            probes.append(self._chart_probe(key))
        elif decl.category is Category.INFRASTRUCTURE:
            key = application_key(decl)
            probes.append(self._hub_probe(f"clusterGroup.applications.{key}.chartVersion"))
        elif decl.category is Category.CONTROLLER:
            probes.append(self._global_probe("main.git.revision"))
            probes.append(self._global_probe("global.pattern.revision"))
        return probes

    def _subscription_name_probes(self, decl: ComponentDeclaration) -> list[Probe]:
        probes = self._override(decl, "subscription_name")
        key = subscription_key(decl)
        probes.append(self._hub_probe(f"clusterGroup.subscriptions.{key}.name"))
        return probes

    def _sync_unit_probes(self, decl: ComponentDeclaration) -> list[Probe]:
        probes = self._override(decl, "sync_unit_name", "argocd_app_name")
        key = application_key(decl)
        probes.append(self._hub_probe(f"clusterGroup.applications.{key}.name"))
        probes.append(self._fixed("application key", key))
        return probes

    def _chart_probe(self, key: str) -> Probe:
        def probe() -> str:
            chart_path = self._hub.lookup(f"clusterGroup.applications.{key}.path")
            chart_file = self.values_dir / chart_path / "Chart.yaml"
            values = self._charts.setdefault(chart_file, ValuesFile(chart_file))
            return values.lookup("version")

        return (f"applications.{key}.path Chart.yaml version", probe)

    # ------------------------------------------------------------------
    # Probe execution and audit trail
    # ------------------------------------------------------------------

    def _resolve_field(
        self, decl: ComponentDeclaration, field_name: str, probes: list[Probe]
    ) -> Resolution:
        if not probes:
            outcome = Resolution.unknown(f"no {field_name} source for {decl.category.value} component")
            self._record(decl.id, field_name, "none", outcome)
            return outcome

        outcome = Resolution.unknown("no source yielded a value")
        for source, probe in probes:
            try:
                value = probe()
                if value is None or str(value).strip() == "":
                    raise DiscoveryGap(f"empty value from {source}")
                outcome = Resolution.found(str(value).strip(), source)
            except DiscoveryGap as gap:
                outcome = Resolution.unknown(gap.reason, source)
            except Exception as exc:
                outcome = Resolution.unknown(f"probe error: {exc}", source)
            self._record(decl.id, field_name, source, outcome)
            if outcome.known:
                break
        return outcome

    def _record(self, component_id: str, field_name: str, source: str, outcome: Resolution) -> None:
        record = DiscoveryRecord(
            component_id=component_id,
            field=field_name,
            source=source,
            outcome=outcome,
            reason=outcome.reason,
        )
        self.records.append(record)
        stamp = datetime.fromtimestamp(self.clock.now()).strftime("%H:%M:%S")
        self.audit.info("[%s] Component: %s", stamp, component_id)
        if outcome.known:
            self.audit.info("[%s]   ✅ %s: Found '%s' in %s", stamp, field_name, outcome.value, source)
        else:
            self.audit.info("[%s]   ❌ %s: FAILED - %s", stamp, field_name, outcome.reason)
        self.audit.info("")
