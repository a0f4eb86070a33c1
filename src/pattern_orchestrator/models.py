"""Data models shared by the registry, discovery, monitors and teardown."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Category(str, Enum):
    """Component category.  Determines the install tier."""
    INFRASTRUCTURE = "infrastructure"
    OPERATOR = "operators"
    CONTROLLER = "pattern_controller"
    APPLICATION = "applications"

    @property
    def tier(self) -> int:
        return _TIERS[self]

    @property
    def heading(self) -> str:
        return _TITLES[self]

    @classmethod
    def parse(cls, raw: str) -> Category:
        """Resolve a configuration key (``operators``, ``operator``, ...)."""
        key = str(raw).strip().lower().replace("-", "_")
        try:
            return _ALIASES[key]
        except KeyError:
            raise ValueError(f"unknown component category: {raw!r}") from None


_TIERS: dict[Category, int] = {
    Category.INFRASTRUCTURE: 0,
    Category.OPERATOR: 1,
    Category.CONTROLLER: 2,
    Category.APPLICATION: 3,
}

_TITLES: dict[Category, str] = {
    Category.INFRASTRUCTURE: "INFRASTRUCTURE",
    Category.OPERATOR: "OPERATORS",
    Category.CONTROLLER: "PATTERN CONTROLLER",
    Category.APPLICATION: "APPLICATIONS",
}

_ALIASES: dict[str, Category] = {
    "infrastructure": Category.INFRASTRUCTURE,
    "infra": Category.INFRASTRUCTURE,
    "operators": Category.OPERATOR,
    "operator": Category.OPERATOR,
    "pattern_controller": Category.CONTROLLER,
    "controller": Category.CONTROLLER,
    "applications": Category.APPLICATION,
    "application": Category.APPLICATION,
}


class MonitorType(str, Enum):
    """How a component's progress is observed on the cluster."""
    SUBSCRIPTION = "subscription"
    APPLICATION_SYNC = "argocd"
    NONE = "none"

    @classmethod
    def parse(cls, raw: str | None, category: Category) -> MonitorType:
        if not raw:
            return _DEFAULT_MONITORS[category]
        key = str(raw).strip().lower()
        if key in ("subscription", "olm"):
            return cls.SUBSCRIPTION
        if key in ("argocd", "application", "application_sync", "sync"):
            return cls.APPLICATION_SYNC
        if key in ("none", "pattern-cr", "helm"):
            return cls.NONE
        raise ValueError(f"unknown monitor type: {raw!r}")


_DEFAULT_MONITORS: dict[Category, MonitorType] = {
    Category.INFRASTRUCTURE: MonitorType.NONE,
    Category.OPERATOR: MonitorType.SUBSCRIPTION,
    Category.CONTROLLER: MonitorType.NONE,
    Category.APPLICATION: MonitorType.APPLICATION_SYNC,
}


class LifecycleState(str, Enum):
    """Lifecycle state of a single component during a run."""
    PENDING = "pending"
    WAITING = "waiting"
    INSTALLING = "installing"
    SYNCING = "syncing"
    PROGRESSING = "progressing"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {LifecycleState.SUCCESS, LifecycleState.FAILED, LifecycleState.ABORTED}
)


class NamespaceClass(str, Enum):
    """Teardown classification of a namespace."""
    PROTECTED = "protected"
    PATTERN_OWNED = "pattern_owned"


@dataclass(frozen=True)
class Resolution:
    """A discovered field value, or an explicit unknown with its reason."""
    value: str | None
    source: str = ""
    reason: str = ""

    @classmethod
    def found(cls, value: str, source: str, reason: str = "found") -> Resolution:
        return cls(value=value, source=source, reason=reason)

    @classmethod
    def unknown(cls, reason: str, source: str = "") -> Resolution:
        return cls(value=None, source=source, reason=reason)

    @property
    def known(self) -> bool:
        return self.value is not None

    def __str__(self) -> str:
        if self.value is None:
            return f"UNKNOWN ({self.reason})"
        return self.value


@dataclass(frozen=True)
class ComponentDeclaration:
    """Static component definition as declared in the configuration source."""
    id: str
    category: Category
    display_name: str
    monitor_type: MonitorType
    hints: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def tier(self) -> int:
        return self.category.tier


@dataclass(frozen=True)
class Component:
    """A declared component with its operational fields resolved for this run."""
    id: str
    category: Category
    display_name: str
    monitor_type: MonitorType
    namespace: Resolution
    version: Resolution
    subscription_name: Resolution = field(
        default_factory=lambda: Resolution.unknown("not applicable")
    )
    sync_unit_name: Resolution = field(
        default_factory=lambda: Resolution.unknown("not applicable")
    )
    hints: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def tier(self) -> int:
        return self.category.tier


@dataclass(frozen=True)
class DiscoveryRecord:
    """One probe attempt in the discovery audit trail."""
    component_id: str
    field: str
    source: str
    outcome: Resolution
    reason: str


@dataclass(frozen=True)
class StatusRecord:
    """Current lifecycle state of one component."""
    component_id: str
    state: LifecycleState = LifecycleState.PENDING
    detail: str = ""
    since: float = 0.0


@dataclass
class StageResult:
    """Outcome of one pipeline stage."""
    name: str
    success: bool
    detail: str = ""
    failed_components: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class RunSummary:
    """Pass/fail reduction of the status store at the end of an install."""
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    stages: list[StageResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed and all(s.success for s in self.stages)


@dataclass
class TeardownReport:
    """Counts collected by a teardown run, plus the residue found afterwards."""
    applications_deleted: int = 0
    operators_cleaned: int = 0
    namespaces_deleted: int = 0
    namespaces_preserved: int = 0
    subresources_cleaned: int = 0
    stuck: list[str] = field(default_factory=list)
    residue: dict[str, int] = field(default_factory=dict)

    @property
    def residue_total(self) -> int:
        return sum(self.residue.values())
