"""Configuration dataclasses and loader for the pattern orchestrator."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from src.pattern_orchestrator.constants import (
    KIND_APPLICATION,
    KIND_CSV,
    KIND_NAMESPACE,
    KIND_PATTERN,
    KIND_SUBSCRIPTION,
)
from src.pattern_orchestrator.exceptions import ConfigError


@dataclass
class PatternInfo:
    """Identity of the pattern being installed."""

    name: str = "unknown"
    display_name: str = "Unknown Pattern"


@dataclass
class ColumnWidths:
    """Plan table column widths."""

    name: int = 50
    namespace: int = 40
    version: int = 40


@dataclass
class MonitoringConfig:
    """Per-phase monitor timeouts and poll intervals (seconds)."""

    subscription_appear: int = 300
    subscription_install: int = 600
    argocd_appear: int = 180
    argocd_sync: int = 900
    subscription_appear_interval: int = 5
    subscription_install_interval: int = 10
    argocd_appear_interval: int = 10
    argocd_sync_interval: int = 15


@dataclass
class DeployConfig:
    """Deploy retry policy and stage ceilings."""

    retries: int = 10
    wait_seconds: int = 15
    application_ceiling: int = 600
    vault_ready_timeout: int = 300
    vault_ready_interval: int = 10
    pattern_chart: str = "common/operator-install"
    helm_options: list[str] = field(default_factory=list)


@dataclass
class DashboardConfig:
    """Live dashboard refresh cadence and global ceiling."""

    refresh_interval: int = 15
    max_wait: int = 1800
    enabled: bool = True


@dataclass
class UninstallConfig:
    """Teardown waits, poll cadence and live-discovery patterns."""

    poll_interval: int = 10
    force_wait: int = 30
    waits: dict[str, int] = field(
        default_factory=lambda: {
            KIND_APPLICATION: 120,
            KIND_SUBSCRIPTION: 60,
            KIND_CSV: 60,
            KIND_NAMESPACE: 300,
            KIND_PATTERN: 120,
        }
    )
    namespace_pattern: str = "(vault|keycloak|cert-manager|zero-trust|external-secrets)"
    subscription_pattern: str = "(cert-manager|rhbk|compliance|zero-trust)"
    csv_pattern: str = "(cert-manager|keycloak|rhbk|compliance|zero-trust)"

    def wait_for(self, kind: str) -> int:
        return int(self.waits.get(kind, 60))


@dataclass
class LogsConfig:
    """Per-run audit log location and retention."""

    directory: str = "./logs"
    retention: int = 10


@dataclass
class OrchestratorConfig:
    """Top-level configuration composing all sub-configs."""

    pattern: PatternInfo = field(default_factory=PatternInfo)
    columns: ColumnWidths = field(default_factory=ColumnWidths)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    uninstall: UninstallConfig = field(default_factory=UninstallConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    category_titles: dict[str, str] = field(default_factory=dict)
    version_titles: dict[str, str] = field(default_factory=dict)
    values_dir: str = "."


class EnvSettings(BaseSettings):
    """Environment overrides shared by every command."""

    log_level: str = Field(default="warning", validation_alias="PATTERN_LOG_LEVEL")
    logs_dir: str | None = Field(default=None, validation_alias="PATTERN_LOGS_DIR")
    values_dir: str | None = Field(default=None, validation_alias="PATTERN_VALUES_DIR")
    oc_binary: str = Field(default="oc", validation_alias="PATTERN_OC_BINARY")
    helm_binary: str = Field(default="helm", validation_alias="PATTERN_HELM_BINARY")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


def _section(data: Any, key: str) -> dict[str, Any]:
    """Return config section *key* as a mapping.  Absent or null means empty."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config section '{key}' must be a mapping, got {type(data).__name__}"
        )
    return data


def _check(key: str, value: Any, expected: type) -> None:
    """Raise :class:`ConfigError` unless *value* matches the *expected* field type."""
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigError(f"Config key '{key}' must be a non-negative integer, got {value!r}")
    elif not isinstance(value, expected):
        raise ConfigError(f"Config key '{key}' must be a {expected.__name__}, got {value!r}")


def _pick(data: Any, cls: type, key: str) -> dict[str, Any]:
    """Filter section *key* to the fields of *cls*, type-checking each value.

    A field's expected type is taken from its dataclass default.
    """
    section = _section(data, key)
    defaults = cls()
    picked: dict[str, Any] = {}
    for name in cls.__dataclass_fields__:
        if name in section:
            _check(f"{key}.{name}", section[name], type(getattr(defaults, name)))
            picked[name] = section[name]
    return picked


def read_config_file(path: Path | str) -> dict[str, Any]:
    """Read the pattern configuration YAML.

    Raises:
        ConfigError: if the file is missing, unparsable, or not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Pattern config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Pattern config file {path} is not valid YAML: {exc}") from exc
    if raw is None:
        raise ConfigError(f"Pattern config file {path} is empty")
    if not isinstance(raw, dict):
        raise ConfigError(f"Pattern config file {path} must contain a mapping")
    return raw


def build_config(raw: dict[str, Any], env: EnvSettings | None = None) -> OrchestratorConfig:
    """Build an :class:`OrchestratorConfig` from parsed YAML.

    Missing sections fall back to defaults and unknown keys are ignored so
    that forward-compatible config files keep working.
    """
    env = env or EnvSettings()
    monitoring_raw = _section(raw.get("monitoring"), "monitoring")
    display_raw = _section(raw.get("display"), "display")
    uninstall_raw = dict(_section(raw.get("uninstall"), "uninstall"))
    patterns_raw = _section(uninstall_raw.pop("cleanup_patterns", None), "uninstall.cleanup_patterns")
    waits_raw = _section(uninstall_raw.pop("waits", None), "uninstall.waits")

    intervals = {
        f"{k}_interval": v
        for k, v in _section(monitoring_raw.get("intervals"), "monitoring.intervals").items()
    }
    monitoring = MonitoringConfig(
        **{
            **_pick(monitoring_raw.get("timeouts"), MonitoringConfig, "monitoring.timeouts"),
            **_pick(intervals, MonitoringConfig, "monitoring.intervals"),
        }
    )

    uninstall = UninstallConfig(**_pick(uninstall_raw, UninstallConfig, "uninstall"))
    for kind, seconds in waits_raw.items():
        _check(f"uninstall.waits.{kind}", seconds, int)
    uninstall.waits = {**uninstall.waits, **waits_raw}
    for key, attr in (
        ("namespaces", "namespace_pattern"),
        ("subscriptions", "subscription_pattern"),
        ("csvs", "csv_pattern"),
    ):
        if key in patterns_raw:
            pattern = patterns_raw[key]
            _check(f"uninstall.cleanup_patterns.{key}", pattern, str)
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigError(
                    f"Config key 'uninstall.cleanup_patterns.{key}' is not a valid regex: {exc}"
                ) from exc
            setattr(uninstall, attr, pattern)

    titles: dict[str, str] = {}
    version_titles: dict[str, str] = {}
    categories = raw.get("categories")
    if isinstance(categories, dict):
        for key, body in categories.items():
            if isinstance(body, dict):
                if body.get("title"):
                    titles[str(key)] = str(body["title"])
                if body.get("version_column_title"):
                    version_titles[str(key)] = str(body["version_column_title"])

    cfg = OrchestratorConfig(
        pattern=PatternInfo(**_pick(raw.get("pattern"), PatternInfo, "pattern")),
        columns=ColumnWidths(
            **_pick(display_raw.get("column_widths"), ColumnWidths, "display.column_widths")
        ),
        monitoring=monitoring,
        deploy=DeployConfig(**_pick(raw.get("deploy"), DeployConfig, "deploy")),
        dashboard=DashboardConfig(**_pick(raw.get("dashboard"), DashboardConfig, "dashboard")),
        uninstall=uninstall,
        logs=LogsConfig(**_pick(raw.get("logs"), LogsConfig, "logs")),
        category_titles=titles,
        version_titles=version_titles,
        values_dir=str(raw.get("values_dir", ".")),
    )

    if env.logs_dir:
        cfg.logs.directory = env.logs_dir
    if env.values_dir:
        cfg.values_dir = env.values_dir
    return cfg


def load_config(path: Path | str, env: EnvSettings | None = None) -> OrchestratorConfig:
    """Load orchestrator configuration from the pattern configuration file.

    Args:
        path: Path to ``pattern-config.yaml``.
        env: Environment overrides.  Read from the process environment when
             ``None``.

    Returns:
        Populated configuration dataclass.
    """
    return build_config(read_config_file(path), env)
