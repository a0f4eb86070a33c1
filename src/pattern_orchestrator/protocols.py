"""Runtime-checkable protocols for the orchestrator's external collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ConfigSource(Protocol):
    """Protocol for the declarative component configuration source."""

    def list_categories(self) -> list[str]:
        """Return category keys in declaration order."""
        ...

    def list_components(self, category: str) -> list[dict[str, Any]]:
        """Return component hints for *category*.

        Each hint carries at least ``id``; ``name``, ``monitor_type`` and any
        static identity hints (``namespace``, ``subscription_key``, ...) are
        optional.
        """
        ...


@runtime_checkable
class ClusterClient(Protocol):
    """Protocol for the cluster / control-plane query and command surface.

    Every method is a coroutine; implementations that shell out must not
    block the event loop.
    """

    async def subscription_exists(self, name: str, namespace: str) -> bool:
        ...

    async def subscription_install_state(self, name: str, namespace: str) -> str:
        ...

    async def sync_unit_locate(self, name: str) -> str | None:
        """Return the namespace holding sync unit *name*, or ``None``."""
        ...

    async def sync_unit_health(self, name: str, namespace: str) -> tuple[str, str]:
        """Return ``(sync_status, health_status)``."""
        ...

    async def vault_ready(self, namespace: str) -> bool:
        """``True`` once a Vault pod is Running and ``vault status`` answers."""
        ...

    async def list_namespaces(self) -> list[str]:
        ...

    async def pod_count(self, namespace: str) -> int:
        ...

    async def resource_exists(self, kind: str, name: str, namespace: str | None) -> bool:
        ...

    async def delete(
        self, kind: str, name: str, namespace: str | None, force: bool = False
    ) -> bool:
        """Issue a non-blocking delete.  Returns ``False`` on failure."""
        ...

    async def list_selected(self, kind: str, selector: str, namespace: str) -> list[str]:
        """Names of every *kind* matching label *selector* in *namespace*."""
        ...

    async def delete_selected(self, kind: str, selector: str, namespace: str) -> int:
        """Delete every *kind* matching label *selector* in *namespace*."""
        ...

    async def strip_finalizers(self, kind: str, name: str, namespace: str | None) -> bool:
        ...

    async def count_resources(self, kind: str, name_pattern: str | None = None) -> int:
        """Count *kind* across all namespaces, optionally filtered by regex."""
        ...


@dataclass(frozen=True)
class ManifestRef:
    """What the deploy collaborator should render and apply."""
    release: str
    chart: str
    namespace: str | None = None
    version: str | None = None
    options: tuple[str, ...] = field(default_factory=tuple)


@runtime_checkable
class Deployer(Protocol):
    """Protocol for the chart-based render-and-apply collaborator."""

    async def apply(self, manifest: ManifestRef, opts: dict[str, Any] | None = None) -> tuple[bool, str]:
        """Render and apply *manifest*.  Returns ``(success, raw_output)``."""
        ...


@runtime_checkable
class SecretsLoader(Protocol):
    """Protocol for the secrets-loading collaborator."""

    async def load_secrets(self, pattern_name: str) -> bool:
        ...
