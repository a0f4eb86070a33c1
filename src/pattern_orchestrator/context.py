"""Run-scoped context handed to every stage, monitor and teardown step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.pattern_orchestrator.clock import CancelSignal, Clock, SystemClock
from src.pattern_orchestrator.config import OrchestratorConfig
from src.pattern_orchestrator.models import Component
from src.pattern_orchestrator.protocols import ClusterClient, Deployer, SecretsLoader
from src.pattern_orchestrator.registry import ComponentDirectory
from src.pattern_orchestrator.status import StatusStore

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything one install or uninstall run needs.

    Built once at run start by the CLI (or a test) and closed at run end.
    Collaborators that a given run does not use may be left as ``None``.
    """

    config: OrchestratorConfig
    components: ComponentDirectory[Component]
    cluster: ClusterClient
    deployer: Deployer | None = None
    secrets: SecretsLoader | None = None
    clock: Clock = field(default_factory=SystemClock)
    cancel: CancelSignal = field(default_factory=CancelSignal)
    store: StatusStore | None = None
    audit: logging.Logger = field(
        default_factory=lambda: logging.getLogger("pattern.audit.deployment")
    )
    closed: bool = False

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = StatusStore(self.clock)

    @property
    def pattern_name(self) -> str:
        return self.config.pattern.name

    def close(self) -> None:
        """Release the run: fire the cancel signal so stray tasks wind down."""
        if self.closed:
            return
        self.closed = True
        self.cancel.set("Run finished")
        logger.debug("Run context for %s closed", self.pattern_name)
