"""Custom exceptions for the pattern orchestrator."""

from __future__ import annotations


class PatternError(Exception):
    """Base exception for all orchestrator errors."""

    pass


class ConfigError(PatternError):
    """Raised when the configuration source is missing or malformed.

    Always fatal, and always raised before any mutating cluster call.
    """

    pass


class DiscoveryGap(PatternError):
    """A component field could not be resolved.

    Probes raise this internally; the discovery engine converts it into an
    ``UNKNOWN (reason)`` resolution and never lets it escape.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class MonitorTimeout(PatternError):
    """Raised when a monitor phase deadline elapses."""

    def __init__(self, subject: str, phase: str, timeout: float) -> None:
        self.subject = subject
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{subject} {phase} after {int(timeout)} seconds")


class ExternalActionFailure(PatternError):
    """Raised when a deploy or delete call reports failure."""

    def __init__(self, action: str, output: str = "", attempts: int = 1) -> None:
        self.action = action
        self.output = output
        self.attempts = attempts
        message = f"{action} failed after {attempts} attempt(s)"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class StuckResourceError(PatternError):
    """Raised when a resource survives finalizer stripping and forced deletion."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f" in {namespace}" if namespace else ""
        super().__init__(f"{kind} '{name}'{where} survived forced deletion")
