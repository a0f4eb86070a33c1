"""Per-run numbered audit logs with retention.

Every run writes ``pattern-<category>-NNN.log`` files into the log directory,
all sharing one session number.  Discovery logs are plain text; deployment
and uninstall logs are JSON lines produced by :class:`JSONFormatter`.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from src.pattern_orchestrator.constants import (
    LOG_CATEGORIES,
    LOG_DISCOVERY,
    LOG_SESSION_MAX,
)
from src.shared.logging import JSONFormatter

logger = logging.getLogger(__name__)

_LOG_NAME_RE = re.compile(r"^pattern-(?P<category>[a-z]+)-(?P<number>\d{3})\.log$")


def _existing_logs(directory: Path) -> list[tuple[Path, str, int]]:
    found: list[tuple[Path, str, int]] = []
    if not directory.is_dir():
        return found
    for path in directory.iterdir():
        match = _LOG_NAME_RE.match(path.name)
        if match and path.is_file():
            found.append((path, match.group("category"), int(match.group("number"))))
    return found


def _recency_key(entry: tuple[Path, str, int]) -> tuple[float, int]:
    path, _, number = entry
    return (path.stat().st_mtime, number)


def next_session_number(directory: Path | str) -> int:
    """Return the session number for a new run.

    The number follows the most recently written log of any category, so
    numbering keeps advancing after it wraps from 999 back to 1.
    """
    logs = _existing_logs(Path(directory))
    if not logs:
        return 1
    _, _, latest = max(logs, key=_recency_key)
    following = latest + 1
    return 1 if following > LOG_SESSION_MAX else following


def prune_logs(directory: Path | str, retention: int) -> list[Path]:
    """Delete all but the *retention* most recent logs of each category."""
    removed: list[Path] = []
    by_category: dict[str, list[tuple[Path, str, int]]] = {}
    for entry in _existing_logs(Path(directory)):
        by_category.setdefault(entry[1], []).append(entry)
    for entries in by_category.values():
        entries.sort(key=_recency_key, reverse=True)
        for path, _, _ in entries[max(retention, 0):]:
            try:
                path.unlink()
                removed.append(path)
            except OSError as exc:
                logger.warning("Could not remove old log %s: %s", path, exc)
    return removed


class RunLogs:
    """The set of audit log files belonging to one run.

    Use as a context manager; handlers are closed and detached on exit.
    """

    def __init__(
        self,
        directory: Path | str,
        retention: int = 10,
        categories: tuple[str, ...] = LOG_CATEGORIES,
    ) -> None:
        self.directory = Path(directory)
        self.retention = retention
        self.categories = categories
        self.session = 0
        self._handlers: dict[str, logging.Handler] = {}

    def __enter__(self) -> RunLogs:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def path(self, category: str) -> Path:
        return self.directory / f"pattern-{category}-{self.session:03d}.log"

    def open(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.session = next_session_number(self.directory)
        for category in self.categories:
            path = self.path(category)
            handler = logging.FileHandler(path, mode="w", encoding="utf-8")
            if category == LOG_DISCOVERY:
                handler.setFormatter(logging.Formatter("%(message)s"))
            else:
                handler.setFormatter(JSONFormatter(service_name=f"pattern-{category}"))
            audit = self.logger(category)
            audit.setLevel(logging.INFO)
            audit.propagate = False
            audit.addHandler(handler)
            self._handlers[category] = handler
        logger.info("Audit logs for session %03d in %s", self.session, self.directory)
        # Prune after the new files exist so they count toward retention.
        prune_logs(self.directory, self.retention)

    def close(self) -> None:
        for category, handler in self._handlers.items():
            self.logger(category).removeHandler(handler)
            handler.close()
        self._handlers.clear()

    @staticmethod
    def logger(category: str) -> logging.Logger:
        return logging.getLogger(f"pattern.audit.{category}")
