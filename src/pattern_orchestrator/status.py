"""Thread-safe per-component status store."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from src.pattern_orchestrator.clock import Clock, SystemClock
from src.pattern_orchestrator.models import LifecycleState, StatusRecord

logger = logging.getLogger(__name__)


class StatusStore:
    """Maps component id to its current :class:`StatusRecord`.

    Every write goes through one lock, so monitors running on the event loop
    and collaborator calls running in worker threads can update it freely.
    ``since`` moves only when the state itself changes.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._records: dict[str, StatusRecord] = {}
        self._history: dict[str, list[LifecycleState]] = {}
        self.started_at = self._clock.now()

    def update_status(
        self, component_id: str, state: LifecycleState, detail: str = ""
    ) -> StatusRecord:
        with self._lock:
            current = self._records.get(component_id)
            if current is not None and current.state == state:
                record = StatusRecord(component_id, state, detail, current.since)
            else:
                record = StatusRecord(component_id, state, detail, self._clock.now())
                self._history.setdefault(component_id, []).append(state)
            self._records[component_id] = record
        logger.debug("%s -> %s (%s)", component_id, state.value, detail)
        return record

    def get_status(self, component_id: str) -> StatusRecord:
        """Return the record for *component_id*, or a default Pending record."""
        with self._lock:
            record = self._records.get(component_id)
        if record is None:
            return StatusRecord(component_id, LifecycleState.PENDING, "", self.started_at)
        return record

    def snapshot(self, component_ids: Iterable[str] | None = None) -> dict[str, StatusRecord]:
        """Return a consistent copy of the store.

        When *component_ids* is given, every listed id appears in the result,
        defaulting to Pending.
        """
        with self._lock:
            records = dict(self._records)
        if component_ids is None:
            return records
        return {
            cid: records.get(
                cid, StatusRecord(cid, LifecycleState.PENDING, "", self.started_at)
            )
            for cid in component_ids
        }

    def mark_aborted(self, component_ids: Iterable[str], detail: str) -> list[str]:
        """Flip every still non-terminal record among *component_ids* to Aborted."""
        aborted = self._close_out(component_ids, LifecycleState.ABORTED, detail)
        if aborted:
            logger.info("Aborted %d component(s): %s", len(aborted), detail)
        return aborted

    def mark_failed(self, component_ids: Iterable[str], detail: str) -> list[str]:
        """Flip every still non-terminal record among *component_ids* to Failed."""
        failed = self._close_out(component_ids, LifecycleState.FAILED, detail)
        if failed:
            logger.info("Failed %d component(s): %s", len(failed), detail)
        return failed

    def _close_out(
        self, component_ids: Iterable[str], state: LifecycleState, detail: str
    ) -> list[str]:
        changed: list[str] = []
        now = self._clock.now()
        with self._lock:
            for cid in component_ids:
                current = self._records.get(cid)
                if current is not None and current.state.is_terminal:
                    continue
                self._records[cid] = StatusRecord(cid, state, detail, now)
                self._history.setdefault(cid, []).append(state)
                changed.append(cid)
        return changed

    def history(self, component_id: str) -> list[LifecycleState]:
        """Ordered list of distinct states *component_id* has entered."""
        with self._lock:
            return list(self._history.get(component_id, []))

    def all_terminal(self, component_ids: Iterable[str]) -> bool:
        snap = self.snapshot(component_ids)
        return all(record.state.is_terminal for record in snap.values())
