"""Clock and cancellation primitives shared by every suspension point.

All waiting in the orchestrator goes through :meth:`SystemClock.sleep`, which
returns early as soon as the run's :class:`CancelSignal` fires.  Tests swap in
a fake clock whose ``sleep`` advances virtual time instantly.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class CancelSignal:
    """Broadcast cancellation flag.

    A child signal fires when its parent fires, but can also be fired on its
    own (e.g. a stage ceiling) without affecting the parent.
    """

    def __init__(self, parent: CancelSignal | None = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelSignal] = []
        self.reason = ""
        if parent is not None:
            parent._children.append(self)
            if parent.is_set():
                self.set(parent.reason)

    def child(self) -> CancelSignal:
        return CancelSignal(parent=self)

    def set(self, reason: str = "Run cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.set(reason)

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class Clock(Protocol):
    def now(self) -> float:
        """Wall-clock seconds, used for state-entry timestamps."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, used for deadlines."""
        ...

    async def sleep(self, seconds: float, cancel: CancelSignal | None = None) -> bool:
        """Sleep up to *seconds*.  Returns ``True`` if woken by *cancel*."""
        ...


class SystemClock:
    """Real clock backed by :mod:`time` and the running event loop."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, cancel: CancelSignal | None = None) -> bool:
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``MM:SS``."""
    seconds = max(int(seconds), 0)
    return f"{seconds // 60:02d}:{seconds % 60:02d}"
