"""Graceful shutdown handler for install and uninstall runs.

Handles both Windows (``signal.signal``) and Unix
(``loop.add_signal_handler``) signal registration with a reentrancy guard.
A received signal fires the run's :class:`CancelSignal`, so every monitor,
the dashboard and any pending backoff wake up within one poll interval.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any

from src.pattern_orchestrator.clock import CancelSignal

logger = logging.getLogger(__name__)


class GracefulShutdown:
    """Manages graceful shutdown on SIGINT / SIGTERM.

    Usage::

        shutdown = GracefulShutdown(cancel)
        shutdown.install()
        ...
        shutdown.uninstall()
    """

    def __init__(self, cancel: CancelSignal) -> None:
        self._cancel = cancel
        self._should_stop = False
        self._handling = False  # reentrancy guard
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def should_stop(self) -> bool:
        """Whether a shutdown signal has been received."""
        return self._should_stop

    def install(self) -> None:
        """Register signal handlers for SIGINT and SIGTERM.

        On Windows, uses ``signal.signal`` directly.
        On Unix, uses ``loop.add_signal_handler`` if a running event loop
        is available, falling back to ``signal.signal``.
        """
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
        else:
            try:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self._async_handler)
                self._loop = loop
            except RuntimeError:
                # No running loop -- fall back to signal.signal
                signal.signal(signal.SIGINT, self._signal_handler)
                signal.signal(signal.SIGTERM, self._signal_handler)

    def uninstall(self) -> None:
        """Remove loop signal handlers registered by :meth:`install`."""
        if self._loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows / fallback)."""
        if self._handling:
            return  # reentrancy guard
        self._handling = True
        logger.warning("Received signal %s -- cancelling run", signum)
        self._trigger()
        self._handling = False

    def _async_handler(self) -> None:
        """Async-compatible signal handler (Unix)."""
        if self._handling:
            return  # reentrancy guard
        self._handling = True
        logger.warning("Received shutdown signal -- cancelling run")
        self._trigger()
        self._handling = False

    def _trigger(self) -> None:
        self._should_stop = True
        self._cancel.set("Interrupted by signal")
