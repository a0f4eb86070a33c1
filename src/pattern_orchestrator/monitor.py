"""Per-component monitors with a two-phase (appear, then complete) wait protocol.

Each monitor runs as its own asyncio task and writes every state change to
the run's :class:`StatusStore`.  Deadlines are per phase and measured on the
run clock; the run's :class:`CancelSignal` is checked at every poll boundary.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from src.pattern_orchestrator.clock import CancelSignal
from src.pattern_orchestrator.constants import (
    HEALTH_STATUS_HEALTHY,
    SUBSCRIPTION_READY_STATE,
    SYNC_STATUS_OUT_OF_SYNC,
    SYNC_STATUS_SYNCED,
)
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.exceptions import MonitorTimeout
from src.pattern_orchestrator.models import Component, LifecycleState, MonitorType

logger = logging.getLogger(__name__)


class MonitorAborted(Exception):
    """Internal: the cancel signal fired while a monitor was waiting."""


class BaseMonitor:
    """Common polling loop and terminal-state handling."""

    kind = "component"

    def __init__(
        self,
        component: Component,
        ctx: RunContext,
        cancel: CancelSignal | None = None,
    ) -> None:
        self.component = component
        self.ctx = ctx
        self.cancel = cancel or ctx.cancel
        self.timings = ctx.config.monitoring
        self.polls = 0

    @property
    def component_id(self) -> str:
        return self.component.id

    def _set(self, state: LifecycleState, detail: str) -> None:
        self.ctx.store.update_status(self.component_id, state, detail)

    async def run(self) -> LifecycleState:
        """Drive the component to a terminal state.  Never raises."""
        try:
            state = await self._watch()
        except MonitorTimeout as exc:
            self._set(LifecycleState.FAILED, self._timeout_detail(exc))
            state = LifecycleState.FAILED
        except MonitorAborted:
            state = self._abort()
        except asyncio.CancelledError:
            self._abort()
            raise
        except Exception as exc:
            logger.exception("%s monitor for %s crashed", self.kind, self.component_id)
            self._set(LifecycleState.FAILED, f"Monitor error: {exc}")
            state = LifecycleState.FAILED
        logger.info("%s finished in state %s", self.component_id, state.value)
        return state

    def _abort(self) -> LifecycleState:
        reason = self.cancel.reason or "Run cancelled"
        self.ctx.store.mark_aborted([self.component_id], reason)
        return self.ctx.store.get_status(self.component_id).state

    async def _watch(self) -> LifecycleState:
        raise NotImplementedError

    def _timeout_detail(self, exc: MonitorTimeout) -> str:
        return str(exc)

    async def _poll_until(
        self,
        check: Callable[[], Awaitable[bool]],
        timeout: float,
        interval: float,
        subject: str,
        phase: str,
    ) -> None:
        """Call *check* every *interval* seconds until it returns ``True``.

        Raises:
            MonitorTimeout: if *timeout* elapses first.
            MonitorAborted: if the cancel signal fires.
        """
        clock = self.ctx.clock
        deadline = clock.monotonic() + timeout
        while True:
            if self.cancel.is_set():
                raise MonitorAborted()
            self.polls += 1
            try:
                if await check():
                    return
            except Exception as exc:
                # A failing query counts as "not yet"; the deadline still applies.
                logger.debug("%s poll failed: %s", self.component_id, exc)
            remaining = deadline - clock.monotonic()
            if remaining <= 0:
                raise MonitorTimeout(subject, phase, timeout)
            if await clock.sleep(min(interval, remaining), self.cancel):
                raise MonitorAborted()


class SubscriptionMonitor(BaseMonitor):
    """Watches an operator subscription until it reaches ``AtLatestKnown``."""

    kind = "subscription"

    async def _watch(self) -> LifecycleState:
        name = self.component.subscription_name
        namespace = self.component.namespace
        if not name.known:
            self._set(LifecycleState.FAILED, f"Cannot monitor: subscription name {name}")
            return LifecycleState.FAILED
        if not namespace.known:
            self._set(LifecycleState.FAILED, f"Cannot monitor: namespace {namespace}")
            return LifecycleState.FAILED

        cluster = self.ctx.cluster
        self._set(LifecycleState.WAITING, "Waiting for subscription creation")
        await self._poll_until(
            lambda: cluster.subscription_exists(name.value, namespace.value),
            self.timings.subscription_appear,
            self.timings.subscription_appear_interval,
            "Subscription",
            "not created",
        )
        self._set(LifecycleState.INSTALLING, "Subscription found, installing operator")

        async def installed() -> bool:
            state = await cluster.subscription_install_state(name.value, namespace.value)
            return state == SUBSCRIPTION_READY_STATE

        await self._poll_until(
            installed,
            self.timings.subscription_install,
            self.timings.subscription_install_interval,
            "Installation",
            "timeout",
        )
        self._set(LifecycleState.SUCCESS, "Operator installed successfully")
        return LifecycleState.SUCCESS


class ApplicationMonitor(BaseMonitor):
    """Watches a sync unit until it is Synced and Healthy."""

    kind = "application"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.located_in: str | None = None
        self.last_status: tuple[str, str] = ("Unknown", "Unknown")

    async def _watch(self) -> LifecycleState:
        name = self.component.sync_unit_name
        if not name.known:
            self._set(LifecycleState.FAILED, f"Cannot monitor: sync unit name {name}")
            return LifecycleState.FAILED

        cluster = self.ctx.cluster
        self._set(LifecycleState.WAITING, "Waiting for ArgoCD application")

        async def located() -> bool:
            self.located_in = await cluster.sync_unit_locate(name.value)
            return self.located_in is not None

        await self._poll_until(
            located,
            self.timings.argocd_appear,
            self.timings.argocd_appear_interval,
            "Application",
            "not found",
        )
        self._set(
            LifecycleState.SYNCING,
            f"Application found in {self.located_in}, monitoring sync",
        )

        async def healthy() -> bool:
            sync, health = await cluster.sync_unit_health(name.value, self.located_in)
            self.last_status = (sync, health)
            if sync == SYNC_STATUS_SYNCED and health == HEALTH_STATUS_HEALTHY:
                return True
            state = (
                LifecycleState.SYNCING
                if sync == SYNC_STATUS_OUT_OF_SYNC
                else LifecycleState.PROGRESSING
            )
            self._set(state, f"Sync: {sync}, Health: {health}")
            return False

        await self._poll_until(
            healthy,
            self.timings.argocd_sync,
            self.timings.argocd_sync_interval,
            "Sync",
            "timeout",
        )
        self._set(LifecycleState.SUCCESS, "Synced and Healthy")
        return LifecycleState.SUCCESS

    def _timeout_detail(self, exc: MonitorTimeout) -> str:
        if exc.subject == "Sync":
            sync, health = self.last_status
            return f"Timeout - Sync: {sync}, Health: {health}"
        return str(exc)


def create_monitor(
    component: Component, ctx: RunContext, cancel: CancelSignal | None = None
) -> BaseMonitor | None:
    """Build the monitor matching *component*'s monitor type, if any."""
    if component.monitor_type is MonitorType.SUBSCRIPTION:
        return SubscriptionMonitor(component, ctx, cancel)
    if component.monitor_type is MonitorType.APPLICATION_SYNC:
        return ApplicationMonitor(component, ctx, cancel)
    return None


async def run_barrier(monitors: Sequence[BaseMonitor]) -> dict[str, LifecycleState]:
    """Run *monitors* concurrently and wait for every one to finish."""
    if not monitors:
        return {}
    tasks = [
        asyncio.create_task(m.run(), name=f"monitor:{m.component_id}") for m in monitors
    ]
    try:
        results = await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return {m.component_id: state for m, state in zip(monitors, results)}
