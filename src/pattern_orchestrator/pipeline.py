"""Five-stage install pipeline.

Stages run strictly in sequence::

    infra deploy -> secrets load -> operators -> controller deploy -> applications

Single-action stages go through the deploy collaborator with a fixed
retry/backoff policy.  Fan-out stages start one monitor per component and
wait for all of them.  A failed stage aborts every later stage; nothing that
already completed is rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from src.pattern_orchestrator import monitor as monitors
from src.pattern_orchestrator.clock import CancelSignal
from src.pattern_orchestrator.constants import (
    ALL_STAGES,
    SECRETS_STATUS_ID,
    STAGE_APPLICATIONS,
    STAGE_CONTROLLER,
    STAGE_INFRA,
    STAGE_OPERATORS,
    STAGE_SECRETS,
    STAGE_TITLES,
)
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.exceptions import ExternalActionFailure
from src.pattern_orchestrator.models import (
    Category,
    Component,
    LifecycleState,
    RunSummary,
    StageResult,
)
from src.pattern_orchestrator.protocols import ManifestRef
from src.pattern_orchestrator.state_machine import STAGE_STATES, create_pipeline_machine

logger = logging.getLogger(__name__)

STAGE_CATEGORIES: dict[str, Category | None] = {
    STAGE_INFRA: Category.INFRASTRUCTURE,
    STAGE_SECRETS: None,
    STAGE_OPERATORS: Category.OPERATOR,
    STAGE_CONTROLLER: Category.CONTROLLER,
    STAGE_APPLICATIONS: Category.APPLICATION,
}


class DeployAborted(Exception):
    """Internal: the cancel signal fired during a deploy backoff."""


def _deploys_vault(component: Component) -> bool:
    hints = component.hints
    names = (component.id, str(hints.get("release") or ""), str(hints.get("chart") or ""))
    return any("vault" in name for name in names)


class PipelineOrchestrator:
    """Drives one install run through the stage state machine.

    Args:
        ctx: The run context.  ``ctx.deployer`` and ``ctx.secrets`` must be set.
        monitor_factory: Builds the monitor for a component.  Defaults to
            :func:`monitor.create_monitor`.
    """

    def __init__(
        self,
        ctx: RunContext,
        monitor_factory: Callable[..., monitors.BaseMonitor | None] | None = None,
    ) -> None:
        self.ctx = ctx
        self.monitor_factory = monitor_factory or monitors.create_monitor
        self.stages: list[StageResult] = []
        self._last_stage_passed = False
        self.machine = create_pipeline_machine(self)

    # ------------------------------------------------------------------
    # Guards used by the state machine
    # ------------------------------------------------------------------

    def is_configured(self, event: Any = None) -> bool:
        return (
            bool(self.ctx.pattern_name)
            and self.ctx.deployer is not None
            and self.ctx.secrets is not None
        )

    def stage_passed(self, event: Any = None) -> bool:
        return self._last_stage_passed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> RunSummary:
        clock = self.ctx.clock
        started = clock.monotonic()
        self._log("🚀 PATTERN DEPLOYMENT started", stage="pipeline", outcome="START")

        await self.start_infra()  # type: ignore[attr-defined]
        if self.state != "infra_deploying":  # type: ignore[attr-defined]
            await self.fail()  # type: ignore[attr-defined]
            result = StageResult(STAGE_INFRA, False, "Pipeline is not configured")
            self.stages.append(result)
            self._abort_after(None, result.detail)
        else:
            for number, stage in enumerate(ALL_STAGES, start=1):
                result = await self._run_stage(number, stage)
                self.stages.append(result)
                self._last_stage_passed = result.success
                if result.success:
                    await self.trigger(STAGE_STATES[stage][1])  # type: ignore[attr-defined]
                    continue
                await self.fail()  # type: ignore[attr-defined]
                self._abort_after(stage, f"Aborted: {STAGE_TITLES[stage].lower()} failed")
                break

        summary = summarize(self.ctx, self.stages)
        summary.duration_seconds = clock.monotonic() - started
        self._log_summary(summary)
        return summary

    async def _run_stage(self, number: int, stage: str) -> StageResult:
        title = STAGE_TITLES[stage]
        clock = self.ctx.clock
        started = clock.monotonic()
        self._log(f"STAGE {number}: {title}", stage=stage, outcome="START")

        if self.ctx.cancel.is_set():
            result = StageResult(stage, False, self.ctx.cancel.reason or "Run cancelled")
        else:
            handler = {
                STAGE_INFRA: self._deploy_stage,
                STAGE_SECRETS: self._secrets_stage,
                STAGE_OPERATORS: self._fan_out_stage,
                STAGE_CONTROLLER: self._deploy_stage,
                STAGE_APPLICATIONS: self._applications_stage,
            }[stage]
            try:
                result = await handler(stage)
            except Exception as exc:
                logger.exception("Stage %s crashed", stage)
                detail = f"Stage error: {exc}"
                failed = self.ctx.store.mark_failed(self._stage_ids(stage), detail)
                result = StageResult(stage, False, detail, failed)

        result.duration_seconds = clock.monotonic() - started
        seconds = int(result.duration_seconds)
        if result.success:
            message = f"Stage {number} completed in {seconds} seconds"
        else:
            message = f"Stage {number} FAILED after {seconds} seconds"
        if result.detail:
            message = f"{message} - {result.detail}"
        self._log(
            message,
            stage=stage,
            outcome="SUCCESS" if result.success else "FAILED",
            duration=round(result.duration_seconds, 3),
            level=logging.INFO if result.success else logging.ERROR,
        )
        return result

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    def _components_for(self, stage: str) -> list[Component]:
        category = STAGE_CATEGORIES[stage]
        if category is None:
            return []
        return self.ctx.components.by_category(category)

    def _stage_ids(self, stage: str) -> list[str]:
        """Status ids owned by *stage*, including the secrets pseudo-component."""
        if stage == STAGE_SECRETS:
            return [SECRETS_STATUS_ID]
        return [c.id for c in self._components_for(stage)]

    async def _deploy_stage(self, stage: str) -> StageResult:
        components = self._components_for(stage)
        if not components:
            self._step(stage, "Component discovery", "INFO", "nothing to deploy")
            return StageResult(stage, True, "nothing to deploy")

        for index, component in enumerate(components):
            if not await self.deploy_component(stage, component):
                remaining = [c.id for c in components[index + 1:]]
                self.ctx.store.mark_aborted(remaining, f"Aborted: {component.id} deployment failed")
                return StageResult(stage, False, f"{component.id} deployment failed", [component.id])
        if stage == STAGE_INFRA:
            await self.wait_for_vault(components)
        return StageResult(stage, True, f"{len(components)} deployed")

    async def wait_for_vault(self, components: list[Component]) -> bool:
        """Poll until Vault's pod runs and its API answers.

        Runs only when an infrastructure component deploys Vault.  Running out
        of time logs a warning and returns ``False``; the stage still passes.
        """
        vault = next((c for c in components if _deploys_vault(c)), None)
        if vault is None or not vault.namespace.known:
            return True
        cfg = self.ctx.config.deploy
        clock = self.ctx.clock
        self._step(STAGE_INFRA, "Waiting for Vault to be ready", "INFO", f"Timeout: {cfg.vault_ready_timeout}s")
        deadline = clock.monotonic() + cfg.vault_ready_timeout
        while True:
            try:
                ready = await self.ctx.cluster.vault_ready(vault.namespace.value)
            except Exception as exc:
                logger.debug("Vault readiness query failed: %s", exc)
                ready = False
            if ready:
                self._step(STAGE_INFRA, "Vault readiness check", "SUCCESS", "Vault is ready and API responding")
                return True
            remaining = deadline - clock.monotonic()
            if remaining <= 0:
                break
            if await clock.sleep(min(cfg.vault_ready_interval, remaining), self.ctx.cancel):
                return False
        self._step(
            STAGE_INFRA,
            "Vault readiness check",
            "TIMEOUT",
            f"not ready after {cfg.vault_ready_timeout} seconds, proceeding anyway",
        )
        return False

    async def _secrets_stage(self, stage: str) -> StageResult:
        store = self.ctx.store
        store.update_status(SECRETS_STATUS_ID, LifecycleState.INSTALLING, "Loading secrets")
        self._step(stage, "Starting secrets processing", "INFO")
        try:
            loaded = await self.ctx.secrets.load_secrets(self.ctx.pattern_name)
        except Exception as exc:
            logger.exception("Secrets loader raised")
            loaded = False
            detail = f"Secrets loading error: {exc}"
        else:
            detail = "Secrets loaded into Vault" if loaded else "Secrets loading failed"
        state = LifecycleState.SUCCESS if loaded else LifecycleState.FAILED
        store.update_status(SECRETS_STATUS_ID, state, detail)
        self._step(stage, "Secrets loading", "SUCCESS" if loaded else "FAILED", detail)
        return StageResult(stage, loaded, detail, [] if loaded else [SECRETS_STATUS_ID])

    async def _fan_out_stage(
        self, stage: str, cancel: CancelSignal | None = None
    ) -> StageResult:
        components = self._components_for(stage)
        if not components:
            self._step(stage, "Component discovery", "INFO", "no components")
            return StageResult(stage, True, "no components")

        self._step(stage, "Starting parallel monitoring", "INFO", f"{len(components)} components")
        running: list[monitors.BaseMonitor] = []
        for component in components:
            mon = self.monitor_factory(component, self.ctx, cancel)
            if mon is None:
                self.ctx.store.update_status(
                    component.id, LifecycleState.SUCCESS, "No monitoring required"
                )
                continue
            running.append(mon)

        states = await monitors.run_barrier(running)
        for component in components:
            record = self.ctx.store.get_status(component.id)
            outcome = "SUCCESS" if record.state is LifecycleState.SUCCESS else "FAILED"
            self._step(stage, component.display_name, outcome, record.detail, component=component.id)

        failed = [
            c.id
            for c in components
            if states.get(c.id, self.ctx.store.get_status(c.id).state) is not LifecycleState.SUCCESS
        ]
        if failed:
            return StageResult(
                stage,
                False,
                f"{len(failed)} of {len(components)} did not reach Success",
                failed,
            )
        return StageResult(stage, True, f"{len(components)} ready")

    async def _applications_stage(self, stage: str) -> StageResult:
        ceiling = self.ctx.config.deploy.application_ceiling
        stage_cancel = self.ctx.cancel.child()

        async def enforce_ceiling() -> None:
            woke = await self.ctx.clock.sleep(ceiling, stage_cancel)
            if not woke:
                stage_cancel.set(f"Application stage ceiling of {ceiling} seconds reached")

        self._step(stage, "Monitoring application sync status", "INFO", f"Timeout: {ceiling}s")
        timer = asyncio.create_task(enforce_ceiling(), name="applications-ceiling")
        try:
            return await self._fan_out_stage(stage, stage_cancel)
        finally:
            if not stage_cancel.is_set():
                stage_cancel.set("Application stage finished")
            await timer

    # ------------------------------------------------------------------
    # Deploy with retry
    # ------------------------------------------------------------------

    def manifest_for(self, component: Component) -> ManifestRef | None:
        """Chart reference for a deployable component, or ``None`` if undeclared."""
        hints = component.hints
        deploy_cfg = self.ctx.config.deploy
        if component.category is Category.CONTROLLER:
            return ManifestRef(
                release=self.ctx.pattern_name,
                chart=str(hints.get("chart") or deploy_cfg.pattern_chart),
                options=("--include-crds", *deploy_cfg.helm_options),
            )
        chart = hints.get("chart")
        if not chart:
            return None
        version = hints.get("chart_version") or component.version.value
        namespace = component.namespace.value
        return ManifestRef(
            release=str(hints.get("release") or component.id),
            chart=str(chart),
            namespace=namespace,
            version=str(version) if version else None,
            options=("--create-namespace",) if namespace else (),
        )

    async def deploy_component(self, stage: str, component: Component) -> bool:
        store = self.ctx.store
        cfg = self.ctx.config.deploy
        name = component.display_name
        store.update_status(component.id, LifecycleState.PENDING, "Queued for deployment")

        manifest = self.manifest_for(component)
        if manifest is None:
            detail = "No chart declared for deployment"
            store.update_status(component.id, LifecycleState.FAILED, detail)
            self._step(stage, f"{name} deployment", "FAILED", detail, component=component.id)
            return False

        store.update_status(component.id, LifecycleState.WAITING, f"Rendering {manifest.chart}")
        output = ""
        try:
            for attempt in range(1, cfg.retries + 1):
                if self.ctx.cancel.is_set():
                    raise DeployAborted()
                store.update_status(
                    component.id,
                    LifecycleState.INSTALLING,
                    f"Deploying (attempt {attempt}/{cfg.retries})",
                )
                try:
                    ok, output = await self.ctx.deployer.apply(manifest, {"attempt": attempt})
                except Exception as exc:
                    ok, output = False, str(exc)
                if ok:
                    store.update_status(component.id, LifecycleState.SUCCESS, f"{name} deployed successfully")
                    self._step(stage, f"{name} deployment attempt {attempt}", "SUCCESS", component=component.id)
                    return True
                self._step(
                    stage,
                    f"{name} deployment attempt {attempt}",
                    "RETRY" if attempt < cfg.retries else "FAILED",
                    output.strip(),
                    component=component.id,
                )
                if attempt < cfg.retries and await self.ctx.clock.sleep(cfg.wait_seconds, self.ctx.cancel):
                    raise DeployAborted()
        except DeployAborted:
            store.mark_aborted([component.id], self.ctx.cancel.reason or "Run cancelled")
            return False

        failure = ExternalActionFailure(f"{name} deployment", output, cfg.retries)
        store.update_status(component.id, LifecycleState.FAILED, str(failure))
        return False

    # ------------------------------------------------------------------
    # Abort and logging helpers
    # ------------------------------------------------------------------

    def _abort_after(self, failed_stage: str | None, detail: str) -> None:
        later = ALL_STAGES if failed_stage is None else ALL_STAGES[ALL_STAGES.index(failed_stage) + 1:]
        ids: list[str] = []
        for stage in later:
            ids.extend(self._stage_ids(stage))
        aborted = self.ctx.store.mark_aborted(ids, detail)
        if aborted:
            self._log(
                f"Aborted later stages: {', '.join(later)}",
                stage="pipeline",
                outcome="ABORTED",
                level=logging.WARNING,
            )

    def _step(
        self,
        stage: str,
        step: str,
        outcome: str,
        details: str = "",
        component: str | None = None,
    ) -> None:
        stamp = self._stamp()
        if outcome == "INFO":
            message = f"{stamp} - {step}"
        else:
            message = f"{stamp} - {step}: {outcome}"
        if details:
            message = f"{message} - {details}"
        level = logging.WARNING if outcome in ("FAILED", "RETRY", "TIMEOUT") else logging.INFO
        self._log(message, stage=stage, step=step, outcome=outcome, component=component, level=level)

    def _log(self, message: str, level: int = logging.INFO, **fields: Any) -> None:
        extra = {k: v for k, v in fields.items() if v is not None}
        self.ctx.audit.log(level, message, extra=extra)
        logger.log(level, message)

    def _stamp(self) -> str:
        return datetime.fromtimestamp(self.ctx.clock.now()).strftime("%H:%M:%S")

    def _log_summary(self, summary: RunSummary) -> None:
        minutes, seconds = divmod(int(summary.duration_seconds), 60)
        if summary.success:
            self._log(
                f"🎉 DEPLOYMENT SUMMARY: all {len(ALL_STAGES)} stages successful in {minutes}m {seconds}s",
                stage="pipeline",
                outcome="SUCCESS",
            )
            return
        failed_stage = next((s.name for s in self.stages if not s.success), "unknown")
        self._log(
            f"❌ Deployment FAILED after {minutes}m {seconds}s; failure occurred in: {failed_stage}",
            stage="pipeline",
            outcome="FAILED",
            level=logging.ERROR,
        )


def summarize(ctx: RunContext, stages: list[StageResult]) -> RunSummary:
    """Reduce the status store into a pass/fail report.

    Every component counts, plus the secrets step.  Anything not in Success
    is reported as failed with its last detail.
    """
    summary = RunSummary(stages=list(stages))
    ids = [*ctx.components.ids(), SECRETS_STATUS_ID]
    for cid, record in ctx.store.snapshot(ids).items():
        if record.state is LifecycleState.SUCCESS:
            summary.succeeded.append(cid)
        else:
            summary.failed[cid] = record.detail or record.state.value
    return summary
