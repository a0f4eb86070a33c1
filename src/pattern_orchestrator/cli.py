"""Command-line interface for the pattern orchestrator.

Two commands share one front half (config, registry, discovery, plan):

* ``install``   -- run the five-stage install pipeline with a live dashboard.
* ``uninstall`` -- safety-gated, reverse-order teardown.

``--dry-run`` stops after the plan is printed; no cluster client is even
constructed, so nothing can be mutated.

Exit codes: ``0`` success, ``1`` failure or configuration error, ``2``
uninstall finished but left residue or stuck resources.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from src.pattern_orchestrator import __version__
from src.pattern_orchestrator.audit import RunLogs
from src.pattern_orchestrator.cluster import OcClusterClient
from src.pattern_orchestrator.config import EnvSettings, OrchestratorConfig, load_config
from src.pattern_orchestrator.constants import (
    DEFAULT_CONFIG_FILE,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_RESIDUE,
    LOG_DEPLOYMENT,
    LOG_DISCOVERY,
    LOG_UNINSTALL,
)
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.deploy import HelmDeployer, ScriptSecretsLoader
from src.pattern_orchestrator.discovery import DiscoveryEngine
from src.pattern_orchestrator.display import (
    Dashboard,
    print_discovery_summary,
    print_error_panel,
    print_final_summary,
    print_footprint,
    print_info,
    print_install_plan,
    print_preflight,
    print_success,
    print_teardown_report,
    print_uninstall_plan,
    print_warning,
)
from src.pattern_orchestrator.exceptions import ConfigError
from src.pattern_orchestrator.models import Component, RunSummary
from src.pattern_orchestrator.pipeline import PipelineOrchestrator
from src.pattern_orchestrator.registry import (
    ComponentDirectory,
    ComponentRegistry,
    YamlConfigSource,
)
from src.pattern_orchestrator.shutdown import GracefulShutdown
from src.pattern_orchestrator.teardown import TeardownOrchestrator
from src.shared.logging import new_run_id, setup_logging

app = typer.Typer(
    name="pattern-orchestrator",
    help="Install and uninstall validated patterns on an OpenShift cluster.",
    no_args_is_help=True,
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Helpers (module level so tests can patch them)
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pattern-orchestrator {__version__}")
        raise typer.Exit()


def _load(config_path: Path, pattern: Optional[str], values_dir: Optional[Path]) -> tuple[
    OrchestratorConfig, EnvSettings
]:
    env = EnvSettings()
    setup_logging("src", env.log_level)
    new_run_id()
    cfg = load_config(config_path, env)
    if pattern:
        cfg.pattern.name = pattern
    if values_dir is not None:
        cfg.values_dir = str(values_dir)
    return cfg, env


def _discover(
    cfg: OrchestratorConfig, config_path: Path, logs: RunLogs
) -> ComponentDirectory[Component]:
    declarations = ComponentRegistry(YamlConfigSource(config_path)).load()
    engine = DiscoveryEngine(cfg.values_dir, RunLogs.logger(LOG_DISCOVERY))
    engine.write_header(cfg.pattern.display_name)
    components = engine.resolve_all(declarations)
    engine.write_summary()
    successes, failures, _ = engine.summary()
    print_discovery_summary(successes, failures, str(logs.path(LOG_DISCOVERY)))
    return components


def _build_cluster(env: EnvSettings) -> OcClusterClient:
    return OcClusterClient(binary=env.oc_binary)


def _build_deployer(env: EnvSettings, cfg: OrchestratorConfig) -> HelmDeployer:
    return HelmDeployer(helm_binary=env.helm_binary, oc_binary=env.oc_binary, cwd=cfg.values_dir)


def _build_secrets(cfg: OrchestratorConfig) -> ScriptSecretsLoader:
    return ScriptSecretsLoader(cwd=cfg.values_dir)


def _close_cluster(cluster: object) -> None:
    close = getattr(cluster, "close", None)
    if callable(close):
        close()


# ---------------------------------------------------------------------------
# Async drivers
# ---------------------------------------------------------------------------


async def run_install(ctx: RunContext, show_dashboard: bool = True) -> RunSummary:
    """Run the pipeline with the dashboard rendering alongside it."""
    shutdown = GracefulShutdown(ctx.cancel)
    shutdown.install()
    dashboard_cancel = ctx.cancel.child()
    dashboard_task: asyncio.Task | None = None
    if show_dashboard:
        dashboard_task = asyncio.create_task(
            Dashboard(ctx, dashboard_cancel).run(), name="dashboard"
        )
    try:
        return await PipelineOrchestrator(ctx).run()
    finally:
        dashboard_cancel.set("Install finished")
        if dashboard_task is not None:
            await dashboard_task
        shutdown.uninstall()


async def run_uninstall(ctx: RunContext, assume_yes: bool = False) -> int:
    """Footprint, plan, preflight, confirm, sweep.  Returns the exit code."""
    teardown = TeardownOrchestrator(ctx)
    counts = await teardown.footprint()
    print_footprint(counts)
    if sum(counts.values()) == 0:
        print_success("No pattern resources found - cluster is already clean!")
        return EXIT_OK

    print_uninstall_plan(ctx.config, ctx.components, await teardown.installed_components())
    plan = await teardown.namespace_plan()
    teardown.log_preflight(plan)
    whoami = getattr(ctx.cluster, "whoami", None)
    print_preflight(plan, await whoami() if whoami else "UNKNOWN")

    if not assume_yes and not typer.confirm(
        "Do you want to proceed with COMPLETE uninstall?", default=False
    ):
        print_warning("Operation cancelled by user.")
        return EXIT_OK

    shutdown = GracefulShutdown(ctx.cancel)
    shutdown.install()
    try:
        report = await teardown.run(plan)
    finally:
        shutdown.uninstall()
    print_teardown_report(report)
    if report.residue_total or report.stuck:
        return EXIT_RESIDUE
    return EXIT_OK


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Pattern orchestrator."""


@app.command()
def install(
    pattern: Optional[str] = typer.Argument(None, help="Pattern name (overrides the config file)."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_FILE), "--config", "-c", help="Pattern config file."),
    values_dir: Optional[Path] = typer.Option(None, "--values-dir", help="Directory holding values-*.yaml."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan and exit."),
    no_dashboard: bool = typer.Option(False, "--no-dashboard", help="Disable the live dashboard."),
) -> None:
    """Install the pattern: infra, secrets, operators, controller, applications."""
    try:
        cfg, env = _load(config, pattern, values_dir)
        with RunLogs(cfg.logs.directory, cfg.logs.retention, (LOG_DISCOVERY, LOG_DEPLOYMENT)) as logs:
            components = _discover(cfg, config, logs)
            print_install_plan(cfg, components)
            if dry_run:
                print_info("DRY RUN: no changes were made to the cluster.")
                raise typer.Exit(code=EXIT_OK)

            cluster = _build_cluster(env)
            ctx = RunContext(
                config=cfg,
                components=components,
                cluster=cluster,
                deployer=_build_deployer(env, cfg),
                secrets=_build_secrets(cfg),
                audit=RunLogs.logger(LOG_DEPLOYMENT),
            )
            try:
                summary = asyncio.run(
                    run_install(ctx, show_dashboard=cfg.dashboard.enabled and not no_dashboard)
                )
            finally:
                ctx.close()
                _close_cluster(cluster)
            print_final_summary(summary, components)
            print_info(f"Deployment log: {logs.path(LOG_DEPLOYMENT)}")
    except ConfigError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_FAILURE)

    raise typer.Exit(code=EXIT_OK if summary.success else EXIT_FAILURE)


@app.command()
def uninstall(
    pattern: Optional[str] = typer.Argument(None, help="Pattern name (overrides the config file)."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_FILE), "--config", "-c", help="Pattern config file."),
    values_dir: Optional[Path] = typer.Option(None, "--values-dir", help="Directory holding values-*.yaml."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan and exit."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Remove the pattern in reverse order, preserving system namespaces."""
    try:
        cfg, env = _load(config, pattern, values_dir)
        with RunLogs(cfg.logs.directory, cfg.logs.retention, (LOG_DISCOVERY, LOG_UNINSTALL)) as logs:
            components = _discover(cfg, config, logs)
            if dry_run:
                print_uninstall_plan(cfg, components)
                print_info("DRY RUN: no changes were made to the cluster.")
                raise typer.Exit(code=EXIT_OK)

            cluster = _build_cluster(env)
            ctx = RunContext(
                config=cfg,
                components=components,
                cluster=cluster,
                audit=RunLogs.logger(LOG_UNINSTALL),
            )
            try:
                code = asyncio.run(run_uninstall(ctx, assume_yes=yes))
            finally:
                ctx.close()
                _close_cluster(cluster)
            print_info(f"Uninstall log: {logs.path(LOG_UNINSTALL)}")
    except ConfigError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_FAILURE)

    raise typer.Exit(code=code)


if __name__ == "__main__":
    app()
