"""Rich-based terminal display layer for install and uninstall runs.

Provides plan tables, the live monitoring dashboard, discovery and final
summaries, the teardown report and error panels.  Uses a module-level
:class:`~rich.console.Console` singleton for consistent output.

.. rubric:: Design decisions

* **Module-level Console singleton** -- all display functions share
  ``_console`` so that Rich formatting is consistent across the session.
* **Functions, not a class** -- each display function is standalone and
  stateless.  :class:`Dashboard` is the one exception because it owns a
  refresh loop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Sequence

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.pattern_orchestrator.clock import CancelSignal, format_duration
from src.pattern_orchestrator.config import OrchestratorConfig
from src.pattern_orchestrator.constants import SECRETS_STATUS_ID
from src.pattern_orchestrator.context import RunContext
from src.pattern_orchestrator.models import (
    Category,
    Component,
    LifecycleState,
    NamespaceClass,
    RunSummary,
    StatusRecord,
    TeardownReport,
)
from src.pattern_orchestrator.registry import ComponentDirectory

# ---------------------------------------------------------------------------
# Module-level Console singleton
# ---------------------------------------------------------------------------

_console = Console()

_STATE_STYLES: dict[LifecycleState, tuple[str, str]] = {
    LifecycleState.SUCCESS: ("green", "✓"),
    LifecycleState.FAILED: ("red", "✗"),
    LifecycleState.ABORTED: ("magenta", "■"),
    LifecycleState.INSTALLING: ("yellow", "⚠"),
    LifecycleState.SYNCING: ("yellow", "⚠"),
    LifecycleState.PROGRESSING: ("yellow", "⚠"),
    LifecycleState.WAITING: ("cyan", "○"),
    LifecycleState.PENDING: ("cyan", "○"),
}


# ---------------------------------------------------------------------------
# Simple messages
# ---------------------------------------------------------------------------


def print_header(title: str) -> None:
    _console.rule(f"[bold blue]{title}[/bold blue]")


def print_info(message: str) -> None:
    _console.print(f"[blue]ℹ[/blue] {message}")


def print_success(message: str) -> None:
    _console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    _console.print(f"[yellow]⚠[/yellow] {message}")


def print_error_panel(error: str | Exception) -> None:
    """Print an error message in a red Rich panel.

    Parameters
    ----------
    error:
        Error message string or Exception instance.
    """
    error_text = str(error)
    _console.print(
        Panel(
            Text(error_text, style="bold white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            expand=False,
        )
    )


# ---------------------------------------------------------------------------
# Plan tables
# ---------------------------------------------------------------------------


def display_version(component: Component) -> str:
    """Version string for display, with any configured chart prefix."""
    if not component.version.known:
        return str(component.version)
    prefix = component.hints.get("chart_prefix") or ""
    return f"{prefix}{component.version.value}"


def category_title(config: OrchestratorConfig, category: Category) -> str:
    return config.category_titles.get(category.value, category.heading)


def plan_table(
    config: OrchestratorConfig,
    category: Category,
    components: Sequence[Component],
    start_number: int = 1,
    installed: Mapping[str, bool] | None = None,
) -> Table:
    """Build the numbered plan table for one category.

    When *installed* is given, each row is marked 🟢 (will be removed) or
    🔴 (not installed, will be skipped).
    """
    widths = config.columns
    version_title = config.version_titles.get(
        category.value,
        "HELM CHART VERSION" if category is Category.APPLICATION else "VERSION",
    )
    table = Table(
        title=f"[bold cyan]{category_title(config, category)}[/bold cyan]",
        title_justify="left",
        show_header=True,
        header_style="bold",
    )
    table.add_column("", justify="right", width=4)
    table.add_column("NAME", max_width=widths.name, overflow="fold")
    table.add_column("NAMESPACE", max_width=widths.namespace, overflow="fold")
    table.add_column(version_title, max_width=widths.version, overflow="fold")
    if installed is not None:
        table.add_column("", justify="center", width=3)

    for offset, component in enumerate(components):
        row = [
            f"{start_number + offset}.",
            component.display_name,
            str(component.namespace),
            display_version(component),
        ]
        if installed is not None:
            row.append("🟢" if installed.get(component.id) else "🔴")
        table.add_row(*row)
    return table


def print_install_plan(config: OrchestratorConfig, components: ComponentDirectory[Component]) -> None:
    """Print the install plan: infrastructure, secrets, then the three sequences."""
    print_header(f"{config.pattern.display_name} INSTALLATION PLAN")
    number = 1

    print_info("The following tasks will be executed first:")
    infra = components.by_category(Category.INFRASTRUCTURE)
    if infra:
        _console.print(plan_table(config, Category.INFRASTRUCTURE, infra, number))
        number += len(infra)
    _console.print(f"{number}. Load secrets into Vault")
    number += 1

    print_info(
        "The following blocks will be executed sequentially. "
        "Tasks in each block will run in parallel and be monitored:"
    )
    for category, sequence in (
        (Category.OPERATOR, "Install Operators"),
        (Category.CONTROLLER, "Deploy Pattern CR (ArgoCD App Factory)"),
        (Category.APPLICATION, "Install ArgoCD applications"),
    ):
        members = components.by_category(category)
        _console.print(f"[bold cyan]ℹ--- Sequence: {sequence}[/bold cyan]")
        _console.print(plan_table(config, category, members, number))
        number += len(members)


def print_uninstall_plan(
    config: OrchestratorConfig,
    components: ComponentDirectory[Component],
    installed: Mapping[str, bool] | None = None,
) -> None:
    """Print the uninstall plan in reverse tier order, with install markers if known."""
    print_header(f"{config.pattern.display_name} UNINSTALL PLAN")
    print_info("The following tasks would be executed in REVERSE order. Components are color-coded:")
    if installed is not None:
        _console.print("  🟢 = Currently installed (will be removed)")
        _console.print("  🔴 = Not installed (will be skipped)")
    number = 1
    for category, sequence in (
        (Category.APPLICATION, "Remove Applications"),
        (Category.CONTROLLER, "Remove Pattern CR"),
        (Category.OPERATOR, "Remove Operators"),
        (Category.INFRASTRUCTURE, "Remove Infrastructure"),
    ):
        members = list(reversed(components.by_category(category)))
        if not members:
            continue
        _console.print(f"[bold cyan]ℹ--- Sequence: {sequence}[/bold cyan]")
        _console.print(plan_table(config, category, members, number, installed))
        number += len(members)


def print_discovery_summary(successes: int, failures: int, log_path: str | None = None) -> None:
    print_info("📊 DISCOVERY SUMMARY:")
    _console.print(f"  ✅ Successful: {successes}")
    _console.print(f"  ❌ Failed: {failures}")
    if failures and log_path:
        _console.print(f"  📋 Full discovery log: {log_path}")
        _console.print("  🔧 Review failures and update configuration sources")


# ---------------------------------------------------------------------------
# Live dashboard
# ---------------------------------------------------------------------------


def dashboard_counts(snapshot: Mapping[str, StatusRecord]) -> tuple[int, int, int]:
    """Return ``(success, failed, active)``.  Aborted counts as failed."""
    success = sum(1 for r in snapshot.values() if r.state is LifecycleState.SUCCESS)
    failed = sum(
        1
        for r in snapshot.values()
        if r.state in (LifecycleState.FAILED, LifecycleState.ABORTED)
    )
    return success, failed, len(snapshot) - success - failed


def render_dashboard(
    config: OrchestratorConfig,
    components: ComponentDirectory[Component],
    snapshot: Mapping[str, StatusRecord],
    now: float,
    elapsed: float,
) -> Group:
    """Build one dashboard frame from a status snapshot."""
    parts: list[Text | Table] = [
        Text(
            f"Elapsed: {format_duration(elapsed)} | "
            f"Last Update: {datetime.fromtimestamp(now).strftime('%H:%M:%S')}"
        )
    ]
    for category in components.categories():
        table = Table(
            title=f"[bold cyan]{category_title(config, category)}[/bold cyan]",
            title_justify="left",
            show_header=True,
            header_style="bold",
        )
        table.add_column("COMPONENT", max_width=config.columns.name, overflow="fold")
        table.add_column("STATUS", min_width=14)
        table.add_column("IN STATUS", min_width=8)
        table.add_column("DETAILS", overflow="fold")
        for component in components.by_category(category):
            record = snapshot[component.id]
            style, icon = _STATE_STYLES[record.state]
            table.add_row(
                component.display_name,
                f"[{style}]{icon} {record.state.value.upper()}[/{style}]",
                format_duration(now - record.since),
                record.detail,
            )
        parts.append(table)

    success, failed, active = dashboard_counts(snapshot)
    parts.append(Text(f"Progress: Success={success}, Failed={failed}, Active={active}"))
    return Group(*parts)


class Dashboard:
    """Periodic renderer of status snapshots, outside the control path.

    Stops when every component is terminal, when *cancel* fires, or after
    ``max_wait`` seconds.  :meth:`run` returns which of those happened:
    ``"complete"``, ``"cancelled"`` or ``"timeout"``.
    """

    def __init__(
        self,
        ctx: RunContext,
        cancel: CancelSignal | None = None,
        console: Console | None = None,
    ) -> None:
        self.ctx = ctx
        self.cancel = cancel or ctx.cancel
        self.console = console
        self.frames = 0

    def _out(self) -> Console:
        return self.console or _console

    async def run(self) -> str:
        cfg = self.ctx.config.dashboard
        clock = self.ctx.clock
        ids = self.ctx.components.ids()
        started = clock.monotonic()
        self._out().rule("[bold blue]LIVE MONITORING DASHBOARD[/bold blue]")

        while True:
            elapsed = clock.monotonic() - started
            snapshot = self.ctx.store.snapshot(ids)
            self.frames += 1
            self._out().print(
                render_dashboard(self.ctx.config, self.ctx.components, snapshot, clock.now(), elapsed)
            )
            if all(record.state.is_terminal for record in snapshot.values()):
                self._out().print("[green]✓[/green] All components completed!")
                return "complete"
            if elapsed >= cfg.max_wait:
                self._out().print(
                    f"[yellow]⚠[/yellow] Maximum monitoring time reached "
                    f"({format_duration(cfg.max_wait)})"
                )
                return "timeout"
            wait = min(cfg.refresh_interval, cfg.max_wait - elapsed)
            if await clock.sleep(wait, self.cancel):
                return "cancelled"


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def print_final_summary(summary: RunSummary, components: ComponentDirectory[Component]) -> None:
    """Print the final install summary, including the secrets step."""
    style = "green" if summary.success else "red"
    title = "Installation Complete" if summary.success else "Installation Failed"

    def name_of(cid: str) -> str:
        if cid == SECRETS_STATUS_ID:
            return "Secrets Loading"
        return components[cid].display_name if cid in components else cid

    content = Text()
    content.append("Total installation time: ", style="bold")
    content.append(f"{format_duration(summary.duration_seconds)}\n\n")
    for cid in summary.succeeded:
        content.append("✓ ", style="green")
        content.append(f"{name_of(cid)}\n")
    for cid, detail in summary.failed.items():
        content.append("✗ ", style="red")
        content.append(f"{name_of(cid)} - {detail}\n")

    stage_table = Table(show_header=True, header_style="bold")
    stage_table.add_column("Stage", style="cyan", min_width=20)
    stage_table.add_column("Result", justify="center", min_width=8)
    stage_table.add_column("Duration", justify="right", min_width=8)
    stage_table.add_column("Detail")
    for stage in summary.stages:
        result = "[green]PASS[/green]" if stage.success else "[red]FAIL[/red]"
        stage_table.add_row(stage.name, result, format_duration(stage.duration_seconds), stage.detail)

    total = len(summary.succeeded) + len(summary.failed)
    stats = Text(
        f"\nTotal components: {total}\n"
        f"Successful: {len(summary.succeeded)}\n"
        f"Failed: {len(summary.failed)}"
    )
    _console.print(
        Panel(
            Group(content, stage_table, stats),
            title=f"[bold]{title}[/bold]",
            border_style=style,
            expand=False,
        )
    )


def print_footprint(counts: Mapping[str, int]) -> None:
    table = Table(title="Current pattern footprint", show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Count", justify="right")
    for label, count in counts.items():
        table.add_row(label, str(count))
    _console.print(table)


def print_teardown_report(report: TeardownReport) -> None:
    """Print the uninstall report; residue is shown as a warning."""
    clean = report.residue_total == 0 and not report.stuck
    style = "green" if clean else "yellow"
    content = Text()
    content.append(f"Applications deleted: {report.applications_deleted}\n")
    content.append(f"Operators cleaned: {report.operators_cleaned}\n")
    content.append(f"Namespaces deleted: {report.namespaces_deleted}\n")
    content.append(f"Namespaces preserved: {report.namespaces_preserved}\n")
    content.append(f"Sub-resources cleaned: {report.subresources_cleaned}\n")
    if report.stuck:
        content.append("\nStuck resources:\n", style="bold yellow")
        for item in report.stuck:
            content.append(f"  - {item}\n")
    if report.residue_total:
        content.append("\nRemaining resources:\n", style="bold yellow")
        for label, count in report.residue.items():
            if count:
                content.append(f"  {label}: {count}\n")
    else:
        content.append("\nCluster is clean\n", style="bold green")
    _console.print(
        Panel(
            content,
            title="[bold]Uninstall Report[/bold]",
            border_style=style,
            expand=False,
        )
    )


def print_preflight(plan: Mapping[str, NamespaceClass], user: str = "UNKNOWN") -> None:
    """Print which namespaces survive the uninstall and which are deleted."""
    preserved = [ns for ns, cls in plan.items() if cls is NamespaceClass.PROTECTED]
    deleted = [ns for ns, cls in plan.items() if cls is NamespaceClass.PATTERN_OWNED]
    print_header("SAFETY PREFLIGHT CHECK")
    _console.print(f"Current user: {user}")
    _console.print("🛡️  NAMESPACE SAFETY:")
    _console.print(f"  ✅ System namespaces will be PRESERVED: {', '.join(preserved) or 'none'}")
    _console.print(f"  🗑️  Pattern namespaces will be DELETED: {', '.join(deleted) or 'none'}")
    _console.print("✅ Safety check: PASSED")
