"""
Main CLI entry point.
"""
import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from portsync.core.config import settings
from portsync.core.exceptions import ConfigurationError, PortSyncError, RunInProgress
from portsync.core.logging_config import setup_logging
from portsync.schemas.sync import ExitCode, StoreReport, StoreStatus, SyncPlan, SyncSummary
from portsync.services.activity_service import RunLog
from portsync.services.confirmation import AutoConfirmer, InteractiveConfirmer
from portsync.services.dedupe_service import DedupeService
from portsync.services.discovery_service import PortDiscoveryService
from portsync.services.local_filter_service import LocalFilterService
from portsync.services.reconcile_service import Reconciler
from portsync.services.run_lock import RunLock
from portsync.services.scheduler_service import SchedulerService, run_forever, stop_on_signals
from portsync.services.security_list_service import SecurityListService
from portsync.utils.command_runner import CommandRunner

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    name="portsync",
    help="Keep iptables and the OCI security list in step with the ports local services use.",
    no_args_is_help=True,
)

SecurityListOption = Annotated[
    Optional[str],
    typer.Option("--security-list", "-s", help="Security list OCID (defaults to SECURITY_LIST_ID)"),
]
YesOption = Annotated[bool, typer.Option("--yes", "-y", help="Apply without asking")]

STATUS_STYLES = {
    StoreStatus.OK: "green",
    StoreStatus.FAILED: "red",
    StoreStatus.SKIPPED: "dim",
    StoreStatus.DECLINED: "yellow",
}


def build_runner() -> CommandRunner:
    return CommandRunner(timeout=settings.COMMAND_TIMEOUT, retries=settings.RETRY_COUNT)


def build_reconciler(confirmer, stop_event: Optional[threading.Event] = None) -> Reconciler:
    """Wire the reconciler with real adapters."""
    runner = build_runner()
    return Reconciler(
        discovery=PortDiscoveryService(settings),
        local=LocalFilterService(runner, settings),
        cloud=SecurityListService(runner, settings),
        confirmer=confirmer,
        config=settings,
        run_log=RunLog(settings.LAST_RUN_FILE),
        stop_event=stop_event,
    )


def build_dedupe(confirmer) -> DedupeService:
    runner = build_runner()
    return DedupeService(LocalFilterService(runner, settings), SecurityListService(runner, settings), confirmer)


def build_scheduler() -> SchedulerService:
    return SchedulerService(build_runner(), settings)


def _confirmer(yes: bool):
    return AutoConfirmer() if yes else InteractiveConfirmer(console)


def _fail(error: PortSyncError, code: ExitCode) -> None:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(int(code))


def _store_table(title: str, reports) -> Table:
    table = Table(title=title)
    table.add_column("Store")
    table.add_column("Status")
    table.add_column("Changed")
    table.add_column("Covered")
    table.add_column("Failed")
    for report in reports:
        style = STATUS_STYLES.get(report.status, "white")
        changed = report.added or report.removed
        failed = "\n".join(f"{port}: {reason}" for port, reason in report.failed.items()) or (report.error or "")
        table.add_row(
            report.store,
            f"[{style}]{report.status.value}[/{style}]",
            ", ".join(changed) or "-",
            ", ".join(report.covered) or "-",
            failed or "-",
        )
    return table


def print_summary(summary: SyncSummary) -> None:
    if summary.error:
        console.print(f"[red]Discovery failed:[/red] {summary.error}")
        return
    console.print(f"Desired ports: {', '.join(summary.desired) or '(none)'}")
    for source, reason in summary.unavailable_sources.items():
        console.print(f"  [dim]source {source} skipped: {reason}[/dim]")
    console.print(_store_table("Sync result", [summary.local, summary.cloud]))


def print_plan(plan: SyncPlan) -> None:
    sources = Table(title="Discovered ports")
    sources.add_column("Source")
    sources.add_column("Ports")
    for source, ports in plan.sources.items():
        sources.add_row(source, ", ".join(ports) or "-")
    for source, reason in plan.unavailable_sources.items():
        sources.add_row(source, f"[dim]unavailable: {reason}[/dim]")
    console.print(sources)

    coverage = Table(title="Coverage")
    coverage.add_column("Port")
    coverage.add_column("iptables")
    coverage.add_column("Ingress")
    coverage.add_column("Egress")

    def cell(results, error, port):
        if error:
            return "[red]error[/red]"
        for result in results:
            if str(result.spec) == port:
                return "[green]allowed[/green]" if result.covered else "[yellow]missing[/yellow]"
        return "[dim]-[/dim]"

    proposal = plan.cloud_proposal
    ingress = proposal.ingress_results if proposal else []
    egress = proposal.egress_results if proposal else []
    for port in plan.desired:
        coverage.add_row(
            port,
            cell(plan.local_results, plan.local_error, port),
            cell(ingress, plan.cloud_error, port),
            cell(egress, plan.cloud_error, port),
        )
    console.print(coverage)

    if plan.local_error:
        console.print(f"[red]iptables:[/red] {plan.local_error}")
    elif plan.local_hooked is False:
        console.print(f"[yellow]{settings.CHAIN_NAME} is not hooked into {settings.PARENT_CHAIN}[/yellow]")
    if plan.cloud_error:
        console.print(f"[red]Security list:[/red] {plan.cloud_error}")
    elif not plan.cloud_list_id:
        console.print("[dim]No security list configured[/dim]")


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    setup_logging("DEBUG" if verbose else None, settings.LOG_DIR)


@app.command("sync")
def sync(
    security_list: SecurityListOption = None,
    yes: YesOption = False,
    skip_local: Annotated[bool, typer.Option("--skip-local", help="Leave iptables alone")] = False,
) -> None:
    """Run one reconciliation pass."""
    stop_event = threading.Event()
    reconciler = build_reconciler(_confirmer(yes), stop_event=stop_event)
    try:
        # Unattended runs (the systemd unit) stop between stores on SIGTERM
        signals = stop_on_signals(stop_event) if yes else nullcontext()
        with signals, RunLock(settings.LOCK_FILE):
            summary = reconciler.run(security_list_id=security_list, skip_local=skip_local)
    except RunInProgress as e:
        logger.warning(str(e))
        _fail(e, ExitCode.LOCKED)
    except ConfigurationError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)

    print_summary(summary)
    raise typer.Exit(int(summary.exit_code))


@app.command("status")
def status(security_list: SecurityListOption = None) -> None:
    """Show discovered ports, per-store coverage and timer state. Changes nothing."""
    reconciler = build_reconciler(AutoConfirmer())
    try:
        plan = reconciler.plan(security_list_id=security_list)
    except ConfigurationError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)

    print_plan(plan)
    console.print(f"Timer: {build_scheduler().timer_status()}")
    last = RunLog(settings.LAST_RUN_FILE).last()
    if last is not None:
        finished = last.finished_at.isoformat(timespec="seconds") if last.finished_at else "unfinished"
        console.print(f"Last run: {finished}, exit code {int(last.exit_code)} ({last.exit_code.name})")


@app.command("install-daemon")
def install_daemon(
    security_list: SecurityListOption = None,
    interval: Annotated[Optional[int], typer.Option("--interval", help="Minutes between runs")] = None,
) -> None:
    """Install and start the systemd service and timer."""
    try:
        build_scheduler().install_daemon(security_list or settings.SECURITY_LIST_ID, interval)
    except PortSyncError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)
    console.print("[green]Automatic sync enabled[/green]")


@app.command("uninstall-daemon")
def uninstall_daemon() -> None:
    """Stop the timer and remove the systemd units."""
    try:
        removed = build_scheduler().uninstall_daemon()
    except PortSyncError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)
    console.print("[green]Automatic sync removed[/green]" if removed else "Automatic sync was not installed")


@app.command("daemon")
def daemon(
    security_list: SecurityListOption = None,
    interval: Annotated[Optional[int], typer.Option("--interval", help="Minutes between runs")] = None,
) -> None:
    """Run sync passes in the foreground until interrupted."""
    stop_event = threading.Event()
    reconciler = build_reconciler(AutoConfirmer(), stop_event=stop_event)

    def cycle():
        try:
            with RunLock(settings.LOCK_FILE):
                reconciler.run(security_list_id=security_list)
        except RunInProgress as e:
            logger.info(f"Skipping cycle: {e}")

    try:
        run_forever(cycle, settings.SYNC_INTERVAL_MINUTES if interval is None else interval, stop_event)
    except ConfigurationError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)


@app.command("dedupe")
def dedupe(
    security_list: SecurityListOption = None,
    yes: YesOption = False,
    skip_local: Annotated[bool, typer.Option("--skip-local", help="Leave iptables alone")] = False,
) -> None:
    """Remove duplicate rules from iptables and the security list."""
    service = build_dedupe(_confirmer(yes))
    summary = SyncSummary(started_at=datetime.now(timezone.utc))
    try:
        with RunLock(settings.LOCK_FILE):
            if skip_local:
                summary.local = StoreReport(store=service.local.name, status=StoreStatus.SKIPPED)
            else:
                summary.local = service.dedupe_local()
            summary.cloud = service.dedupe_cloud(security_list or settings.SECURITY_LIST_ID)
    except RunInProgress as e:
        _fail(e, ExitCode.LOCKED)
    except ConfigurationError as e:
        _fail(e, ExitCode.DISCOVERY_FAILED)

    console.print(_store_table("Duplicate removal", [summary.local, summary.cloud]))
    raise typer.Exit(int(summary.exit_code))


if __name__ == "__main__":
    app()
