"""Main CLI entry point."""

import signal
import sys
import threading
from contextlib import contextmanager
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from drift_controller.config.parser import Config, ConfigValidationError
from drift_controller.engine.apply import RemediationExecutor
from drift_controller.engine.plan import PlanExecutor
from drift_controller.engine.terraform import TerraformRunner
from drift_controller.notify.chat import ChatNotifier
from drift_controller.notify.issues import GitHubIssueTracker
from drift_controller.orchestrator.models import CycleState, RunContext, RunResult, Trigger
from drift_controller.orchestrator.reconciler import Reconciler
from drift_controller.orchestrator.scheduler import EnvironmentScheduler
from drift_controller.records.publisher import S3RecordPublisher
from drift_controller.records.store import DriftRecordStore
from drift_controller.utils.errors import ControllerError
from drift_controller.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

DEFAULT_CONFIG = "drift-controller.yaml"

STATE_STYLES = {
    CycleState.CLEAN: "green",
    CycleState.REMEDIATED: "green",
    CycleState.DRIFTED: "yellow",
    CycleState.SKIPPED: "yellow",
    CycleState.CANCELLED: "yellow",
    CycleState.PLAN_ERROR: "red",
    CycleState.REMEDIATION_FAILED: "red",
}

STATUS_STYLES = {
    "clean": "green",
    "remediated": "green",
    "drift": "yellow",
    "error": "red",
}


@click.group()
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', default='.drift-controller/logs', help='Directory for JSON log files')
@click.pass_context
def cli(ctx, log_level, log_dir):
    """Terraform drift detection and remediation controller."""
    ctx.ensure_object(dict)
    ctx.obj['log_level'] = log_level

    # Setup logging
    setup_logging(log_level, log_dir)


def load_config(config_path: str = DEFAULT_CONFIG) -> Config:
    """Load and validate configuration file."""
    try:
        config = Config(config_path)
        config.load()
        return config
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def create_store(config: Config) -> DriftRecordStore:
    """Create the record store, mirroring to S3 when a bucket is configured."""
    publisher = None
    if config.records.s3_bucket:
        publisher = S3RecordPublisher(config.records.s3_bucket, prefix=config.records.s3_prefix)
    return DriftRecordStore(config.records.directory, publisher=publisher)


def create_reconciler(config: Config) -> Reconciler:
    """Create reconciler with all collaborators."""
    runner = TerraformRunner(config.terraform)
    issue_tracker = GitHubIssueTracker(config.issues) if config.issues.enabled else None
    chat = ChatNotifier(config.chat) if config.chat.enabled else None

    return Reconciler(
        plan_executor=PlanExecutor(runner),
        remediation_executor=RemediationExecutor(runner),
        store=create_store(config),
        issue_tracker=issue_tracker,
        chat=chat,
        extra_labels=config.issues.labels,
    )


def create_scheduler(config: Config) -> EnvironmentScheduler:
    """Create environment scheduler for the configured environments."""
    return EnvironmentScheduler(
        config.list_environments(),
        create_reconciler(config),
        config.scheduler,
    )


@contextmanager
def cancellation_token():
    """Translate SIGINT/SIGTERM into a cancellation token for the duration of a run.

    Running applies are never interrupted; the token is only checked before
    plan and before apply.
    """
    cancel_event = threading.Event()

    def handler(signum, frame):
        if not cancel_event.is_set():
            console.print("[yellow]Cancellation requested; finishing running applies...[/yellow]")
            cancel_event.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel_event
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def print_run_result(result: RunResult) -> None:
    """Display per-environment outcomes of a run."""
    table = Table(title="Reconciliation Results")
    table.add_column("Environment", style="cyan")
    table.add_column("State")
    table.add_column("Changes")
    table.add_column("Ticket")
    table.add_column("Notes")

    for name in result.run.order:
        cycle = result.cycles.get(name)
        if cycle is None:
            error = result.errors.get(name)
            table.add_row(name, "[red]error[/red]", "-", "-", error.message if error else "not run")
            continue

        style = STATE_STYLES.get(cycle.state, "white")
        changes = cycle.plan.summary.describe() if cycle.plan and cycle.plan.is_drifted() else "-"
        notes = cycle.reason or "; ".join(cycle.notification_errors) or ""
        table.add_row(
            name,
            f"[{style}]{cycle.state.value}[/{style}]",
            changes,
            f"#{cycle.ticket_number}" if cycle.ticket_number else "-",
            notes,
        )

    console.print(table)

    for name, reason in result.run.skipped.items():
        console.print(f"[dim]Not scheduled: {name} ({reason})[/dim]")


def run_trigger(config: Config, trigger: Trigger) -> RunResult:
    """Plan and execute a trigger, exiting on scheduling errors."""
    scheduler = create_scheduler(config)
    try:
        run = scheduler.plan_run(trigger)
    except ControllerError as e:
        console.print(f"[red]Trigger rejected:[/red] {e.to_user_message()}")
        sys.exit(1)

    if run.is_empty():
        console.print("[yellow]No environments to reconcile[/yellow]")
        return RunResult(run=run)

    with cancellation_token() as cancel_event, console.status("[cyan]Reconciling...[/cyan]") as status:
        def progress(environment: str, state: CycleState):
            status.update(f"[cyan]Reconciling...[/cyan] {environment}: {state.value}")

        return scheduler.execute(run, cancel_event=cancel_event, progress_callback=progress)


@cli.command()
@click.option('--env', 'environments', multiple=True, help='Restrict to these environments')
@click.option('--actor', help='Who triggered the run (defaults to GITHUB_ACTOR)')
@click.option('--run-url', help='Link to the triggering workflow run')
@click.option('--config', default=DEFAULT_CONFIG, help='Path to configuration file')
def run(environments, actor, run_url, config):
    """Scheduled trigger: reconcile every scheduled environment in dependency order."""
    cfg = load_config(config)
    context = RunContext.from_environment(actor=actor, run_url=run_url)
    trigger = Trigger.scheduled(context)
    trigger.environments = list(environments)

    result = run_trigger(cfg, trigger)
    print_run_result(result)

    if not result.is_success():
        sys.exit(1)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--region', help='Region override (must match the configured region unless allowed)')
@click.option('--actor', help='Who triggered the run (defaults to GITHUB_ACTOR)')
@click.option('--run-url', help='Link to the triggering workflow run')
@click.option('--config', default=DEFAULT_CONFIG, help='Path to configuration file')
def reconcile(env, region, actor, run_url, config):
    """Manual trigger: reconcile one environment, including sensitive ones."""
    cfg = load_config(config)
    context = RunContext.from_environment(actor=actor, run_url=run_url)
    env_config = cfg.environments.get(env)

    if env_config is not None:
        console.print(Panel.fit(
            f"[bold]Reconciling {env}[/bold]\n"
            f"Region: {region or env_config.region}\n"
            f"Auto-remediate: {'enabled' if env_config.auto_remediate else 'disabled'}\n"
            f"Triggered by: {context.triggered_by or 'unknown'}",
            title="Manual Trigger",
            border_style="cyan"
        ))

    result = run_trigger(cfg, Trigger.manual(env, region=region, context=context))
    print_run_result(result)

    if not result.is_success():
        sys.exit(1)


@cli.command()
@click.option('--env', required=True, help='Environment name')
@click.option('--config', default=DEFAULT_CONFIG, help='Path to configuration file')
def plan(env, config):
    """Dry run: detect drift in one environment without recording or remediating.

    Exits 0 when clean, 2 when drifted and 1 on error.
    """
    cfg = load_config(config)
    try:
        env_config = cfg.get_environment(env)
    except ConfigValidationError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    result = PlanExecutor(TerraformRunner(cfg.terraform)).plan(env_config)

    if result.is_clean():
        console.print(f"[green]✓ {env} is clean[/green]")
        return

    if result.is_drifted():
        console.print(f"[yellow]⚠ Drift detected in {env}:[/yellow] {result.summary.describe()}")
        for change in result.summary.resources:
            console.print(f"  [yellow]~[/yellow] {change.address} ({change.action})")
        sys.exit(2)

    console.print(f"[red]✗ Plan failed for {env}[/red]")
    if result.error:
        console.print(result.error.to_user_message())
    sys.exit(1)


@cli.command()
@click.option('--config', default=DEFAULT_CONFIG, help='Path to configuration file')
def status(config):
    """Show the stored drift record of every environment."""
    cfg = load_config(config)
    try:
        records = create_store(cfg).as_dict()
    except ControllerError as e:
        console.print(f"[red]Error reading records:[/red] {e.to_user_message()}")
        sys.exit(1)

    table = Table(title=f"Drift Status: {cfg.project.name}")
    table.add_column("Environment", style="cyan")
    table.add_column("Region")
    table.add_column("Status")
    table.add_column("Add/Change/Destroy")
    table.add_column("Apply")
    table.add_column("Checked")
    table.add_column("Triggered By")

    for name, env_config in cfg.environments.items():
        record = records.get(name)
        if record is None:
            table.add_row(name, env_config.region, "[dim]never checked[/dim]", "-", "-", "-", "-")
            continue

        style = STATUS_STYLES.get(record.status.value, "white")
        table.add_row(
            name,
            record.region,
            f"[{style}]{record.status.value}[/{style}]",
            f"{record.resources_to_add}/{record.resources_to_change}/{record.resources_to_destroy}",
            record.apply_outcome or "-",
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S %Z"),
            record.triggered_by or "-",
        )

    console.print(table)


@cli.command()
@click.option('--config', default=DEFAULT_CONFIG, help='Path to configuration file')
def order(config):
    """Show the waves a scheduled run would execute."""
    cfg = load_config(config)
    scheduler = EnvironmentScheduler(cfg.list_environments(), reconciler=None, config=cfg.scheduler)

    try:
        run = scheduler.plan_run(Trigger.scheduled())
    except ControllerError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)

    console.print(f"[bold]Prerequisite failure policy:[/bold] {cfg.scheduler.on_prerequisite_failure.value}\n")
    for number, wave in enumerate(run.waves, start=1):
        console.print(f"[bold]Wave {number}[/bold]")
        for name in wave:
            dependencies = run.dependencies.get(name)
            after = f" [dim](after {', '.join(dependencies)})[/dim]" if dependencies else ""
            console.print(f"  • {name}{after}")

    for name, reason in run.skipped.items():
        console.print(f"\n[dim]Manual only: {name} ({reason})[/dim]")


def main(argv: Optional[list] = None):
    """Console script entry point."""
    cli(args=argv, obj={})


if __name__ == '__main__':
    main()
