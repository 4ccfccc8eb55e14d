"""Main CLI entry point."""

import signal
import sys
from importlib.metadata import entry_points
from typing import Iterable, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from kubeconverge.backend.bootstrap import BootstrapSettings, bootstrap_backend
from kubeconverge.config.parser import Config, ConfigValidationError
from kubeconverge.orchestrator.executor import ActionResult, ApplyReport, ExecutionStatus, Outcome
from kubeconverge.orchestrator.planner import Action, Plan
from kubeconverge.orchestrator.reconciler import Reconciler, build_backend
from kubeconverge.providers.base import ProviderAdapter, ProviderRegistry
from kubeconverge.providers.memory import InMemoryProvider
from kubeconverge.utils.aws_client import AWSClientManager
from kubeconverge.utils.errors import ReconcileError
from kubeconverge.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

PROVIDER_ENTRY_POINT_GROUP = "kubeconverge.providers"

ACTION_STYLES = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.DELETE: "red",
    Action.NOOP: "dim",
}

OUTCOME_STYLES = {
    Outcome.APPLIED: "green",
    Outcome.UNCHANGED: "dim",
    Outcome.SKIPPED: "yellow",
    Outcome.FAILED: "red",
}


@click.group()
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--mock-providers', is_flag=True, help='Back every resource kind with the in-memory provider')
@click.pass_context
def cli(ctx, profile, region, log_level, mock_providers):
    """Converge declared infrastructure to its desired state."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level
    ctx.obj['mock_providers'] = mock_providers

    setup_logging(log_level)


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(escape(str(e)))
        sys.exit(1)
    except ReconcileError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.to_user_message())}")
        sys.exit(1)


def _apply_overrides(config: Config, profile: Optional[str], region: Optional[str]) -> None:
    backend = config.backend
    if profile:
        backend.profile = profile
    if region:
        backend.region = region


def load_registry(ctx, kinds: Iterable[str], client_manager: Optional[AWSClientManager]) -> ProviderRegistry:
    """Collect provider adapters.

    Adapters come from ``kubeconverge.providers`` entry points, each a
    callable taking an ``AWSClientManager`` and returning one adapter or an
    iterable of adapters. ``--mock-providers`` replaces them with in-memory
    adapters for every declared kind.
    """
    registry = ctx.obj.get('registry')
    if registry is not None:
        return registry

    if ctx.obj.get('mock_providers'):
        console.print("[yellow]Using in-memory providers; no real infrastructure is touched[/yellow]")
        return ProviderRegistry(InMemoryProvider(kind) for kind in sorted(set(kinds)))

    registry = ProviderRegistry()
    for entry_point in entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
        factory = entry_point.load()
        adapters = factory(client_manager)
        if isinstance(adapters, ProviderAdapter):
            adapters = [adapters]
        for adapter in adapters:
            registry.register(adapter)
        logger.debug(f"Loaded providers from {entry_point.name}")
    return registry


def create_reconciler(ctx, config_path: str, settings_overrides: Optional[dict] = None) -> Reconciler:
    """Create a reconciler with store, lock and adapters for the config."""
    config = load_config(config_path)
    _apply_overrides(config, ctx.obj.get('profile'), ctx.obj.get('region'))

    client_manager = None
    if config.backend.type == "s3":
        client_manager = AWSClientManager(profile=config.backend.profile, region=config.backend.region)

    kinds = [spec.kind for spec in config.resource_specs()]
    registry = load_registry(ctx, kinds, client_manager)

    settings = config.settings
    if settings_overrides:
        settings = settings.model_copy(update=settings_overrides)

    return Reconciler.from_config(config, registry, settings=settings, client_manager=client_manager)


def render_plan(plan: Plan) -> None:
    """Print a plan as a table plus a summary line."""
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Changes")
    table.add_column("Reason", style="dim")

    for index, action in enumerate(plan.actions, 1):
        style = ACTION_STYLES[action.action]
        label = action.action.value
        if action.replacement:
            label += " (replace)"
        elif action.deposed:
            label += f" (deposed {escape(action.provider_id or '')})"
        changes = ""
        if action.action == Action.UPDATE or (action.replacement and action.action == Action.CREATE):
            changes = ", ".join(
                change.field + (" [red]forces replacement[/red]" if change.requires_replacement else "")
                for change in action.changes
            )
        table.add_row(str(index), f"[{style}]{label}[/{style}]", action.address, changes, action.reason)

    console.print(table)
    summary = plan.summary()
    console.print(
        f"\n[bold]Plan:[/bold] {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['noop']} unchanged (state serial {plan.state_serial})"
    )


def render_report(report: ApplyReport) -> None:
    """Print per-resource outcomes and the blocking error, if any."""
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Outcome")
    table.add_column("Detail")

    details = {}
    for result in report.results.values():
        if result.error is not None:
            details[result.address] = escape(f"[{result.error.classification.value}] {result.error.message}")
        elif result.skipped_reason and result.address not in details:
            details[result.address] = escape(result.skipped_reason)

    for address, outcome in sorted(report.outcomes().items()):
        style = OUTCOME_STYLES[outcome]
        table.add_row(address, f"[{style}]{outcome.value}[/{style}]", details.get(address, ""))

    console.print(table)

    summary = report.summary()
    text = (
        f"Applied: {summary['applied']}\n"
        f"Unchanged: {summary['unchanged']}\n"
        f"Failed: {summary['failed']}\n"
        f"Skipped: {summary['skipped']}\n"
        f"State serial: {report.final_serial}\n"
        f"Duration: {report.duration:.2f}s"
    )
    if report.succeeded:
        console.print(Panel.fit(f"[green]✓ Apply complete[/green]\n\n{text}",
                                title="Apply Complete", border_style="green"))
        return

    title = "Apply Cancelled" if report.cancelled else "Apply Failed"
    console.print(Panel.fit(f"[red]✗ Apply did not fully succeed[/red]\n\n{text}",
                            title=title, border_style="red"))
    error = report.first_error()
    if error is not None:
        console.print(f"\n[red]First blocking error:[/red]\n{escape(error.to_user_message())}")


def _print_progress(result: ActionResult) -> None:
    if result.status == ExecutionStatus.SUCCESS:
        console.print(f"  [green]✓[/green] {result.action.value} {result.address} ({result.duration:.1f}s)")
    elif result.status == ExecutionStatus.FAILED:
        console.print(f"  [red]✗[/red] {result.action.value} {result.address}")
    elif result.status == ExecutionStatus.SKIPPED:
        console.print(f"  [yellow]-[/yellow] {result.action.value} {result.address} skipped")


def run_apply(reconciler: Reconciler, plan: Plan) -> ApplyReport:
    """Apply with Ctrl-C mapped to cooperative cancellation."""
    def handle_interrupt(sig, frame):
        console.print("\n[yellow]Cancelling; waiting for in-flight actions to finish...[/yellow]")
        reconciler.cancel()

    previous = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        return reconciler.apply(plan, progress_callback=_print_progress)
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.option('--destroy', is_flag=True, help='Plan deletion of every tracked resource')
@click.option('--out', 'out_path', help='Save the plan to a file for a later apply')
@click.pass_context
def plan(ctx, config, destroy, out_path):
    """Show the changes needed to converge."""
    try:
        reconciler = create_reconciler(ctx, config)
        computed = reconciler.plan(destroy=destroy)
    except ReconcileError as e:
        console.print(f"[red]Plan failed:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    render_plan(computed)
    if not computed.has_changes():
        console.print("\n[green]No changes. Infrastructure matches the configuration.[/green]")
    if out_path:
        computed.save(out_path)
        console.print(f"\nPlan saved to [cyan]{out_path}[/cyan]")


@cli.command()
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.option('--plan', 'plan_path', help='Apply a saved plan instead of computing one')
@click.option('--auto-approve', is_flag=True, help='Skip confirmation prompt')
@click.option('--fail-fast', is_flag=True, help='Stop scheduling new actions after the first failure')
@click.option('--max-workers', type=int, help='Maximum concurrent provider calls')
@click.pass_context
def apply(ctx, config, plan_path, auto_approve, fail_fast, max_workers):
    """Apply changes to converge the infrastructure."""
    overrides = {}
    if fail_fast:
        overrides['fail_fast'] = True
    if max_workers:
        overrides['max_workers'] = max_workers

    try:
        reconciler = create_reconciler(ctx, config, overrides)
        computed = Plan.load(plan_path) if plan_path else reconciler.plan()
    except ReconcileError as e:
        console.print(f"[red]Plan failed:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    render_plan(computed)
    if not computed.has_changes():
        console.print("\n[green]No changes. Infrastructure matches the configuration.[/green]")
        return

    if not auto_approve and not click.confirm("\nApply these changes?"):
        console.print("[yellow]Apply cancelled[/yellow]")
        sys.exit(1)

    try:
        report = run_apply(reconciler, computed)
    except ReconcileError as e:
        console.print(f"[red]Apply aborted before any change:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    render_report(report)
    if report.exit_code != 0:
        sys.exit(report.exit_code)


@cli.command()
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.option('--auto-approve', is_flag=True, help='Skip confirmation prompt')
@click.option('--fail-fast', is_flag=True, help='Stop scheduling new actions after the first failure')
@click.pass_context
def destroy(ctx, config, auto_approve, fail_fast):
    """Delete every tracked resource."""
    try:
        reconciler = create_reconciler(ctx, config, {'fail_fast': True} if fail_fast else None)
        computed = reconciler.plan(destroy=True)
    except ReconcileError as e:
        console.print(f"[red]Plan failed:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    if not computed.has_changes():
        console.print("[yellow]Nothing to destroy[/yellow]")
        return

    render_plan(computed)
    console.print(Panel.fit(
        f"[bold red]⚠ WARNING: This will destroy {len(computed.changes())} resources[/bold red]",
        border_style="red"
    ))
    if not auto_approve and not click.confirm("\nDestroy these resources?"):
        console.print("[yellow]Destroy cancelled[/yellow]")
        sys.exit(1)

    try:
        report = run_apply(reconciler, computed)
    except ReconcileError as e:
        console.print(f"[red]Destroy aborted before any change:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    render_report(report)
    if report.exit_code != 0:
        sys.exit(report.exit_code)


def _open_backend(ctx, config_path: str):
    config = load_config(config_path)
    _apply_overrides(config, ctx.obj.get('profile'), ctx.obj.get('region'))
    store, lock_manager = build_backend(config.backend)
    return config, store, lock_manager


@cli.group()
def state():
    """Inspect the state document."""
    pass


@state.command('list')
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.pass_context
def state_list(ctx, config):
    """Show tracked resources."""
    try:
        _, store, _ = _open_backend(ctx, config)
        document, serial = store.read()
    except ReconcileError as e:
        console.print(f"[red]Error:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    if not document.resources:
        console.print("[yellow]No resources tracked[/yellow]")
        return

    table = Table(title=f"State serial {serial} (lineage {document.lineage})",
                  show_header=True, header_style="bold cyan")
    table.add_column("Address", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Provider ID", style="green")
    table.add_column("Status")

    for address in document.addresses():
        resource = document.get(address)
        provider_id = resource.provider_id or "N/A"
        if len(provider_id) > 50:
            provider_id = provider_id[:47] + "..."
        status = resource.status.value
        if resource.is_tainted:
            status = f"[red]{status}[/red]"
        if resource.deposed:
            status += f" [yellow](+{len(resource.deposed)} deposed)[/yellow]"
        table.add_row(address, resource.kind, provider_id, status)

    console.print(table)
    console.print(f"[bold]Total resources:[/bold] {len(document.resources)}")


@state.command('history')
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.option('--limit', default=20, help='Number of versions to show')
@click.pass_context
def state_history(ctx, config, limit):
    """Show stored versions of the state document."""
    try:
        _, store, _ = _open_backend(ctx, config)
        versions = store.list_versions()
    except ReconcileError as e:
        console.print(f"[red]Error:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    if not versions:
        console.print("[yellow]No state versions stored[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Version", style="cyan")
    table.add_column("Serial", justify="right")
    table.add_column("Written")
    table.add_column("Hash", style="dim")

    for version in sorted(versions, key=lambda v: v.serial, reverse=True)[:limit]:
        marker = " [green](latest)[/green]" if version.is_latest else ""
        table.add_row(f"{version.version_id}{marker}", str(version.serial),
                      version.written_at.isoformat(), version.content_hash[:12])

    console.print(table)


@cli.group()
def lock():
    """Inspect or recover the state lock."""
    pass


@lock.command('show')
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.pass_context
def lock_show(ctx, config):
    """Show who holds the state lock."""
    try:
        cfg, _, lock_manager = _open_backend(ctx, config)
        current = lock_manager.current(cfg.backend.lock_key)
    except ReconcileError as e:
        console.print(f"[red]Error:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    if current is None:
        console.print("[green]Lock is free[/green]")
        return

    expired = current.is_expired(lock_manager.clock())
    info_table = Table(show_header=False, box=None)
    info_table.add_column("Key", style="cyan")
    info_table.add_column("Value")
    info_table.add_row("Key", current.key)
    info_table.add_row("Holder", current.holder)
    info_table.add_row("Operation", current.operation)
    info_table.add_row("Lock ID", current.lock_id)
    info_table.add_row("Remaining", f"{current.remaining(lock_manager.clock()):.0f}s")
    info_table.add_row("Status", "[yellow]expired (reclaimable)[/yellow]" if expired else "[red]held[/red]")
    console.print(Panel(info_table, title="State Lock", border_style="cyan"))


@lock.command('force-release')
@click.option('--config', default='kubeconverge.yaml', help='Path to configuration file')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def lock_force_release(ctx, config, yes):
    """Remove the state lock regardless of holder."""
    try:
        cfg, _, lock_manager = _open_backend(ctx, config)
        key = cfg.backend.lock_key
        current = lock_manager.current(key)
        if current is None:
            console.print("[green]Lock is free[/green]")
            return

        console.print(f"Lock held by [cyan]{current.describe()}[/cyan]")
        if not yes and not click.confirm("Force-release it? Only do this if the holder is gone"):
            console.print("[yellow]Cancelled[/yellow]")
            sys.exit(1)

        lock_manager.force_release(key)
    except ReconcileError as e:
        console.print(f"[red]Error:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    console.print("[green]✓ Lock released[/green]")


@cli.group()
def backend():
    """Manage the remote state backend."""
    pass


@backend.command('init')
@click.option('--project', default='k8s-learning-project', help='Project name used in resource names')
@click.option('--bucket', help='State bucket name (default: terraform-state-<project>)')
@click.option('--table', 'lock_table', help='Lock table name (default: terraform-lock-<project>)')
@click.option('--key', default='terraform.tfstate', help='Object key of the state document')
@click.pass_context
def backend_init(ctx, project, bucket, lock_table, key):
    """Create the versioned S3 bucket and DynamoDB lock table."""
    settings = BootstrapSettings(
        project=project,
        region=ctx.obj.get('region') or 'us-east-1',
        bucket=bucket,
        lock_table=lock_table,
        key=key,
        profile=ctx.obj.get('profile'),
    )

    try:
        with console.status("[cyan]Setting up backend infrastructure...[/cyan]"):
            result = bootstrap_backend(settings)
    except ReconcileError as e:
        console.print(f"[red]Backend setup failed:[/red]\n{escape(e.to_user_message())}")
        sys.exit(1)

    console.print(Panel.fit(
        f"[green]✓ Backend ready[/green]\n\n"
        f"Bucket: {result.bucket} ({'created' if result.bucket_created else 'existing'})\n"
        f"Lock table: {result.lock_table} ({'created' if result.table_created else 'existing'})\n"
        f"Region: {result.region}",
        title="Backend Setup Complete",
        border_style="green"
    ))
    console.print("\n[bold]Backend configuration:[/bold]\n")
    console.print(result.render(), markup=False)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
