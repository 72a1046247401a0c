#!/usr/bin/env python3
"""
Command-line interface for configsync.

This module exposes the sync engine to operators: listing workspaces,
running a sync, checking status, testing a connection, publishing
configuration, cleanup and a foreground scheduler.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .core.auth import AUTH_BASIC, AUTH_NONE, AUTH_SSH_KEY, AUTH_TOKEN
from .core.cleanup import format_size
from .core.errors import ConfigSyncError, format_error
from .core.events import EventBus, NetworkState
from .core.merger import EnvironmentMergeMode
from .core.models import SyncResult, SyncStatus, Workspace
from .core.progress import ProgressEvent, ProgressSink, StepStatus
from .core.scheduler import SyncScheduler
from .core.settings import EngineSettings, load_settings
from .core.sync import GitSyncService
from .utils.logger import get_logger, setup_logging

# Rich console for formatted output
console = Console()

STATUS_COLORS = {
    SyncStatus.UP_TO_DATE: "green",
    SyncStatus.NEEDS_PULL: "yellow",
    SyncStatus.NEEDS_PUSH: "yellow",
    SyncStatus.CONFLICT: "red bold",
    SyncStatus.ERROR: "red",
}

STEP_ICONS = {
    StepStatus.RUNNING: "[cyan]…[/cyan]",
    StepStatus.SUCCESS: "[green]✓[/green]",
    StepStatus.WARNING: "[yellow]⚠[/yellow]",
    StepStatus.ERROR: "[red]✗[/red]",
}


def initialize_service(settings: EngineSettings) -> GitSyncService:
    """Build the sync service from settings."""
    try:
        return GitSyncService(settings)
    except ConfigSyncError as e:
        console.print(f"[red]Failed to initialize sync service: {e}[/red]")
        sys.exit(1)


def require_workspace(settings: EngineSettings, workspace_id: str) -> Workspace:
    workspace = settings.workspace(workspace_id)
    if workspace is None:
        console.print(f"[red]Workspace '[cyan]{workspace_id}[/cyan]' not found[/red]")
        sys.exit(1)
    return workspace


def build_auth_data(auth_type: str, token: Optional[str], username: Optional[str],
                    password: Optional[str], ssh_key: Optional[Path]) -> dict:
    if auth_type == AUTH_TOKEN:
        return {'token': token}
    if auth_type == AUTH_BASIC:
        return {'username': username, 'password': password}
    if auth_type == AUTH_SSH_KEY:
        data = {'private_key': ssh_key.read_text(encoding='utf-8') if ssh_key else None}
        public = ssh_key.with_name(ssh_key.name + '.pub') if ssh_key else None
        if public is not None and public.exists():
            data['public_key'] = public.read_text(encoding='utf-8')
        return data
    return {}


def format_step(event: ProgressEvent) -> str:
    """One summary line; a step still running when the operation ended is unfinished."""
    details = f" [dim]{event.details}[/dim]" if event.details else ""
    if event.status == StepStatus.RUNNING:
        details += " [dim](not finished)[/dim]"
    return f"  {STEP_ICONS[event.status]} {event.step}{details}"


def format_steps(progress: ProgressSink) -> None:
    for event in progress.summarize():
        console.print(format_step(event))


def format_sync_result(result: SyncResult) -> None:
    """Format and display a sync result."""
    if result.success:
        console.print(f"[green]✓ {result.message}[/green]")
        if result.pulled:
            console.print(f"  Pulled {result.pulled} commits")
        if result.pushed:
            console.print(f"  Pushed {result.pushed} commits")
        if result.local_changes_committed:
            console.print(f"  Committed local changes ({result.commit_hash[:8]})")
        for problem in result.config_errors:
            console.print(f"  [yellow]⚠ {problem}[/yellow]")
    elif result.status == SyncStatus.CONFLICT:
        console.print(f"[yellow]⚠ {result.message}[/yellow]")
        if result.state:
            console.print(f"  {result.state.ahead} local commits, {result.state.behind} remote commits")
        console.print("  Run 'configsync sync --auto-resolve' or resolve the conflict in the working copy.")
    else:
        console.print("[red]✗ Sync failed[/red]")
        if result.error:
            console.print(format_error(result.error))
        else:
            console.print(f"  {result.message}")


# Main CLI group
@click.group()
@click.option('--settings', 'settings_path', type=click.Path(path_type=Path),
              help='Path to settings file (YAML or TOML)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(path_type=Path), help='Log file path')
@click.option('--plain', is_flag=True, help='Plain coloured log output instead of Rich')
@click.pass_context
def cli(ctx, settings_path: Optional[Path], verbose: bool, log_file: Optional[Path], plain: bool):
    """configsync - Git-backed configuration synchronization."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(settings_path)
    except ConfigSyncError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    setup_logging(
        level='DEBUG' if verbose else settings.log_level,
        log_file=log_file,
        verbose=verbose,
        plain=plain,
    )

    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


# Workspaces command
@cli.command()
@click.pass_context
def workspaces(ctx):
    """List configured workspaces and their last sync state."""
    settings: EngineSettings = ctx.obj['settings']
    service = initialize_service(settings)

    if not settings.workspaces:
        console.print("[dim]No workspaces configured.[/dim]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="green")
    table.add_column("Kind")
    table.add_column("Branch", style="magenta")
    table.add_column("Auto-sync")
    table.add_column("Last state")

    for workspace in settings.workspaces:
        state = service.store.load_sync_state(workspace.id)
        if state is None:
            state_text = "[dim]never synced[/dim]"
        else:
            color = STATUS_COLORS.get(state.status, "white")
            state_text = f"[{color}]{state.status.value}[/]"
        table.add_row(
            workspace.id,
            workspace.name,
            workspace.kind,
            workspace.branch if workspace.is_syncable else "-",
            "yes" if workspace.schedules_auto_sync else "no",
            state_text,
        )

    console.print(table)


# Sync command
@cli.command()
@click.argument('workspace_id', type=str)
@click.option('--auto-resolve', is_flag=True, help='Rebase and push when branches diverged')
@click.option('--commit', 'commit_changes', is_flag=True, help='Commit local changes first (implies --auto-resolve)')
@click.option('--no-import', is_flag=True, help='Do not import the pulled configuration')
@click.pass_context
def sync(ctx, workspace_id: str, auto_resolve: bool, commit_changes: bool, no_import: bool):
    """Synchronize a workspace with its repository."""
    settings: EngineSettings = ctx.obj['settings']
    workspace = require_workspace(settings, workspace_id)
    service = initialize_service(settings)
    progress = ProgressSink()

    async def run():
        if commit_changes:
            result = await service.auto_sync_workspace(workspace, progress=progress)
        else:
            result = await service.sync_workspace(workspace, auto_resolve=auto_resolve, progress=progress)
        report = None
        if result.success and result.data is not None and not no_import:
            report = await service.merger.apply(workspace.id, result.data)
        return result, report

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as spinner:
        spinner.add_task(f"Syncing {workspace.name}...", total=None)
        result, report = asyncio.run(run())

    if ctx.obj['verbose']:
        format_steps(progress)
    format_sync_result(result)

    if report is not None:
        console.print(f"  Imported configuration: {report.writes} documents updated")
        for warning in report.warnings:
            console.print(f"  [yellow]⚠ {warning}[/yellow]")

    if not result.success:
        sys.exit(1)


# Import command
@cli.command(name='import')
@click.argument('workspace_id', type=str)
@click.option('--replace', is_flag=True, help='Apply remote environment values even when empty')
@click.option('--force', is_flag=True, help='Write environments even when the data-loss guard blocks it')
@click.pass_context
def import_config(ctx, workspace_id: str, replace: bool, force: bool):
    """Import the configuration from a workspace's working copy."""
    settings: EngineSettings = ctx.obj['settings']
    workspace = require_workspace(settings, workspace_id)
    service = initialize_service(settings)

    if not service.has_working_copy(workspace.id):
        console.print("[red]Repository has not been cloned yet. Run 'configsync sync' first.[/red]")
        sys.exit(1)

    document = service.load_workspace_config(service.repo_dir(workspace.id), workspace.config_path)
    problems = service.validate_config(document)
    if document is None or problems:
        console.print("[red]✗ Configuration is not valid:[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        sys.exit(1)

    mode = EnvironmentMergeMode.REPLACE if replace else EnvironmentMergeMode.MERGE
    report = asyncio.run(service.merger.apply(workspace.id, document, mode=mode, force=force))

    if report.environments_blocked:
        console.print("[yellow]⚠ Environment update blocked: it would remove every variable value.[/yellow]")
        console.print("  Re-run with --force to apply it anyway (a backup is taken).")
    if report.backup_path:
        console.print(f"[dim]Backup written to {report.backup_path}[/dim]")
    for warning in report.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    console.print(f"[green]✓ Imported configuration ({report.writes} documents updated)[/green]")


# Status command
@cli.command()
@click.argument('workspace_id', type=str)
@click.pass_context
def status(ctx, workspace_id: str):
    """Show how a workspace relates to its remote branch."""
    settings: EngineSettings = ctx.obj['settings']
    workspace = require_workspace(settings, workspace_id)
    service = initialize_service(settings)

    state = asyncio.run(service.check_status(workspace))
    color = STATUS_COLORS.get(state.status, "white")

    lines = [
        f"[cyan]Workspace:[/cyan] {workspace.name} ({workspace.id})",
        f"[cyan]Branch:[/cyan] {workspace.branch}",
        f"[cyan]Status:[/cyan] [{color}]{state.status.value}[/]",
    ]
    if state.local_commit:
        lines.append(f"[cyan]Local:[/cyan] {state.local_commit[:8]}  [cyan]Remote:[/cyan] {(state.remote_commit or '')[:8]}")
    if state.ahead or state.behind:
        lines.append(f"[cyan]Ahead:[/cyan] {state.ahead}  [cyan]Behind:[/cyan] {state.behind}")
    if state.last_error:
        lines.append(f"[red]Error:[/red] {state.last_error}")

    previous = service.store.load_sync_state(workspace.id)
    if previous and previous.last_sync:
        lines.append(f"[dim]Last sync: {previous.last_sync}[/dim]")

    console.print(Panel("\n".join(lines), title="Sync Status"))


# Test connection command
@cli.command(name='test-connection')
@click.argument('url', type=str)
@click.option('--branch', default='main', show_default=True, help='Branch to check')
@click.option('--auth-type', type=click.Choice([AUTH_NONE, AUTH_BASIC, AUTH_TOKEN, AUTH_SSH_KEY]),
              default=AUTH_NONE, show_default=True, help='Authentication type')
@click.option('--token', type=str, help='Access token')
@click.option('--username', type=str, help='Username for basic auth')
@click.option('--password', type=str, help='Password for basic auth')
@click.option('--ssh-key', type=click.Path(exists=True, dir_okay=False, path_type=Path), help='Private key file')
@click.option('--config-path', default='config/', show_default=True, help='Configuration directory')
@click.option('--write', 'check_write_access', is_flag=True, help='Also require write access')
@click.option('--invite', 'is_invite', is_flag=True, help='Joining an existing workspace')
@click.pass_context
def test_connection(ctx, url: str, branch: str, auth_type: str, token: Optional[str], username: Optional[str],
                    password: Optional[str], ssh_key: Optional[Path], config_path: str,
                    check_write_access: bool, is_invite: bool):
    """Check that a repository is reachable with the given credentials."""
    service = initialize_service(ctx.obj['settings'])
    auth_data = build_auth_data(auth_type, token, username, password, ssh_key)

    result = asyncio.run(service.test_connection(
        url,
        branch=branch,
        auth_type=auth_type,
        auth_data=auth_data,
        config_path=config_path,
        check_write_access=check_write_access,
        is_invite=is_invite,
    ))

    for event in result.steps:
        console.print(format_step(event))

    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")

    if result.success:
        console.print(Panel(
            f"[green]✓ Repository is accessible[/green]\n"
            f"[cyan]Default branch:[/cyan] {result.default_branch}\n"
            f"[cyan]Branch '{branch}':[/cyan] {'found' if result.branch_exists else 'missing'}",
            title="Connection Test"
        ))
    else:
        if result.classified is not None:
            console.print(format_error(result.classified))
        else:
            console.print(f"[red]✗ {result.error}[/red]")
        sys.exit(1)


# Publish command
@cli.command()
@click.argument('workspace_id', type=str)
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--message', '-m', required=True, help='Commit message')
@click.option('--author', type=str, help='Commit author name')
@click.option('--email', type=str, help='Commit author email')
@click.pass_context
def publish(ctx, workspace_id: str, files: tuple, message: str, author: Optional[str], email: Optional[str]):
    """Commit local configuration files to a workspace's repository."""
    settings: EngineSettings = ctx.obj['settings']
    workspace = require_workspace(settings, workspace_id)
    service = initialize_service(settings)

    contents = {path.name: path.read_text(encoding='utf-8') for path in files}

    try:
        commit_hash = asyncio.run(service.publish_configuration(
            workspace.repository_url,
            contents,
            message,
            branch=workspace.branch,
            config_path=workspace.config_path,
            auth_type=workspace.auth_type,
            auth_data=workspace.auth_data,
            author=author,
            email=email,
        ))
    except ConfigSyncError as e:
        console.print(f"[red]Failed to publish configuration: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Published {len(contents)} files as [cyan]{commit_hash[:8]}[/cyan][/green]")


# Cleanup command
@cli.command()
@click.option('--force', is_flag=True, help='Ignore retention windows')
@click.option('--stats', 'show_stats', is_flag=True, help='Only show statistics')
@click.option('--workspace', 'workspace_id', type=str, help='Remove one workspace working copy')
@click.pass_context
def cleanup(ctx, force: bool, show_stats: bool, workspace_id: Optional[str]):
    """Remove old working copies, scratch directories and SSH keys."""
    service = initialize_service(ctx.obj['settings'])

    if workspace_id:
        if service.cleanup_workspace(workspace_id):
            console.print(f"[green]✓ Removed working copy of '[cyan]{workspace_id}[/cyan]'[/green]")
        else:
            console.print("[red]✗ Failed to remove working copy[/red]")
            sys.exit(1)
        return

    stats = service.cleanup.stats()
    if show_stats:
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Location", style="cyan")
        table.add_column("Entries", style="green")
        table.add_column("Old", style="yellow")
        table.add_column("Size", style="magenta")
        table.add_row(stats['repos_dir']['path'], str(stats['repos_dir']['file_count']),
                      str(stats['repos_dir']['old_file_count']), format_size(stats['repos_dir']['size']))
        table.add_row(stats['ssh_dir']['path'], str(stats['ssh_dir']['key_count']),
                      str(stats['ssh_dir']['old_key_count']), "-")
        console.print(table)
        needed = service.cleanup.is_cleanup_needed(stats)
        console.print(f"\n[dim]Cleanup needed: {'yes' if needed else 'no'}[/dim]")
        return

    results = service.perform_cleanup(force=force)
    console.print(
        f"[green]✓ Cleanup complete[/green]: "
        f"{results['temp_files']['cleaned']} temporary entries, "
        f"{results['old_repos']['cleaned']} repositories, "
        f"{results['ssh_keys']['cleaned']} key files, "
        f"{format_size(results['total_freed'])} freed"
    )
    for category in ('temp_files', 'old_repos', 'ssh_keys'):
        for error in results[category]['errors']:
            console.print(f"  [red]✗ {error}[/red]")


# Run command
@cli.command()
@click.argument('workspace_id', type=str)
@click.option('--interval', type=float, help='Seconds between syncs (defaults to settings)')
@click.pass_context
def run(ctx, workspace_id: str, interval: Optional[float]):
    """Run the background scheduler for a workspace until interrupted."""
    settings: EngineSettings = ctx.obj['settings']
    require_workspace(settings, workspace_id)
    service = initialize_service(settings)
    logger = get_logger(f"{__name__}.run")

    events = EventBus()
    events.subscribe(lambda channel, payload: logger.info(f"{channel}: {payload}"))

    async def main_loop():
        scheduler = SyncScheduler(service, settings, network=NetworkState(), events=events, interval=interval)
        scheduler.on_workspace_switch(workspace_id)
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await scheduler.shutdown()

    console.print(f"[cyan]Scheduling sync for '{workspace_id}'. Press Ctrl+C to stop.[/cyan]")
    asyncio.run(main_loop())


def main():
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Unexpected error: {e}[/red]")
        sys.exit(1)


if __name__ == '__main__':
    main()
