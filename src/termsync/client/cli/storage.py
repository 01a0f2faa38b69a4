"""Storage commands for termsync CLI.

Commands:
- configure: Configure rclone storage for a workspace folder
- setup: Install rclone on an endpoint and run the initial resync
- sync: Run a bidirectional sync (once, or periodically with --watch)
- validate: Check the rclone setup of an endpoint (read-only)
- status: Show the storage status of an endpoint
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from termsync.client.cli.config import require_endpoint
from termsync.client.executor import TerminalExecutor
from termsync.core.errors import ConfigurationError
from termsync.core.types import StorageStatus
from termsync.storage import rclone
from termsync.storage.config import StorageConfig, StorageConfigManager
from termsync.storage.constants import DEFAULT_SYNC_INTERVAL_SECONDS
from termsync.storage.integration import StorageIntegration
from termsync.storage.scheduler import AutoSyncScheduler

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from termsync.core.config import Endpoint
    from termsync.core.types import SetupResult, StatusChange

workspace_option = click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace folder (default: current directory).",
)


def _workspace(path: Path | None) -> Path:
    return (path or Path.cwd()).expanduser()


def _echo_status(change: StatusChange) -> None:
    click.echo(f"  [{change.endpoint_id}] {change.status.value}")


def _report(result: SetupResult) -> None:
    """Print a flow result, exiting with status 1 on failure."""
    if result.success:
        click.echo(result.message or f"Status: {result.status.value}")
        return
    click.echo(f"Error: {result.error or result.message or result.status.value}", err=True)
    sys.exit(1)


async def _with_integration(
    endpoint: Endpoint,
    workspace: Path,
    flow: Callable[[StorageIntegration, TerminalExecutor], Awaitable[SetupResult]],
) -> SetupResult:
    integration = StorageIntegration(StorageConfigManager(workspace))
    integration.subscribe(_echo_status)
    executor = TerminalExecutor(endpoint)
    try:
        return await flow(integration, executor)
    finally:
        await executor.dispose()


@click.command()
@click.option(
    "--rclone-config",
    "rclone_config",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to rclone.conf (default: platform rclone config path).",
)
@click.option(
    "--remote-root",
    required=True,
    help='Remote folder to sync with, e.g. "drive:/projects/proj1".',
)
@workspace_option
def configure(rclone_config: Path | None, remote_root: str, workspace: Path | None) -> None:
    """Configure rclone storage for a workspace folder.

    The rclone config is validated, encoded and stored in the system
    keyring together with the remote folder.
    """
    config_path = (rclone_config or rclone.default_config_path()).expanduser()
    workspace_path = _workspace(workspace)

    validation = rclone.validate_config(config_path)
    if not validation.valid:
        click.echo(f"Error: {validation.error}", err=True)
        sys.exit(1)

    remote_validation = rclone.validate_remote_path(remote_root, config_path)
    if not remote_validation.valid:
        click.echo(f"Error: {remote_validation.error}", err=True)
        sys.exit(1)

    manager = StorageConfigManager(workspace_path)
    if manager.has_remote_path_changed(remote_root):
        click.echo("Warning: This workspace is bound to a different remote folder.", err=True)
        if not click.confirm("Rebind it to the new remote folder?"):
            sys.exit(0)

    try:
        stored = manager.save(
            StorageConfig(
                rclone_config_path=str(config_path),
                remote_root_path=remote_root,
                rclone_config_content=rclone.encode_config(config_path),
            )
        )
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Storage configured.")
    click.echo(f"Workspace: {manager.workspace}")
    click.echo(f"Remote: {stored.remote_root_path}")


@click.command()
@click.argument("endpoint_name")
@workspace_option
def setup(endpoint_name: str, workspace: Path | None) -> None:
    """Set up storage on ENDPOINT_NAME (install rclone, upload config, resync)."""
    endpoint = require_endpoint(endpoint_name)
    click.echo(f"Setting up storage on '{endpoint_name}'...")

    async def flow(integration: StorageIntegration, executor: TerminalExecutor) -> SetupResult:
        return await integration.setup_on_server(executor)

    _report(asyncio.run(_with_integration(endpoint, _workspace(workspace), flow)))


@click.command()
@click.argument("endpoint_name")
@workspace_option
@click.option("--watch", is_flag=True, default=False, help="Keep syncing periodically.")
@click.option(
    "--interval",
    type=int,
    default=DEFAULT_SYNC_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between syncs in watch mode (120-3600).",
)
def sync(endpoint_name: str, workspace: Path | None, watch: bool, interval: int) -> None:
    """Run a bidirectional sync on ENDPOINT_NAME.

    The endpoint must have been set up first. With --watch, syncs again
    every --interval seconds until interrupted.
    """
    endpoint = require_endpoint(endpoint_name)

    async def flow(integration: StorageIntegration, executor: TerminalExecutor) -> SetupResult:
        check = await integration.check_and_initialize_status(executor)
        if check.status is not StorageStatus.READY:
            return check
        result = await integration.sync_now(executor)
        if not watch or not result.success:
            return result

        scheduler = AutoSyncScheduler(integration, lambda: [executor], interval)
        scheduler.start()
        click.echo(f"Watching, next sync in {scheduler.interval}s (Ctrl+C to stop)")
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()
        return result

    try:
        result = asyncio.run(_with_integration(endpoint, _workspace(workspace), flow))
    except KeyboardInterrupt:
        click.echo("\nStopped.")
        return
    if result.status is StorageStatus.SETUP_REQUIRED:
        click.echo(
            f"Error: {result.message}. Run 'termsync setup {endpoint_name}' first.", err=True
        )
        sys.exit(1)
    _report(result)


@click.command()
@click.argument("endpoint_name")
@workspace_option
def validate(endpoint_name: str, workspace: Path | None) -> None:
    """Check the rclone setup on ENDPOINT_NAME without changing it."""
    endpoint = require_endpoint(endpoint_name)

    async def flow(integration: StorageIntegration, executor: TerminalExecutor) -> SetupResult:
        return await integration.validate_setup(executor)

    _report(asyncio.run(_with_integration(endpoint, _workspace(workspace), flow)))


@click.command()
@click.argument("endpoint_name")
@workspace_option
def status(endpoint_name: str, workspace: Path | None) -> None:
    """Show the storage status of ENDPOINT_NAME."""
    endpoint = require_endpoint(endpoint_name)
    workspace_path = _workspace(workspace)
    manager = StorageConfigManager(workspace_path)

    config = manager.get()
    if config is None:
        click.echo("Storage: not configured for this workspace")
    else:
        click.echo(f"Remote: {config.remote_root_path}")
        click.echo(f"Enabled: {'yes' if config.enabled else 'no'}")
        last_sync = config.last_sync.isoformat() if config.last_sync else "never"
        click.echo(f"Last sync: {last_sync}")

    async def flow(integration: StorageIntegration, executor: TerminalExecutor) -> SetupResult:
        return await integration.check_and_initialize_status(executor)

    result = asyncio.run(_with_integration(endpoint, workspace_path, flow))
    click.echo(f"Status: {result.status.value}")
    if result.message:
        click.echo(result.message)
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)
