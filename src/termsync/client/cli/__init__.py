"""Command-line interface for termsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- endpoint add/list/remove: Manage runtime endpoints
- configure: Configure rclone storage for a workspace folder
- setup: Set up storage on an endpoint
- sync: Bidirectional sync with an endpoint
- validate: Check the rclone setup of an endpoint
- status: Show the storage status of an endpoint
- exec: Run one shell command on an endpoint
"""

from __future__ import annotations

import logging
import sys

import click

from termsync.client.cli.config import (
    get_config_file,
    load_config,
    load_endpoints,
    require_endpoint,
    save_config,
)
from termsync.client.cli.endpoint import endpoint
from termsync.client.cli.exec import exec_cmd
from termsync.client.cli.storage import configure, setup, status, sync, validate


def setup_logging(level: int) -> None:
    """Configure the termsync logger to write to stderr.

    Args:
        level: Logging level for the termsync logger.
    """
    root_logger = logging.getLogger("termsync")
    root_logger.setLevel(level)

    # Replace handlers from a previous invocation
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)


@click.group()
@click.version_option(package_name="termsync")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show progress logs.")
@click.option("--debug", is_flag=True, default=False, help="Show debug logs and command output.")
def cli(verbose: bool, debug: bool) -> None:
    """termsync - rclone bisync on remote runtimes over their terminal."""
    if debug:
        setup_logging(logging.DEBUG)
    elif verbose:
        setup_logging(logging.INFO)
    else:
        setup_logging(logging.WARNING)


# Endpoint commands
cli.add_command(endpoint)

# Storage commands
cli.add_command(configure)
cli.add_command(setup)
cli.add_command(sync)
cli.add_command(validate)
cli.add_command(status)

# Remote shell
cli.add_command(exec_cmd)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    "setup_logging",
    # Config utilities
    "get_config_file",
    "load_config",
    "load_endpoints",
    "require_endpoint",
    "save_config",
]
