"""Remote command execution for termsync CLI.

Commands:
- exec: Run one shell command on an endpoint
"""

from __future__ import annotations

import asyncio
import shlex
import sys

import click

from termsync.client.cli.config import require_endpoint
from termsync.client.executor import TerminalExecutor, strip_framing
from termsync.core.errors import ExecutorError
from termsync.core.types import CommandResult


@click.command("exec")
@click.argument("endpoint_name")
@click.argument("command", nargs=-1, required=True)
def exec_cmd(endpoint_name: str, command: tuple[str, ...]) -> None:
    """Run COMMAND on ENDPOINT_NAME and print its output.

    A single COMMAND argument is sent as a shell line as is; several
    arguments are shell-quoted and joined. Exits with the remote exit status.

    Examples:

        termsync exec my-runtime -- nvidia-smi

        termsync exec my-runtime -- ls -la /content

        termsync exec my-runtime "df -h | grep content"
    """
    endpoint = require_endpoint(endpoint_name)
    line = command[0] if len(command) == 1 else shlex.join(command)

    async def run() -> CommandResult:
        executor = TerminalExecutor(endpoint)
        try:
            return await executor.execute(line)
        finally:
            await executor.dispose()

    try:
        result = asyncio.run(run())
    except ExecutorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    output = strip_framing(result.output)
    if output:
        click.echo(output)
    if not result.success:
        sys.exit(result.exit_code or 1)
