"""Atomic rclone operations on a remote runtime.

Each function runs exactly one shell command through a CommandExecutor.
The executor detects completion with a marker echoed after the command,
so multi-statement scripts would hide intermediate failures. Composite
operations chain atomic ones and stop at the first failure.

Probes (is_rclone_installed, remote_path_exists, ...) answer False when the
command itself cannot run, and log a warning. Everything else lets
executor errors propagate.
"""

from __future__ import annotations

import base64
import binascii
import logging
import posixpath
import re
import shlex
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from termsync.core.errors import ConfigurationError, ExecutorError
from termsync.core.types import CommandResult
from termsync.storage.bisync import BisyncPair
from termsync.storage.constants import (
    CHECK_FILE_NAME,
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_RCLONE_CONFIG_PATH,
    DEFAULT_SAFE_BISYNC_ARGS,
    RCLONE_CONFIG_PERMISSIONS,
    RCLONE_INSTALL_URL,
    RESYNC_FLAGS,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from termsync.core.types import CommandExecutor

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"rclone v([0-9][0-9.]*)")
_REMOTE_LINE_RE = re.compile(r"^([\w.\- ]+):$")


@dataclass
class SyncOptions:
    """Options for sync operations.

    Attributes:
        remote_path: Cloud path (e.g., "drive:/projects/proj1"), bisync path2.
        local_path: Directory on the runtime, bisync path1.
        exclude_patterns: Patterns to exclude (default DEFAULT_EXCLUDE_PATTERNS).
        verbose: Add -v.
        additional_flags: Extra rclone flags (default DEFAULT_SAFE_BISYNC_ARGS).
    """

    remote_path: str
    local_path: str
    exclude_patterns: Sequence[str] | None = None
    verbose: bool = False
    additional_flags: Sequence[str] | None = None

    @property
    def pair(self) -> BisyncPair:
        """The validated (local, remote) bisync pair."""
        return BisyncPair(local_path=self.local_path, remote_path=self.remote_path)


@dataclass
class SetupValidation:
    """Result of the read-only setup check."""

    valid: bool
    message: str


def build_rclone_flags(options: SyncOptions) -> str:
    """Build the rclone flag string for a sync invocation."""
    flags: list[str] = []
    if options.verbose:
        flags.append("-v")

    exclude_patterns = (
        DEFAULT_EXCLUDE_PATTERNS if options.exclude_patterns is None else options.exclude_patterns
    )
    for pattern in exclude_patterns:
        flags.append(f"--exclude {shlex.quote(pattern)}")

    additional_flags = (
        DEFAULT_SAFE_BISYNC_ARGS if options.additional_flags is None else options.additional_flags
    )
    flags.extend(additional_flags)
    return " ".join(flags)


def _bisync_command(options: SyncOptions, dry_run: bool = False) -> str:
    pair = options.pair
    cmd = (
        f"rclone bisync {shlex.quote(pair.local_path)} {shlex.quote(pair.remote_path)} "
        f"{build_rclone_flags(options)}"
    )
    return f"{cmd} --dry-run" if dry_run else cmd


# Probes


async def is_rclone_installed(executor: CommandExecutor) -> bool:
    """Check if rclone is installed on the runtime."""
    try:
        logger.debug("Checking if rclone is installed")
        result = await executor.execute("command -v rclone")
        return result.success
    except ExecutorError as e:
        logger.warning("Error checking rclone installation: %s", e)
        return False


async def get_rclone_version(executor: CommandExecutor) -> str | None:
    """Get the installed rclone version, e.g. "1.68.2"."""
    try:
        result = await executor.execute("rclone version")
    except ExecutorError as e:
        logger.warning("Error getting rclone version: %s", e)
        return None
    if not result.success:
        return None
    match = _VERSION_RE.search(result.output)
    return match.group(1).rstrip(".") if match else None


async def has_rclone_config(
    executor: CommandExecutor,
    config_path: str = DEFAULT_RCLONE_CONFIG_PATH,
) -> bool:
    """Check if the rclone config file exists on the runtime."""
    try:
        result = await executor.execute(f"test -f {config_path}")
        return result.success
    except ExecutorError as e:
        logger.warning("Error checking rclone config: %s", e)
        return False


async def list_rclone_remotes(executor: CommandExecutor) -> list[str]:
    """List configured remote names (without the trailing colon).

    Lines that are not a bare "name:" (echo, prompts, the completion
    marker) are ignored.
    """
    try:
        result = await executor.execute("rclone listremotes")
    except ExecutorError as e:
        logger.warning("Error listing rclone remotes: %s", e)
        return []
    if not result.success:
        return []

    remotes = []
    for line in result.output.splitlines():
        match = _REMOTE_LINE_RE.match(line.strip())
        if match and match.group(1) not in remotes:
            remotes.append(match.group(1))
    return remotes


async def is_remote_accessible(executor: CommandExecutor, remote_name: str) -> bool:
    """Check if a remote answers (rclone about)."""
    try:
        result = await executor.execute(f"rclone about {shlex.quote(remote_name + ':')} 2>&1")
        return result.success
    except ExecutorError as e:
        logger.warning("Error checking remote %s: %s", remote_name, e)
        return False


async def remote_path_exists(executor: CommandExecutor, remote_path: str) -> bool:
    """Check if a directory exists on the remote."""
    try:
        result = await executor.execute(f"rclone lsd {shlex.quote(remote_path)} 2>&1")
        return result.success
    except ExecutorError as e:
        logger.warning("Error checking remote path %s: %s", remote_path, e)
        return False


async def bisync_state_exists(executor: CommandExecutor, local_path: str, remote_path: str) -> bool:
    """Check if bisync listings exist for a (local, remote) pair."""
    pair = BisyncPair(local_path=local_path, remote_path=remote_path)
    logger.debug("Checking for bisync state file: %s", pair.state_file)
    try:
        result = await executor.execute(f'test -f "{pair.state_file}"')
        return result.success
    except ExecutorError as e:
        logger.warning("Error checking bisync state: %s", e)
        return False


# Mutating operations


async def install_rclone(executor: CommandExecutor, force_reinstall: bool = False) -> CommandResult:
    """Install rclone on the runtime.

    Args:
        executor: Command executor.
        force_reinstall: Reinstall even if rclone is present.

    Returns:
        Result of the install command, or a synthetic success when rclone
        is already installed.
    """
    logger.info("Installing rclone...")
    if not force_reinstall and await is_rclone_installed(executor):
        version = await get_rclone_version(executor) or "unknown version"
        logger.info("rclone already installed: %s", version)
        return CommandResult(
            success=True,
            output=f"rclone already installed: {version}",
            exit_code=0,
        )

    logger.debug("Executing rclone installation command")
    return await executor.execute(f'curl -fsSL "{RCLONE_INSTALL_URL}" | sudo bash')


async def create_local_dir(executor: CommandExecutor, local_path: str) -> CommandResult:
    """Create a directory on the runtime (mkdir -p)."""
    logger.debug("Creating local directory: %s", local_path)
    return await executor.execute(f"mkdir -p {local_path}")


async def create_rclone_config_dir(
    executor: CommandExecutor,
    config_path: str = DEFAULT_RCLONE_CONFIG_PATH,
) -> CommandResult:
    """Create the directory holding the rclone config."""
    return await create_local_dir(executor, posixpath.dirname(config_path))


async def upload_rclone_config(
    executor: CommandExecutor,
    config_content: str,
    config_path: str = DEFAULT_RCLONE_CONFIG_PATH,
) -> CommandResult:
    """Upload the rclone config to the runtime.

    Three commands: create the directory, write the decoded content,
    restrict permissions. The first failure is returned as is.

    Args:
        executor: Command executor.
        config_content: Base64-encoded rclone config (survives shell quoting).
        config_path: Destination path on the runtime.

    Raises:
        ConfigurationError: If config_content is not valid base64.
    """
    try:
        base64.b64decode(config_content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("rclone config content is not valid base64") from e

    logger.info("Uploading rclone configuration...")
    dir_result = await create_rclone_config_dir(executor, config_path)
    if not dir_result.success:
        logger.error("Failed to create rclone config directory")
        return dir_result

    write_result = await executor.execute(
        f"echo {config_content} | base64 -d > {config_path}",
        redact=True,
    )
    if not write_result.success:
        logger.error("Failed to write rclone config")
        return write_result

    logger.debug("Setting config permissions to %s", RCLONE_CONFIG_PERMISSIONS)
    return await executor.execute(f"chmod {RCLONE_CONFIG_PERMISSIONS} {config_path}")


async def create_remote_dir(executor: CommandExecutor, remote_path: str) -> CommandResult:
    """Create a directory on the remote."""
    logger.debug("Creating remote directory: %s", remote_path)
    return await executor.execute(f"rclone mkdir {shlex.quote(remote_path)}")


async def create_check_file(executor: CommandExecutor, remote_path: str) -> CommandResult:
    """Create the check file used by bisync --check-access."""
    logger.debug("Creating check file for bisync")
    target = f"{remote_path.rstrip('/')}/{CHECK_FILE_NAME}"
    return await executor.execute(f"rclone touch {shlex.quote(target)}")


# Composite operations


async def perform_initial_resync(executor: CommandExecutor, options: SyncOptions) -> CommandResult:
    """Establish bisync state with a full resync, remote side wins.

    Steps: remote accessible -> remote dir exists (or create) -> local dir
    -> check file -> dry-run resync -> resync. Fails fast, no cleanup.
    """
    pair = options.pair
    logger.info(
        "Performing initial resync... (local=%s, remote=%s)",
        pair.local_path,
        pair.remote_path,
    )

    if not await is_remote_accessible(executor, pair.remote_name):
        return CommandResult.failure(f"Cannot access remote '{pair.remote_name}:'")

    if not await remote_path_exists(executor, pair.remote_path):
        create_result = await create_remote_dir(executor, pair.remote_path)
        if not create_result.success:
            return create_result

    local_dir_result = await create_local_dir(executor, pair.local_path)
    if not local_dir_result.success:
        return local_dir_result

    check_file_result = await create_check_file(executor, pair.remote_path)
    if not check_file_result.success:
        return check_file_result

    base_flags = (
        DEFAULT_SAFE_BISYNC_ARGS if options.additional_flags is None else options.additional_flags
    )
    resync_options = replace(options, additional_flags=[*base_flags, *RESYNC_FLAGS])

    logger.debug("Running dry-run resync")
    dry_run_result = await executor.execute(_bisync_command(resync_options, dry_run=True))
    if not dry_run_result.success:
        logger.error("Dry-run resync failed")
        return dry_run_result

    logger.debug("Running actual resync")
    return await executor.execute(_bisync_command(resync_options))


async def perform_bidirectional_sync(
    executor: CommandExecutor,
    options: SyncOptions,
) -> CommandResult:
    """Run one incremental bisync pass.

    Falls back to perform_initial_resync when no bisync state exists for
    the pair.
    """
    pair = options.pair
    logger.info(
        "Performing bidirectional sync... (local=%s, remote=%s)",
        pair.local_path,
        pair.remote_path,
    )

    if not await bisync_state_exists(executor, pair.local_path, pair.remote_path):
        logger.warning("Bisync state does not exist, performing initial resync")
        return await perform_initial_resync(executor, options)

    return await executor.execute(_bisync_command(options))


def _one_way_flags(options: SyncOptions) -> str:
    # Bisync-only flags are rejected by rclone sync
    return build_rclone_flags(replace(options, additional_flags=options.additional_flags or ()))


async def sync_remote_to_local(executor: CommandExecutor, options: SyncOptions) -> CommandResult:
    """One-way sync, remote overwrites the runtime directory."""
    pair = options.pair
    logger.info("Syncing from remote to local... (%s -> %s)", pair.remote_path, pair.local_path)

    local_dir_result = await create_local_dir(executor, pair.local_path)
    if not local_dir_result.success:
        return local_dir_result

    return await executor.execute(
        f"rclone sync {shlex.quote(pair.remote_path)} {shlex.quote(pair.local_path)} "
        f"{_one_way_flags(options)}"
    )


async def sync_local_to_remote(executor: CommandExecutor, options: SyncOptions) -> CommandResult:
    """One-way sync, the runtime directory overwrites the remote."""
    pair = options.pair
    logger.info("Syncing from local to remote... (%s -> %s)", pair.local_path, pair.remote_path)
    return await executor.execute(
        f"rclone sync {shlex.quote(pair.local_path)} {shlex.quote(pair.remote_path)} "
        f"{_one_way_flags(options)}"
    )


async def validate_rclone_setup(executor: CommandExecutor) -> SetupValidation:
    """Read-only check: rclone installed, config present, remotes configured."""
    if not await is_rclone_installed(executor):
        return SetupValidation(valid=False, message="rclone is not installed")

    version = await get_rclone_version(executor)
    logger.debug("rclone version: %s", version or "unknown")

    if not await has_rclone_config(executor):
        return SetupValidation(valid=False, message="rclone config file not found")

    remotes = await list_rclone_remotes(executor)
    if not remotes:
        return SetupValidation(valid=False, message="No rclone remotes configured")

    logger.debug("Available remotes: %s", ", ".join(remotes))
    return SetupValidation(
        valid=True,
        message=f"rclone setup valid ({version or 'unknown version'}, {len(remotes)} remote(s))",
    )
