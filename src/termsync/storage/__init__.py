"""Storage sync on remote runtimes with rclone bisync.

Architecture:
    StorageIntegration → operations → CommandExecutor → terminal channel

Components:
- **StorageIntegration**: Per-endpoint status state machine (setup, sync, validate)
- **operations**: Atomic rclone operations, one shell command each
- **bisync**: Path sanitization and bisync state file naming
- **StorageConfigManager**: Workspace storage config (keyring + workspace binding)
- **rclone**: Local rclone.conf parsing, validation and encoding
- **AutoSyncScheduler**: Periodic sync of READY endpoints
"""

from termsync.storage.bisync import (
    BisyncPair,
    is_remote_path,
    parse_remote_path,
    sanitize_path,
    state_identifier,
)
from termsync.storage.config import StorageConfig, StorageConfigManager, WorkspaceBinding
from termsync.storage.integration import StatusEvents, StorageIntegration, local_path_for
from termsync.storage.operations import SetupValidation, SyncOptions
from termsync.storage.scheduler import AutoSyncScheduler, clamp_interval

__all__ = [
    # Bisync naming
    "BisyncPair",
    "is_remote_path",
    "parse_remote_path",
    "sanitize_path",
    "state_identifier",
    # Configuration
    "StorageConfig",
    "StorageConfigManager",
    "WorkspaceBinding",
    # State machine
    "StatusEvents",
    "StorageIntegration",
    "local_path_for",
    # Operations
    "SetupValidation",
    "SyncOptions",
    # Scheduling
    "AutoSyncScheduler",
    "clamp_interval",
]
