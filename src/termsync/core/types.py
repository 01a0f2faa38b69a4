"""Shared types for termsync.

This module defines the result and status types exchanged between the
executor, the storage operations and the storage state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class StorageStatus(str, Enum):
    """Storage setup status of one endpoint.

    - NOT_CONFIGURED: Workspace storage config not set or disabled
    - SETUP_REQUIRED: Configured, but the endpoint needs setup
    - CHECKING: Validating setup on the endpoint
    - INSTALLING: Installing rclone or uploading its config
    - SYNCING: A sync pass is running
    - READY: Fully set up, ready to sync
    - ERROR: The last setup or sync failed
    """

    NOT_CONFIGURED = "not_configured"
    SETUP_REQUIRED = "setup_required"
    CHECKING = "checking"
    INSTALLING = "installing"
    SYNCING = "syncing"
    READY = "ready"
    ERROR = "error"

    @property
    def is_transient(self) -> bool:
        """Whether a flow is currently running for this status."""
        return self in (StorageStatus.CHECKING, StorageStatus.INSTALLING, StorageStatus.SYNCING)


@dataclass
class CommandResult:
    """Result of one command run on the remote shell.

    Attributes:
        success: True when the command completed with exit code 0.
        output: Normalized terminal output, echo included.
        exit_code: Exit status reported by the completion marker.
        error: Human-readable failure reason set by higher layers.
    """

    success: bool
    output: str
    exit_code: int | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str, exit_code: int = 1) -> CommandResult:
        """Create a failed result that never reached the remote."""
        return cls(success=False, output="", exit_code=exit_code, error=error)


@dataclass(frozen=True)
class StatusChange:
    """Status transition event fired by the storage state machine."""

    endpoint_id: str
    status: StorageStatus


@dataclass
class SetupResult:
    """Result of a storage setup, sync or validation flow."""

    success: bool
    status: StorageStatus
    message: str | None = None
    error: str | None = None


class CommandExecutor(Protocol):
    """Protocol for running one shell command at a time on an endpoint."""

    @property
    def endpoint_id(self) -> str:
        """ID of the endpoint commands run on."""
        ...

    async def execute(self, cmd: str, *args: str, redact: bool = False) -> CommandResult:
        """Run a command and wait for its exit status."""
        ...

    async def dispose(self) -> None:
        """Release the channel. The executor is unusable afterwards."""
        ...
