"""Exception hierarchy for termsync.

Protocol failures (the channel is broken) are raised. A command that ran
and exited non-zero is not an exception: it comes back as a CommandResult.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from termsync.core.types import CommandResult


class TermsyncError(Exception):
    """Base exception for termsync errors."""


class ExecutorError(TermsyncError):
    """Base exception for command executor failures."""


class TerminalConnectionError(ExecutorError, ConnectionError):
    """The terminal channel never reached (or lost) the open state."""


class ConnectionTimeoutError(TerminalConnectionError):
    """No open channel became available within the connect timeout."""


class CommandTimeoutError(ExecutorError, TimeoutError):
    """No completion marker was seen in time. The channel was force-closed."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command did not complete within {timeout:.0f}s")


class ExecutorDisposedError(ExecutorError):
    """The executor was disposed and cannot be used again."""


class ConfigurationError(TermsyncError):
    """Local storage configuration is missing or invalid."""


class ValidationError(TermsyncError):
    """A precondition was not met (bad remote path, unreachable remote)."""


class OperationFailedError(TermsyncError):
    """A remote step finished with a non-zero exit status.

    Raised by the storage state machine to abort a multi-phase flow.

    Attributes:
        result: The failing command result.
    """

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result
