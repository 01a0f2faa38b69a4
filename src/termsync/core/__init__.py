"""Core module - Endpoint descriptor, shared types and errors."""

from termsync.core.config import Endpoint, ExecutorConfig
from termsync.core.errors import (
    CommandTimeoutError,
    ConfigurationError,
    ConnectionTimeoutError,
    ExecutorDisposedError,
    ExecutorError,
    OperationFailedError,
    TerminalConnectionError,
    TermsyncError,
    ValidationError,
)
from termsync.core.types import (
    CommandExecutor,
    CommandResult,
    SetupResult,
    StatusChange,
    StorageStatus,
)

__all__ = [
    # Config
    "Endpoint",
    "ExecutorConfig",
    # Errors
    "CommandTimeoutError",
    "ConfigurationError",
    "ConnectionTimeoutError",
    "ExecutorDisposedError",
    "ExecutorError",
    "OperationFailedError",
    "TerminalConnectionError",
    "TermsyncError",
    "ValidationError",
    # Types
    "CommandExecutor",
    "CommandResult",
    "SetupResult",
    "StatusChange",
    "StorageStatus",
]
