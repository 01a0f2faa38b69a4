"""Storage integration: per-endpoint sync status and setup flows.

This module provides:
- StorageIntegration: drives rclone setup and sync on endpoints
- StatusEvents: thread-safe status-change event stream

State machine:
    NOT_CONFIGURED -> {SETUP_REQUIRED | READY} -> CHECKING
        -> {INSTALLING -> SYNCING -> READY} | ERROR
    READY <-> SYNCING on every sync request. ERROR is left by running
    setup again.

Statuses live in memory only. After a restart they are re-derived from
the endpoint with check_and_initialize_status().
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from termsync.client.executor import strip_framing
from termsync.core.errors import ConfigurationError, OperationFailedError
from termsync.core.types import SetupResult, StatusChange, StorageStatus
from termsync.storage.constants import DEFAULT_LOCAL_PATH
from termsync.storage.operations import (
    SyncOptions,
    install_rclone,
    is_rclone_installed,
    perform_bidirectional_sync,
    perform_initial_resync,
    upload_rclone_config,
    validate_rclone_setup,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from termsync.core.types import CommandExecutor, CommandResult
    from termsync.storage.config import StorageConfig, StorageConfigManager

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS_RE = re.compile(r"[^a-zA-Z0-9-]")


def local_path_for(endpoint_id: str, base_path: str = DEFAULT_LOCAL_PATH) -> str:
    """Get the per-endpoint sync directory on the runtime.

    Example:
        local_path_for("aca269fc-5f7d") -> "/content_aca269fc-5f7d"
    """
    return f"{base_path}_{_UNSAFE_ID_CHARS_RE.sub('_', endpoint_id)}"


def _failure_detail(result: CommandResult) -> str:
    if result.error:
        return result.error
    output = strip_framing(result.output)
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if lines:
        return lines[-1]
    return f"exit code {result.exit_code}"


class StatusEvents:
    """Status change event stream.

    Listeners are called synchronously, in subscription order. Emitting
    and subscribing are safe from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Callable[[StatusChange], None]] = []

    def subscribe(self, listener: Callable[[StatusChange], None]) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, change: StatusChange) -> None:
        """Deliver a change to every listener.

        A failing listener is logged and does not stop delivery.
        """
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Status listener failed for %s", change.endpoint_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class StorageIntegration:
    """Manages storage setup and sync on endpoints.

    Each flow returns a SetupResult; expected failures never raise.

    Usage:
        integration = StorageIntegration(StorageConfigManager(workspace))
        unsubscribe = integration.subscribe(on_status_change)
        result = await integration.setup_on_server(executor)
        if result.success:
            await integration.sync_now(executor)
    """

    def __init__(
        self,
        config_manager: StorageConfigManager,
        local_base_path: str = DEFAULT_LOCAL_PATH,
    ) -> None:
        """Initialize the integration.

        Args:
            config_manager: Workspace storage configuration store.
            local_base_path: Prefix of per-endpoint directories on runtimes.
        """
        self._config_manager = config_manager
        self._local_base_path = local_base_path
        self._statuses: dict[str, StorageStatus] = {}
        self._lock = threading.Lock()
        self._events = StatusEvents()

    @property
    def events(self) -> StatusEvents:
        """The status change event stream."""
        return self._events

    def subscribe(self, listener: Callable[[StatusChange], None]) -> Callable[[], None]:
        """Subscribe to status changes. Returns an unsubscribe callable."""
        return self._events.subscribe(listener)

    def get_status(self, endpoint_id: str) -> StorageStatus:
        """Get the storage status of an endpoint (NOT_CONFIGURED if unknown)."""
        with self._lock:
            return self._statuses.get(endpoint_id, StorageStatus.NOT_CONFIGURED)

    def is_configured(self) -> bool:
        """Check if storage is configured and enabled for the workspace."""
        return self._config_manager.is_configured()

    def local_path_for(self, endpoint_id: str) -> str:
        """Get the sync directory of an endpoint on its runtime."""
        return local_path_for(endpoint_id, self._local_base_path)

    def remove_server(self, endpoint_id: str) -> None:
        """Forget the status of a removed endpoint. Remote state is untouched."""
        with self._lock:
            self._statuses.pop(endpoint_id, None)
        logger.debug("Removed storage status for endpoint: %s", endpoint_id)

    async def check_and_initialize_status(self, executor: CommandExecutor) -> SetupResult:
        """Derive the status of an endpoint from its actual rclone setup.

        Used after (re)connecting, when the in-memory status may be missing
        although the runtime is already set up. Endpoints that are READY or
        have a flow running are left alone.
        """
        endpoint_id = executor.endpoint_id
        logger.info("Checking storage status on endpoint: %s", endpoint_id)

        current = self.get_status(endpoint_id)
        if current.is_transient or current is StorageStatus.READY:
            logger.debug(
                "Endpoint %s already has status %s, skipping check",
                endpoint_id,
                current.value,
            )
            return SetupResult(success=current is StorageStatus.READY, status=current)

        self._update_status(endpoint_id, StorageStatus.CHECKING)
        try:
            if self._load_config() is None:
                logger.debug("Storage not enabled in workspace config")
                return self._not_configured(endpoint_id)

            validation = await validate_rclone_setup(executor)
            if validation.valid:
                logger.info("Storage is ready on endpoint %s", endpoint_id)
                self._update_status(endpoint_id, StorageStatus.READY)
                return SetupResult(
                    success=True,
                    status=StorageStatus.READY,
                    message=validation.message,
                )

            logger.info("Storage not set up on endpoint %s: %s", endpoint_id, validation.message)
            self._update_status(endpoint_id, StorageStatus.SETUP_REQUIRED)
            return SetupResult(
                success=False,
                status=StorageStatus.SETUP_REQUIRED,
                message=validation.message,
            )
        except Exception as e:
            logger.error("Error checking storage status on %s: %s", endpoint_id, e)
            return self._error(endpoint_id, e)

    async def setup_on_server(self, executor: CommandExecutor) -> SetupResult:
        """Set up storage on an endpoint.

        Phases: check -> install rclone -> upload config -> initial resync.
        Short-circuits to READY when rclone is already installed.
        """
        endpoint_id = executor.endpoint_id
        logger.info("Setting up storage on endpoint: %s", endpoint_id)

        try:
            config = self._load_config()
            if config is None:
                logger.info("Storage not configured, skipping setup")
                return self._not_configured(endpoint_id)

            workspace_error = self._config_manager.validate_workspace()
            if workspace_error:
                logger.warning("Workspace validation failed: %s", workspace_error)
                self._update_status(endpoint_id, StorageStatus.ERROR)
                return SetupResult(success=False, status=StorageStatus.ERROR, error=workspace_error)

            self._update_status(endpoint_id, StorageStatus.CHECKING)
            if await is_rclone_installed(executor):
                logger.info("Storage already set up on endpoint %s", endpoint_id)
                self._update_status(endpoint_id, StorageStatus.READY)
                return SetupResult(
                    success=True,
                    status=StorageStatus.READY,
                    message="Storage already configured",
                )

            if not config.rclone_config_content:
                raise ConfigurationError("rclone config content is missing")

            self._update_status(endpoint_id, StorageStatus.INSTALLING)
            self._require(await install_rclone(executor), "rclone installation")
            self._require(
                await upload_rclone_config(executor, config.rclone_config_content),
                "rclone config upload",
            )

            self._update_status(endpoint_id, StorageStatus.SYNCING)
            self._require(
                await perform_initial_resync(executor, self._sync_options(endpoint_id, config)),
                "Initial sync",
            )

            self._update_status(endpoint_id, StorageStatus.READY)
            logger.info("Storage setup completed on endpoint %s", endpoint_id)
            return SetupResult(
                success=True,
                status=StorageStatus.READY,
                message="Storage configured successfully",
            )
        except Exception as e:
            logger.error("Storage setup failed on endpoint %s: %s", endpoint_id, e)
            return self._error(endpoint_id, e)

    async def sync_now(self, executor: CommandExecutor) -> SetupResult:
        """Run one bidirectional sync pass. The endpoint must be READY."""
        endpoint_id = executor.endpoint_id
        logger.info("Sync requested for endpoint: %s", endpoint_id)

        try:
            config = self._load_config()
            if config is None:
                return SetupResult(
                    success=False,
                    status=StorageStatus.NOT_CONFIGURED,
                    message="Storage not configured",
                )

            current = self.get_status(endpoint_id)
            if current is not StorageStatus.READY:
                return SetupResult(
                    success=False,
                    status=current,
                    message="Storage not ready for sync",
                )

            self._update_status(endpoint_id, StorageStatus.SYNCING)
            self._require(
                await perform_bidirectional_sync(executor, self._sync_options(endpoint_id, config)),
                "Sync",
            )
            self._config_manager.update(last_sync=datetime.now(UTC))
            self._update_status(endpoint_id, StorageStatus.READY)

            logger.info("Sync completed on endpoint %s", endpoint_id)
            return SetupResult(
                success=True,
                status=StorageStatus.READY,
                message="Sync completed successfully",
            )
        except Exception as e:
            logger.error("Sync failed on endpoint %s: %s", endpoint_id, e)
            return self._error(endpoint_id, e)

    async def validate_setup(self, executor: CommandExecutor) -> SetupResult:
        """Read-only check of the endpoint setup. Updates the status only."""
        endpoint_id = executor.endpoint_id
        try:
            if self._load_config() is None:
                self._update_status(endpoint_id, StorageStatus.NOT_CONFIGURED)
                return SetupResult(
                    success=False,
                    status=StorageStatus.NOT_CONFIGURED,
                    message="Storage not configured in workspace",
                )

            validation = await validate_rclone_setup(executor)
            if not validation.valid:
                self._update_status(endpoint_id, StorageStatus.SETUP_REQUIRED)
                return SetupResult(
                    success=False,
                    status=StorageStatus.SETUP_REQUIRED,
                    message=validation.message,
                )

            self._update_status(endpoint_id, StorageStatus.READY)
            return SetupResult(
                success=True,
                status=StorageStatus.READY,
                message=validation.message,
            )
        except Exception as e:
            logger.error("Validation failed on endpoint %s: %s", endpoint_id, e)
            return self._error(endpoint_id, e)

    def _load_config(self) -> StorageConfig | None:
        config = self._config_manager.get()
        if config is None or not config.enabled:
            return None
        return config

    def _sync_options(self, endpoint_id: str, config: StorageConfig) -> SyncOptions:
        return SyncOptions(
            remote_path=config.remote_root_path,
            local_path=self.local_path_for(endpoint_id),
            verbose=True,
        )

    def _require(self, result: CommandResult, phase: str) -> None:
        if result.success:
            logger.debug(
                "%s output (exit=%s):\n%s", phase, result.exit_code, strip_framing(result.output)
            )
            return
        logger.error(
            "%s failed (exit=%s):\n%s", phase, result.exit_code, strip_framing(result.output)
        )
        raise OperationFailedError(f"{phase} failed: {_failure_detail(result)}", result)

    def _not_configured(self, endpoint_id: str) -> SetupResult:
        self._update_status(endpoint_id, StorageStatus.NOT_CONFIGURED)
        return SetupResult(
            success=False,
            status=StorageStatus.NOT_CONFIGURED,
            message="Storage not configured",
        )

    def _error(self, endpoint_id: str, error: Exception) -> SetupResult:
        self._update_status(endpoint_id, StorageStatus.ERROR)
        message = str(error) or type(error).__name__
        return SetupResult(success=False, status=StorageStatus.ERROR, error=message)

    def _update_status(self, endpoint_id: str, status: StorageStatus) -> None:
        """Record a status and fire an event when it changed."""
        with self._lock:
            previous = self._statuses.get(endpoint_id)
            self._statuses[endpoint_id] = status
        if previous is status:
            return
        logger.debug("Storage status for %s: %s", endpoint_id, status.value)
        self._events.emit(StatusChange(endpoint_id=endpoint_id, status=status))
