"""Persisted storage configuration.

The storage config holds the encoded rclone config, so it is kept in the
OS keyring (one entry per workspace). The workspace binding, which says
which remote folder belongs to which workspace folder, is not secret and
lives in a JSON file in the config directory.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from termsync.core.errors import ConfigurationError, ValidationError
from termsync.storage.bisync import parse_remote_path

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "termsync"
WORKSPACES_FILE_NAME = "workspaces.json"


def get_config_dir() -> Path:
    """Get the configuration directory for termsync.

    Returns:
        Path to ~/.termsync.
    """
    return Path.home() / ".termsync"


class StorageConfig(BaseModel):
    """Storage configuration of one workspace."""

    # Path to the local rclone configuration file
    rclone_config_path: str = Field(min_length=1)
    # Remote root path, e.g. "drive:/projects/proj1"
    remote_root_path: str
    workspace_id: str | None = None
    enabled: bool = True
    last_sync: datetime | None = None
    # Base64-encoded rclone config uploaded to runtimes
    rclone_config_content: str | None = None

    @field_validator("remote_root_path")
    @classmethod
    def _check_remote_root_path(cls, value: str) -> str:
        try:
            parse_remote_path(value)
        except ValidationError as e:
            raise ValueError(str(e)) from e
        return value


class WorkspaceBinding(BaseModel):
    """Which remote folder a workspace folder is synced with."""

    remote_root_path: str
    workspace_path: str
    created_at: datetime


class StorageConfigManager:
    """Loads and saves the storage configuration of one workspace.

    Writes are whole-blob read-modify-write; there is no field-level
    concurrency control.

    Usage:
        manager = StorageConfigManager(Path.cwd())
        manager.save(StorageConfig(rclone_config_path=..., remote_root_path=...))
        config = manager.get()
        manager.update(last_sync=datetime.now(UTC))
    """

    def __init__(self, workspace: Path, config_dir: Path | None = None) -> None:
        """Initialize the manager.

        Args:
            workspace: Workspace folder the configuration belongs to.
            config_dir: Directory for the workspace bindings file.
        """
        self._workspace = workspace.expanduser().absolute()
        self._config_dir = config_dir or get_config_dir()

    @property
    def workspace(self) -> Path:
        """The workspace folder."""
        return self._workspace

    @property
    def workspace_id(self) -> str:
        """Stable identifier of the workspace folder."""
        return hashlib.sha256(str(self._workspace).encode()).hexdigest()[:16]

    @property
    def _keyring_key(self) -> str:
        return f"storage_config:{self.workspace_id}"

    @property
    def _bindings_file(self) -> Path:
        return self._config_dir / WORKSPACES_FILE_NAME

    def get(self) -> StorageConfig | None:
        """Get the storage configuration of the workspace.

        Returns:
            The configuration, or None if missing or unreadable.

        Raises:
            ConfigurationError: If the keyring is unavailable.
        """
        try:
            raw = keyring.get_password(KEYRING_SERVICE, self._keyring_key)
        except KeyringError as e:
            raise ConfigurationError(f"Keyring unavailable: {e}") from e
        if not raw:
            return None

        try:
            return StorageConfig.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.error("Failed to parse storage configuration: %s", e)
            return None

    def is_configured(self) -> bool:
        """Check if storage is configured and enabled for the workspace."""
        config = self.get()
        return config is not None and config.enabled

    def save(self, config: StorageConfig) -> StorageConfig:
        """Save the configuration and bind the workspace to its remote.

        Returns:
            The stored configuration.
        """
        data = config.model_dump()
        data["workspace_id"] = data.get("workspace_id") or self.workspace_id
        validated = StorageConfig.model_validate(data)
        self._store(validated)

        self._save_binding(
            WorkspaceBinding(
                remote_root_path=validated.remote_root_path,
                workspace_path=str(self._workspace),
                created_at=datetime.now(UTC),
            )
        )
        logger.info("Saved storage configuration for workspace %s", self._workspace)
        return validated

    def update(self, **changes: Any) -> StorageConfig:
        """Update fields of the stored configuration.

        Raises:
            ConfigurationError: If no configuration exists or the result is invalid.
        """
        current = self.get()
        if current is None:
            raise ConfigurationError("Storage is not configured for this workspace")
        try:
            updated = StorageConfig.model_validate({**current.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid storage configuration: {e}") from e
        self._store(updated)
        return updated

    def delete(self) -> None:
        """Delete the configuration and the workspace binding."""
        try:
            keyring.delete_password(KEYRING_SERVICE, self._keyring_key)
        except PasswordDeleteError:
            logger.debug("No stored configuration to delete")
        except KeyringError as e:
            raise ConfigurationError(f"Keyring unavailable: {e}") from e

        bindings = self._load_bindings()
        if bindings.pop(self.workspace_id, None) is not None:
            self._write_bindings(bindings)
        logger.info("Deleted storage configuration for workspace %s", self._workspace)

    def get_binding(self) -> WorkspaceBinding | None:
        """Get the workspace binding, if any."""
        data = self._load_bindings().get(self.workspace_id)
        if data is None:
            return None
        try:
            return WorkspaceBinding.model_validate(data)
        except PydanticValidationError as e:
            logger.warning("Ignoring invalid workspace binding: %s", e)
            return None

    def has_remote_path_changed(self, new_remote_path: str) -> bool:
        """Check if a remote path differs from the bound one."""
        binding = self.get_binding()
        return binding is not None and binding.remote_root_path != new_remote_path

    def validate_workspace(self) -> str | None:
        """Check that the configuration still matches the workspace.

        Returns:
            An error message, or None if the workspace is coherent.
        """
        if not self._workspace.is_dir():
            return f"Workspace folder does not exist: {self._workspace}"

        binding = self.get_binding()
        if binding is None:
            return None

        if binding.workspace_path != str(self._workspace):
            return (
                "Storage is configured for a different workspace folder.\n"
                f"Configured: {binding.workspace_path}\nCurrent: {self._workspace}"
            )

        config = self.get()
        if config is not None and binding.remote_root_path != config.remote_root_path:
            return (
                "Storage is bound to a different remote folder.\n"
                f"Bound: {binding.remote_root_path}\nConfigured: {config.remote_root_path}"
            )
        return None

    def _store(self, config: StorageConfig) -> None:
        try:
            keyring.set_password(KEYRING_SERVICE, self._keyring_key, config.model_dump_json())
        except KeyringError as e:
            raise ConfigurationError(f"Keyring unavailable: {e}") from e

    def _load_bindings(self) -> dict[str, Any]:
        if not self._bindings_file.exists():
            return {}
        try:
            return dict(json.loads(self._bindings_file.read_text()))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read workspace bindings: %s", e)
            return {}

    def _save_binding(self, binding: WorkspaceBinding) -> None:
        bindings = self._load_bindings()
        bindings[self.workspace_id] = binding.model_dump(mode="json")
        self._write_bindings(bindings)

    def _write_bindings(self, bindings: dict[str, Any]) -> None:
        self._bindings_file.parent.mkdir(parents=True, exist_ok=True)
        self._bindings_file.write_text(json.dumps(bindings, indent=2))
