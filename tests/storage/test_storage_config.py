"""Tests for the persisted storage configuration."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest
from keyring.errors import KeyringError
from pydantic import ValidationError as PydanticValidationError

from termsync.core.errors import ConfigurationError
from termsync.storage.config import KEYRING_SERVICE, StorageConfig, StorageConfigManager


def make_config(remote: str = "drive:/projects/p1") -> StorageConfig:
    return StorageConfig(
        rclone_config_path="/home/me/.config/rclone/rclone.conf",
        remote_root_path=remote,
        rclone_config_content="W2RyaXZlXQ==",
    )


class TestStorageConfig:
    """Tests for the StorageConfig model."""

    def test_defaults(self) -> None:
        """Should be enabled with no sync yet."""
        config = make_config()
        assert config.enabled is True
        assert config.last_sync is None
        assert config.workspace_id is None

    @pytest.mark.parametrize("remote", ["no-colon", "drive:", "drive:/"])
    def test_rejects_invalid_remote_root(self, remote: str) -> None:
        """Should validate the remote root path."""
        with pytest.raises(PydanticValidationError):
            make_config(remote)


class TestStorageConfigManager:
    """Tests for StorageConfigManager."""

    def test_get_missing(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should return None when nothing is stored."""
        assert StorageConfigManager(workspace, config_dir).get() is None

    def test_save_and_get(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should store the config in the keyring and bind the workspace."""
        manager = StorageConfigManager(workspace, config_dir)
        saved = manager.save(make_config())

        assert saved.workspace_id == manager.workspace_id
        assert manager.get() == saved
        assert (KEYRING_SERVICE, f"storage_config:{manager.workspace_id}") in keyring_store

        bindings = json.loads((config_dir / "workspaces.json").read_text())
        assert bindings[manager.workspace_id]["remote_root_path"] == "drive:/projects/p1"
        assert bindings[manager.workspace_id]["workspace_path"] == str(manager.workspace)

    def test_workspaces_are_isolated(
        self, keyring_store: dict, tmp_path: Path, config_dir: Path
    ) -> None:
        """Should key configurations by workspace folder."""
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        StorageConfigManager(tmp_path / "a", config_dir).save(make_config())

        assert StorageConfigManager(tmp_path / "b", config_dir).get() is None

    def test_corrupt_blob(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should treat an unreadable blob as missing."""
        manager = StorageConfigManager(workspace, config_dir)
        keyring_store[(KEYRING_SERVICE, f"storage_config:{manager.workspace_id}")] = "{broken"
        assert manager.get() is None

    def test_update(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should read-modify-write the whole blob."""
        manager = StorageConfigManager(workspace, config_dir)
        manager.save(make_config())
        now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

        updated = manager.update(last_sync=now)

        assert updated.last_sync == now
        assert manager.get().last_sync == now  # type: ignore[union-attr]
        assert manager.get().remote_root_path == "drive:/projects/p1"  # type: ignore[union-attr]

    def test_update_invalid(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should refuse an update producing an invalid config."""
        manager = StorageConfigManager(workspace, config_dir)
        manager.save(make_config())
        with pytest.raises(ConfigurationError):
            manager.update(remote_root_path="drive:/")

    def test_update_without_config(
        self, keyring_store: dict, workspace: Path, config_dir: Path
    ) -> None:
        """Should raise when nothing is configured."""
        with pytest.raises(ConfigurationError):
            StorageConfigManager(workspace, config_dir).update(enabled=False)

    def test_is_configured(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should require an enabled config."""
        manager = StorageConfigManager(workspace, config_dir)
        assert manager.is_configured() is False
        manager.save(make_config())
        assert manager.is_configured() is True
        manager.update(enabled=False)
        assert manager.is_configured() is False

    def test_delete(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should remove the config and the binding."""
        manager = StorageConfigManager(workspace, config_dir)
        manager.save(make_config())
        manager.delete()

        assert manager.get() is None
        assert manager.get_binding() is None
        manager.delete()

    def test_keyring_unavailable(self, workspace: Path, config_dir: Path) -> None:
        """Should raise ConfigurationError when the keyring fails."""
        with patch("termsync.storage.config.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = KeyringError("no backend")
            with pytest.raises(ConfigurationError, match="Keyring unavailable"):
                StorageConfigManager(workspace, config_dir).get()


class TestValidateWorkspace:
    """Tests for workspace coherence checks."""

    def test_coherent(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should return None for a freshly saved config."""
        manager = StorageConfigManager(workspace, config_dir)
        manager.save(make_config())
        assert manager.validate_workspace() is None

    def test_missing_folder(self, keyring_store: dict, tmp_path: Path, config_dir: Path) -> None:
        """Should report a workspace folder that does not exist."""
        manager = StorageConfigManager(tmp_path / "gone", config_dir)
        assert "does not exist" in (manager.validate_workspace() or "")

    def test_remote_changed(self, keyring_store: dict, workspace: Path, config_dir: Path) -> None:
        """Should report a config that no longer matches the binding."""
        manager = StorageConfigManager(workspace, config_dir)
        manager.save(make_config("drive:/projects/p1"))
        manager.update(remote_root_path="drive:/projects/p2")

        error = manager.validate_workspace()
        assert error is not None
        assert "different remote folder" in error
        assert manager.has_remote_path_changed("drive:/projects/p2") is True
        assert manager.has_remote_path_changed("drive:/projects/p1") is False
