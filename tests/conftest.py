"""Shared fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from keyring.errors import PasswordDeleteError


@pytest.fixture
def keyring_store() -> Iterator[dict[tuple[str, str], str]]:
    """Replace the system keyring with an in-memory store."""
    store: dict[tuple[str, str], str] = {}

    def delete_password(service: str, key: str) -> None:
        if (service, key) not in store:
            raise PasswordDeleteError("Password not found")
        del store[(service, key)]

    mock_keyring = MagicMock()
    mock_keyring.get_password.side_effect = lambda service, key: store.get((service, key))
    mock_keyring.set_password.side_effect = lambda service, key, value: store.__setitem__(
        (service, key), value
    )
    mock_keyring.delete_password.side_effect = delete_password

    with patch("termsync.storage.config.keyring", mock_keyring):
        yield store


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Temporary termsync config directory."""
    return tmp_path / ".termsync"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary workspace folder."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path
