"""Local rclone configuration handling.

Reads, validates and encodes the user's rclone.conf before it is uploaded
to a runtime.
"""

from __future__ import annotations

import base64
import configparser
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from termsync.core.errors import ConfigurationError, ValidationError
from termsync.storage.bisync import parse_remote_path


@dataclass
class RcloneRemote:
    """A remote section of an rclone config."""

    name: str
    type: str
    config: dict[str, str] = field(default_factory=dict)


@dataclass
class RcloneValidation:
    """Result of validating an rclone config or remote path."""

    valid: bool
    error: str | None = None


def parse_config(content: str) -> list[RcloneRemote]:
    """Parse rclone config content (INI, one section per remote).

    Raises:
        ConfigurationError: If the content is not valid INI.
    """
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    try:
        parser.read_string(content)
    except configparser.Error as e:
        raise ConfigurationError(f"Failed to parse rclone config: {e}") from e

    remotes = []
    for section in parser.sections():
        options = dict(parser.items(section))
        remotes.append(RcloneRemote(name=section, type=options.get("type", ""), config=options))
    return remotes


def read_config(config_path: Path) -> list[RcloneRemote]:
    """Read and parse an rclone config file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read rclone config: {e}") from e
    return parse_config(content)


def get_remote_names(config_path: Path) -> list[str]:
    """Get the remote names defined in an rclone config file."""
    return [remote.name for remote in read_config(config_path)]


def validate_config(config_path: Path) -> RcloneValidation:
    """Validate an rclone config: it exists, and every remote has a type."""
    if not config_path.is_file():
        return RcloneValidation(valid=False, error=f"rclone config not found: {config_path}")
    try:
        remotes = read_config(config_path)
    except ConfigurationError as e:
        return RcloneValidation(valid=False, error=str(e))

    if not remotes:
        return RcloneValidation(valid=False, error="No remotes configured in rclone config file")
    for remote in remotes:
        if not remote.type:
            return RcloneValidation(
                valid=False,
                error=f'Remote "{remote.name}" has no type specified',
            )
    return RcloneValidation(valid=True)


def encode_config(config_path: Path) -> str:
    """Read an rclone config and encode it as base64 for upload.

    Raises:
        ConfigurationError: If the file cannot be read.
    """
    try:
        content = config_path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Failed to read rclone config: {e}") from e
    return base64.b64encode(content).decode("ascii")


def validate_remote_path(remote_path: str, config_path: Path) -> RcloneValidation:
    """Check that a remote path is well formed and names a configured remote."""
    try:
        remote_name, _ = parse_remote_path(remote_path)
    except ValidationError as e:
        return RcloneValidation(valid=False, error=str(e))

    try:
        remote_names = get_remote_names(config_path)
    except ConfigurationError as e:
        return RcloneValidation(valid=False, error=f"Failed to validate remote: {e}")

    if remote_name not in remote_names:
        return RcloneValidation(
            valid=False,
            error=(
                f'Remote "{remote_name}" not found in rclone config. '
                f"Available remotes: {', '.join(remote_names)}"
            ),
        )
    return RcloneValidation(valid=True)


def default_config_path() -> Path:
    """Get the default rclone config path for this platform."""
    home = Path.home()
    if sys.platform == "win32":
        return home / "AppData" / "Roaming" / "rclone" / "rclone.conf"

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / "rclone" / "rclone.conf"
    return home / ".config" / "rclone" / "rclone.conf"


def has_default_config() -> bool:
    """Check if the default rclone config exists."""
    return default_config_path().is_file()
