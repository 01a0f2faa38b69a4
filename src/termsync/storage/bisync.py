"""Bisync state addressing.

rclone bisync keeps its listings in files named after the two paths it
syncs. The names are derived here so we can test, with a single shell
command, whether a baseline resync already happened for a pair.

Convention: path1 is always the runtime-local directory, path2 is always
the cloud remote. Swapping them yields a different state name and would
silently force a full resync, so BisyncPair rejects a swapped pair.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from termsync.core.errors import ValidationError
from termsync.storage.constants import BISYNC_CACHE_DIR

_SEPARATORS_RE = re.compile(r"[/:]")
_UNDERSCORE_RUN_RE = re.compile(r"_+")
_REMOTE_PATH_RE = re.compile(r"^([\w.\- ]+):(.*)$")


def sanitize_path(path: str) -> str:
    """Sanitize a path the way rclone does for bisync state file names.

    Replaces "/" and ":" with "_", collapses runs of "_", strips leading
    "_". Other characters (hyphens in UUIDs) are kept.

    Examples:
        "/content/abc-123" -> "content_abc-123"
        "drive1:/per/testing/t1" -> "drive1_per_testing_t1"
    """
    sanitized = _SEPARATORS_RE.sub("_", path)
    sanitized = _UNDERSCORE_RUN_RE.sub("_", sanitized)
    return sanitized.lstrip("_")


def parse_remote_path(remote_path: str) -> tuple[str, str]:
    """Split "remote:path" into its remote name and path.

    Raises:
        ValidationError: If the value is not "<remote>:<path>", or the path
            is empty or the remote root.
    """
    match = _REMOTE_PATH_RE.match(remote_path)
    if match is None:
        raise ValidationError('Remote path must be in format "remote:/path/to/folder"')
    remote_name, path = match.group(1), match.group(2)
    if not path or path == "/":
        raise ValidationError("Path cannot be empty or root directory")
    return remote_name, path


def is_remote_path(path: str) -> bool:
    """Check whether a path addresses an rclone remote."""
    return _REMOTE_PATH_RE.match(path) is not None


@dataclass(frozen=True)
class BisyncPair:
    """A (local, remote) pair in the fixed path1/path2 order.

    Attributes:
        local_path: Directory on the runtime (path1).
        remote_path: "remote:path" on cloud storage (path2).
    """

    local_path: str
    remote_path: str

    def __post_init__(self) -> None:
        if is_remote_path(self.local_path):
            raise ValidationError(
                f"Local path looks like a remote ({self.local_path!r}); "
                "path1 must be the runtime directory"
            )
        if not is_remote_path(self.remote_path):
            raise ValidationError(
                f"Remote path {self.remote_path!r} is not in 'remote:path' form"
            )

    @property
    def remote_name(self) -> str:
        """Name of the rclone remote."""
        return self.remote_path.split(":", 1)[0]

    @property
    def state_id(self) -> str:
        """Sync state identifier of the pair."""
        return state_identifier(self.local_path, self.remote_path)

    @property
    def state_file(self) -> str:
        """Path of the path1 listing on the runtime."""
        return f"{BISYNC_CACHE_DIR}/{self.state_id}.path1.lst"


def state_identifier(local_path: str, remote_path: str) -> str:
    """Derive the bisync state identifier of a path pair.

    Args:
        local_path: Runtime directory (path1).
        remote_path: Cloud remote path (path2).

    Returns:
        "<sanitized path1>..<sanitized path2>"
    """
    return f"{sanitize_path(local_path)}..{sanitize_path(remote_path)}"
