"""Constants for rclone setup and sync on remote runtimes."""

# Install script fetched by the remote shell
RCLONE_INSTALL_URL = "https://rclone.org/install.sh"

# Default patterns to exclude from sync operations
DEFAULT_EXCLUDE_PATTERNS = (".git/**", "*.tmp", "*.swp")

# Each endpoint syncs into /content_<endpoint-id> on the runtime
DEFAULT_LOCAL_PATH = "/content"

# Where rclone reads its config on the runtime
DEFAULT_RCLONE_CONFIG_PATH = "~/.config/rclone/rclone.conf"

# Owner read/write only
RCLONE_CONFIG_PERMISSIONS = "600"

# Marker file created on the remote for bisync --check-access
CHECK_FILE_NAME = "RCLONE_TEST"

# Where rclone bisync keeps its listings on the runtime
BISYNC_CACHE_DIR = "$HOME/.cache/rclone/bisync"

# Automatic sync interval bounds (seconds)
DEFAULT_SYNC_INTERVAL_SECONDS = 300
MIN_SYNC_INTERVAL_SECONDS = 120
MAX_SYNC_INTERVAL_SECONDS = 3600

# Safe bisync flags, see https://rclone.org/bisync/#check-access
DEFAULT_SAFE_BISYNC_ARGS = (
    "--create-empty-src-dirs",
    "--compare size,modtime,checksum",
    "--slow-hash-sync-only",
    "--resilient",
    "-MvP",
    "--conflict-resolve path2",
    "--max-lock 2m",
    "--drive-skip-gdocs",
    "--fix-case",
)

# Resync trusts the remote (path2); local changes can be lost
RESYNC_FLAGS = ("--resync", "--resync-mode path2")
