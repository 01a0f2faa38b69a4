"""termsync - rclone bisync on remote runtimes over their terminal channel."""

__version__ = "0.1.0"
