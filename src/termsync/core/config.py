"""Shared configuration classes for termsync.

This module defines the endpoint descriptor handed to us by the runtime
assignment layer, and the timeouts used by the command executor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

TERMINAL_PATH = "/colab/tty"
TOKEN_HEADER = "X-Colab-Runtime-Proxy-Token"


@dataclass(frozen=True)
class Endpoint:
    """An addressable remote runtime exposing a terminal channel.

    The descriptor is owned by whoever assigned the runtime. Executors borrow
    it and never mutate it; a refreshed token means a new descriptor.

    Attributes:
        id: Unique endpoint identifier (a UUID for Colab runtimes).
        base_url: Base URL of the runtime proxy (e.g., "https://host/proxy").
        token: Proxy token sent with every connection.
        token_expiry: When the token stops being accepted, if known.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    id: str
    base_url: str
    token: str
    token_expiry: datetime | None = None
    verify_ssl: bool = True

    @property
    def ws_url(self) -> str:
        """Get the terminal WebSocket URL.

        Returns:
            WebSocket URL of the terminal endpoint.
        """
        url = self.base_url.rstrip("/")
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}{TERMINAL_PATH}"

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with the WebSocket handshake."""
        return {TOKEN_HEADER: self.token}

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.base_url.startswith("https://")

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the token has expired."""
        if self.token_expiry is None:
            return False
        return (now or datetime.now(UTC)) >= self.token_expiry


@dataclass
class ExecutorConfig:
    """Timeouts for the terminal command executor.

    Attributes:
        connect_timeout: Seconds execute() waits for the channel to open.
        command_timeout: Seconds a single command may run before the
            channel is force-closed. Installs and large syncs are slow.
        poll_interval: Seconds between connection readiness checks.
        open_timeout: WebSocket handshake timeout.
        close_timeout: WebSocket close handshake timeout.
    """

    connect_timeout: float = 15.0
    command_timeout: float = 600.0
    poll_interval: float = 0.2
    open_timeout: float = 10.0
    close_timeout: float = 5.0
