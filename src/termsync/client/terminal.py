"""WebSocket transport for a remote runtime's terminal.

This module provides:
- TerminalChannel: duplex connection to the runtime's terminal endpoint
- TerminalEvent: the JSON frame carried in both directions
- normalize_output: strips terminal noise from raw output

Wire format:
    Every frame is a JSON object with a single text field, {"data": "..."}.
    Outbound data is a raw command line ending in a carriage return.
    Inbound data is whatever the pty wrote, cut at arbitrary boundaries.
"""

from __future__ import annotations

import contextlib
import logging
import re
import ssl
from typing import TYPE_CHECKING

import websockets
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import WebSocketException
from websockets.protocol import State

from termsync.core.config import ExecutorConfig
from termsync.core.errors import TerminalConnectionError

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from termsync.core.config import Endpoint

logger = logging.getLogger(__name__)

# Bracketed paste mode toggles emitted by bash around every prompt
_PASTE_MODE_RE = re.compile(r"\x1b\[\?2004[hl]")
# Operating system commands (window titles), terminated by BEL or ST
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
# Control sequences: colors, cursor movement, erase
_CSI_RE = re.compile(r"(?:\x1b\[|\x9b)[0-?]*[ -/]*[@-~]")
# Two-character escapes and charset selection
_ESC_RE = re.compile(r"\x1b(?:[()#][0-9A-Za-z]|[@-Z\\-_=>78])")
_BARE_CR_RE = re.compile(r"\r(?!\n)")


def normalize_output(data: str) -> str:
    """Turn raw terminal output into readable text.

    Strips ANSI escape sequences and paste-mode toggles, and turns bare
    carriage returns (progress bar redraws) into newlines.

    Args:
        data: Raw terminal chunk.

    Returns:
        Cleaned text.
    """
    data = _PASTE_MODE_RE.sub("", data)
    data = _OSC_RE.sub("", data)
    data = _CSI_RE.sub("", data)
    data = _ESC_RE.sub("", data)
    return _BARE_CR_RE.sub("\n", data)


class TerminalEvent(BaseModel):
    """A terminal frame in either direction."""

    data: str


class TerminalChannel:
    """Message-framed WebSocket connection to a runtime terminal.

    The channel knows nothing about commands. It opens, sends frames,
    yields inbound payloads, and closes. Reconnection is the executor's job.

    Usage:
        channel = TerminalChannel(endpoint)
        await channel.open()
        await channel.send("ls\\r")
        chunk = await channel.receive()
        await channel.close()
    """

    def __init__(self, endpoint: Endpoint, config: ExecutorConfig | None = None) -> None:
        """Initialize the channel.

        Args:
            endpoint: Endpoint descriptor with URL and token.
            config: Executor configuration (handshake timeouts).
        """
        self._endpoint = endpoint
        self._config = config or ExecutorConfig()
        self._ws: ClientConnection | None = None

    @property
    def url(self) -> str:
        """Get the WebSocket URL."""
        return self._endpoint.ws_url

    @property
    def is_open(self) -> bool:
        """Whether the underlying socket is in the OPEN state."""
        return self._ws is not None and self._ws.state is State.OPEN

    async def open(self) -> None:
        """Open the WebSocket connection.

        Raises:
            TerminalConnectionError: If the handshake fails.
        """
        ssl_context: ssl.SSLContext | None = None
        if self.url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._endpoint.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        logger.info("Opening terminal channel: %s", self.url)
        try:
            self._ws = await websockets.connect(
                self.url,
                ssl=ssl_context,
                additional_headers=self._endpoint.headers,
                open_timeout=self._config.open_timeout,
                close_timeout=self._config.close_timeout,
            )
        except (WebSocketException, OSError, TimeoutError) as e:
            raise TerminalConnectionError(f"WebSocket connection failed: {e}") from e
        logger.info("Terminal channel open")

    async def send(self, data: str) -> None:
        """Send one frame.

        Raises:
            TerminalConnectionError: If the channel is not open.
        """
        if self._ws is None:
            raise TerminalConnectionError("Terminal channel is not open")
        try:
            await self._ws.send(TerminalEvent(data=data).model_dump_json())
        except WebSocketException as e:
            raise TerminalConnectionError(f"Failed to send to terminal: {e}") from e

    async def receive(self) -> str:
        """Wait for the next valid inbound payload.

        Frames that are not JSON or have no "data" field are logged and
        skipped.

        Returns:
            Raw terminal data of the frame.

        Raises:
            TerminalConnectionError: When the connection closes.
        """
        while True:
            if self._ws is None:
                raise TerminalConnectionError("Terminal channel is not open")
            try:
                message = await self._ws.recv()
            except websockets.ConnectionClosed as e:
                raise TerminalConnectionError(f"Terminal channel closed: {e}") from e

            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            try:
                return TerminalEvent.model_validate_json(message).data
            except PydanticValidationError:
                logger.warning("Invalid terminal event received: %s", message[:100])

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(WebSocketException):
                await ws.close()
            logger.info("Terminal channel closed")
