"""Command execution over an interactive terminal channel.

This module provides:
- TerminalExecutor: runs one shell command at a time and reports its exit status
- PendingCommand: the per-request completion state machine
- build_command: wraps a command line in the completion marker protocol
- strip_framing: removes the protocol echo and marker from command output

Protocol:
    The terminal is a raw pty stream with no message boundaries and no exit
    status. Each command is sent wrapped as

        ( <command> ); rc=$?; echo "__TERMSYNC_DONE_<session>_<id>__:exit=$rc"

    and the executor accumulates output until the marker with a numeric exit
    status shows up anywhere in the buffer. The pty echoes the command line
    itself, but the echo carries "$rc" and never matches the digits pattern.
    The session token is random per executor, so markers replayed from an
    earlier session never complete a new request.

Concurrency:
    Requests are queued FIFO by request id. Only the head of the queue talks
    to the channel; the others wait for their turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from termsync.client.terminal import TerminalChannel, normalize_output
from termsync.core.config import ExecutorConfig
from termsync.core.errors import (
    CommandTimeoutError,
    ConnectionTimeoutError,
    ExecutorDisposedError,
    TerminalConnectionError,
)
from termsync.core.types import CommandResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from termsync.core.config import Endpoint

logger = logging.getLogger(__name__)

MARKER_PREFIX = "__TERMSYNC_DONE_"
REDACTED = "<redacted>"

_COMPLETION_RE = re.compile(re.escape(MARKER_PREFIX) + r"\w+__:exit=\d+")


def new_session() -> str:
    """Generate the random marker token of one executor."""
    return uuid.uuid4().hex[:8]


def marker_for(request_id: int, session: str) -> str:
    """Get the completion marker of a request."""
    return f"{MARKER_PREFIX}{session}_{request_id}__"


def build_command(command: str, request_id: int, session: str) -> str:
    """Wrap a command line in the completion marker protocol.

    Args:
        command: Single-line shell command.
        request_id: Request id embedded in the marker.
        session: Executor token embedded in the marker.

    Returns:
        Terminal input, terminated by a carriage return.
    """
    return f'( {command} ); rc=$?; echo "{marker_for(request_id, session)}:exit=$rc"\r'


def strip_framing(output: str, command: str | None = None) -> str:
    """Drop the echoed command line and the completion marker from output.

    Args:
        output: Normalized terminal output of one command.
        command: Framed command as sent. Lines that are fragments of it
            (a pty wrapping a long echo, possibly after the prompt) are
            dropped too.

    Output after the completion marker (the next prompt) is dropped.
    """
    lines = []
    for line in output.splitlines():
        if _COMPLETION_RE.search(line):
            break
        if MARKER_PREFIX in line:
            continue
        if command is not None and _echoes(line, command):
            continue
        lines.append(line)
    return "\n".join(lines)


def _echoes(line: str, command: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if stripped in command:
        return True
    head = command[:16]
    start = stripped.find(head)
    return start >= 0 and stripped[start:] in command


class CommandState(Enum):
    """Progress of a pending command."""

    QUEUED = auto()
    AWAITING_MARKER = auto()
    COMPLETE = auto()


@dataclass
class PendingCommand:
    """A queued or running command.

    Attributes:
        request_id: Queue key, also embedded in the completion marker.
        command: The command line as given by the caller.
        redact: Keep the command line out of logs and out of the result
            output.
        session: Executor token embedded in the completion marker.
        future: Resolved with the CommandResult on completion.
        turn: Set when this request reaches the head of the queue.
        state: Completion state machine position.
    """

    request_id: int
    command: str
    redact: bool
    session: str
    future: asyncio.Future[CommandResult]
    turn: asyncio.Event = field(default_factory=asyncio.Event)
    state: CommandState = CommandState.QUEUED
    output: str = ""

    def __post_init__(self) -> None:
        marker = marker_for(self.request_id, self.session)
        self._marker_re = re.compile(re.escape(marker) + r":exit=(\d+)")

    @property
    def display(self) -> str:
        """Command line safe for logging."""
        return REDACTED if self.redact else self.command

    @property
    def framed(self) -> str:
        """Terminal input sent for this request."""
        return build_command(self.command, self.request_id, self.session)

    def feed(self, chunk: str) -> bool:
        """Append normalized output and look for the completion marker.

        The whole buffer is scanned, since the marker can be split across
        chunks.

        Returns:
            True if this chunk completed the command.
        """
        if self.state is not CommandState.AWAITING_MARKER:
            return False
        self.output += chunk
        match = self._marker_re.search(self.output)
        if match is None:
            return False

        exit_code = int(match.group(1))
        self.state = CommandState.COMPLETE
        # The pty echo of a redacted command carries the secret
        output = strip_framing(self.output, self.framed) if self.redact else self.output
        if not self.future.done():
            self.future.set_result(
                CommandResult(success=exit_code == 0, output=output, exit_code=exit_code)
            )
        return True

    def fail(self, error: Exception) -> None:
        """Fail the command if it has not completed yet."""
        self.state = CommandState.COMPLETE
        if not self.future.done():
            self.future.set_exception(error)


class TerminalExecutor:
    """Runs shell commands on one endpoint through its terminal channel.

    Lifecycle: Disconnected -> Connecting -> Connected, and back on
    disconnect, timeout or channel loss. execute() reconnects on demand.
    After dispose() every call raises ExecutorDisposedError.

    Usage:
        executor = TerminalExecutor(endpoint)
        result = await executor.execute("rclone", "version")
        if result.success:
            print(result.output)
        await executor.dispose()
    """

    def __init__(
        self,
        endpoint: Endpoint,
        config: ExecutorConfig | None = None,
        channel_factory: Callable[[Endpoint, ExecutorConfig], TerminalChannel] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            endpoint: Endpoint descriptor (borrowed, never modified).
            config: Executor timeouts.
            channel_factory: Creates transport channels (default TerminalChannel).
        """
        self._endpoint = endpoint
        self._config = config or ExecutorConfig()
        self._channel_factory = channel_factory or TerminalChannel

        self._channel: TerminalChannel | None = None
        self._reader: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._disposed = False

        # Request queue
        self._session = new_session()
        self._request_ids = itertools.count(1)
        self._requests: dict[int, PendingCommand] = {}
        self._queue: deque[int] = deque()
        self._active: PendingCommand | None = None

        logger.debug("Created TerminalExecutor for endpoint %s", endpoint.id)

    @property
    def endpoint_id(self) -> str:
        """ID of the endpoint this executor is bound to."""
        return self._endpoint.id

    @property
    def session(self) -> str:
        """Random token embedded in this executor's completion markers."""
        return self._session

    @property
    def endpoint(self) -> Endpoint:
        """The endpoint descriptor."""
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        """Whether the channel is open right now."""
        return self._channel is not None and self._channel.is_open

    @property
    def is_disposed(self) -> bool:
        """Whether dispose() was called."""
        return self._disposed

    @property
    def pending_count(self) -> int:
        """Number of queued and running commands."""
        return len(self._queue)

    async def connect(self) -> None:
        """Open the terminal channel. No-op when already connected.

        Raises:
            TerminalConnectionError: If the channel fails to open.
            ExecutorDisposedError: After dispose().
        """
        self._check_disposed()
        async with self._connect_lock:
            if self.is_connected:
                logger.debug("Already connected, skipping connect()")
                return

            # Drop a stale channel left behind by a remote close
            if self._channel is not None:
                await self._close_channel()

            if self._endpoint.is_expired():
                logger.warning("Token for endpoint %s has expired", self._endpoint.id)

            channel = self._channel_factory(self._endpoint, self._config)
            await channel.open()
            self._channel = channel
            self._reader = asyncio.create_task(
                self._read_loop(channel),
                name=f"terminal-reader-{self._endpoint.id}",
            )
            logger.info("Connected to terminal of endpoint %s", self._endpoint.id)

    async def disconnect(self) -> None:
        """Close the channel. Safe to call more than once.

        A running command fails with TerminalConnectionError. The executor
        can reconnect afterwards.
        """
        had_channel = self._channel is not None
        await self._close_channel()
        if self._active is not None:
            self._active.fail(TerminalConnectionError("Terminal disconnected"))
        if had_channel:
            logger.info("Disconnected from terminal of endpoint %s", self._endpoint.id)

    async def dispose(self) -> None:
        """Disconnect and fail everything still queued."""
        if self._disposed:
            return
        self._disposed = True
        await self.disconnect()
        # Waiting requests wake up and raise ExecutorDisposedError
        for request in list(self._requests.values()):
            request.turn.set()
        logger.debug("Disposed TerminalExecutor for endpoint %s", self._endpoint.id)

    async def execute(self, cmd: str, *args: str, redact: bool = False) -> CommandResult:
        """Run one shell command and wait for its exit status.

        Args:
            cmd: Command (or full single-line command).
            *args: Extra words appended with spaces.
            redact: Keep the command line out of logs (secrets).

        Returns:
            CommandResult. A non-zero exit is a result, not an exception.

        Raises:
            ConnectionTimeoutError: No open channel within connect_timeout.
            TerminalConnectionError: The channel closed mid-command.
            CommandTimeoutError: No marker within command_timeout. The
                channel is force-closed.
            ExecutorDisposedError: After dispose().
        """
        self._check_disposed()
        request = self._enqueue(" ".join([cmd, *args]), redact)
        try:
            await request.turn.wait()
            self._check_disposed()
            return await self._run(request)
        finally:
            self._dequeue(request)

    # Queue management

    def _enqueue(self, command: str, redact: bool) -> PendingCommand:
        request_id = next(self._request_ids)
        request = PendingCommand(
            request_id=request_id,
            command=command,
            redact=redact,
            session=self._session,
            future=asyncio.get_running_loop().create_future(),
        )
        self._requests[request_id] = request
        self._queue.append(request_id)
        if len(self._queue) == 1:
            request.turn.set()
        else:
            logger.debug(
                "Queued request %d behind %d pending command(s)",
                request_id,
                len(self._queue) - 1,
            )
        return request

    def _dequeue(self, request: PendingCommand) -> None:
        was_head = bool(self._queue) and self._queue[0] == request.request_id
        with contextlib.suppress(ValueError):
            self._queue.remove(request.request_id)
        self._requests.pop(request.request_id, None)
        if was_head and self._queue:
            self._requests[self._queue[0]].turn.set()

    # Execution

    async def _run(self, request: PendingCommand) -> CommandResult:
        await self._wait_for_connection()
        channel = self._channel
        if channel is None:
            raise TerminalConnectionError("Terminal channel is not open")

        request.state = CommandState.AWAITING_MARKER
        self._active = request
        try:
            logger.debug("Executing [%d]: %s", request.request_id, request.display)
            await channel.send(request.framed)
            try:
                result = await asyncio.wait_for(
                    request.future,
                    timeout=self._config.command_timeout,
                )
            except TimeoutError:
                logger.error(
                    "Command [%d] timed out after %.0fs: %s",
                    request.request_id,
                    self._config.command_timeout,
                    request.display,
                )
                # An unresponsive channel must not be reused
                await self.disconnect()
                raise CommandTimeoutError(request.display, self._config.command_timeout) from None
        finally:
            self._active = None

        logger.debug(
            "Command [%d] done (exit=%s):\n%s",
            request.request_id,
            result.exit_code,
            REDACTED if request.redact else result.output,
        )
        return result

    async def _wait_for_connection(self) -> None:
        """Wait until the channel is open, reconnecting when it is down."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.connect_timeout

        while not self.is_connected:
            if loop.time() >= deadline:
                raise ConnectionTimeoutError(
                    f"Terminal connection timeout after {self._config.connect_timeout:.0f}s"
                )
            try:
                await self.connect()
                continue
            except TerminalConnectionError as e:
                logger.debug("Reconnect to %s failed: %s", self._endpoint.id, e)
            await asyncio.sleep(self._config.poll_interval)

    async def _read_loop(self, channel: TerminalChannel) -> None:
        """Feed inbound output to the running command until the channel closes."""
        try:
            while True:
                chunk = normalize_output(await channel.receive())
                request = self._active
                if request is None:
                    logger.debug("Terminal output with no command running: %r", chunk[:200])
                    continue
                request.feed(chunk)
        except TerminalConnectionError as e:
            logger.info("Terminal channel of %s lost: %s", self._endpoint.id, e)
            if self._active is not None:
                self._active.fail(e)

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if channel is not None:
            await channel.close()

    def _check_disposed(self) -> None:
        if self._disposed:
            raise ExecutorDisposedError(f"Executor for {self._endpoint.id} is disposed")
