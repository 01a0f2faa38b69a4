"""Tests for TerminalExecutor and the completion marker protocol."""

from __future__ import annotations

import asyncio
import logging

import pytest

from termsync.client.executor import (
    REDACTED,
    CommandState,
    PendingCommand,
    TerminalExecutor,
    build_command,
    marker_for,
    strip_framing,
)
from termsync.core.config import ExecutorConfig
from termsync.core.errors import (
    CommandTimeoutError,
    ConnectionTimeoutError,
    ExecutorDisposedError,
    TerminalConnectionError,
)
from tests.fakes import (
    PROMPT,
    ChannelFactory,
    FakeChannel,
    echo_responder,
    make_endpoint,
    marker_line,
    marker_of,
    wait_until,
)

SESSION = "5f3a9c1e"

FAST = ExecutorConfig(connect_timeout=0.2, command_timeout=0.2, poll_interval=0.01)


def make_executor(
    factory: ChannelFactory,
    config: ExecutorConfig = FAST,
) -> TerminalExecutor:
    return TerminalExecutor(make_endpoint(), config, channel_factory=factory)


class TestBuildCommand:
    """Tests for command framing."""

    def test_wraps_in_subshell_with_marker(self) -> None:
        """Should run the command in a subshell and echo the marker with $rc."""
        framed = build_command("rclone version", 7, SESSION)
        assert framed == (
            '( rclone version ); rc=$?; echo "__TERMSYNC_DONE_5f3a9c1e_7__:exit=$rc"\r'
        )

    def test_marker_is_unique_per_request(self) -> None:
        """Should embed the session token and the request id in the marker."""
        assert marker_for(1, SESSION) != marker_for(2, SESSION)
        assert marker_for(1, SESSION) != marker_for(1, "0b7d2e44")
        assert marker_for(12, SESSION) == "__TERMSYNC_DONE_5f3a9c1e_12__"


class TestPendingCommand:
    """Tests for the per-request completion state machine."""

    @staticmethod
    def _pending(request_id: int = 3) -> PendingCommand:
        loop = asyncio.get_running_loop()
        request = PendingCommand(
            request_id=request_id,
            command="ls",
            redact=False,
            session=SESSION,
            future=loop.create_future(),
        )
        request.state = CommandState.AWAITING_MARKER
        return request

    @pytest.mark.asyncio
    async def test_completes_on_marker(self) -> None:
        """Should resolve with the exit code and the whole buffer."""
        request = self._pending()
        assert request.feed("file1\nfile2\n") is False
        assert request.feed(marker_line(marker_for(3, SESSION), 0)) is True
        result = request.future.result()
        assert result.success is True
        assert result.exit_code == 0
        assert "file1\nfile2" in result.output
        assert request.state is CommandState.COMPLETE

    @pytest.mark.asyncio
    async def test_marker_split_across_chunks(self) -> None:
        """Should detect a marker split over several chunks."""
        request = self._pending()
        assert request.feed("out\n__TERMSYNC_DO") is False
        assert request.feed("NE_5f3a9c1e_3__:ex") is False
        assert request.feed("it=42\n") is True
        assert request.future.result().exit_code == 42
        assert request.future.result().success is False

    @pytest.mark.asyncio
    async def test_ignores_command_echo(self) -> None:
        """The echoed command line carries $rc and must not complete the request."""
        request = self._pending()
        assert request.feed(build_command("ls", 3, SESSION).rstrip("\r") + "\n") is False
        assert not request.future.done()

    @pytest.mark.asyncio
    async def test_ignores_other_request_marker(self) -> None:
        """Should not complete on another request's marker."""
        request = self._pending(3)
        assert request.feed(marker_line(marker_for(2, SESSION), 0)) is False
        assert request.feed(marker_line(marker_for(30, SESSION), 0)) is False
        assert not request.future.done()

    @pytest.mark.asyncio
    async def test_ignores_output_while_queued(self) -> None:
        """Should not buffer output before the command was sent."""
        request = self._pending()
        request.state = CommandState.QUEUED
        assert request.feed(marker_line(marker_for(3, SESSION), 0)) is False
        assert request.output == ""

    @pytest.mark.asyncio
    async def test_display_redacted(self) -> None:
        """Should hide redacted command lines."""
        request = self._pending()
        request.redact = True
        assert request.display == REDACTED


class TestExecute:
    """Tests for TerminalExecutor.execute()."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """Should return output and exit code 0."""
        factory = ChannelFactory(lambda: FakeChannel(echo_responder("rclone v1.68.2\r\n")))
        executor = make_executor(factory)
        try:
            result = await executor.execute("rclone", "version")
        finally:
            await executor.dispose()

        assert result.success is True
        assert result.exit_code == 0
        assert "rclone v1.68.2" in result.output
        assert factory.last.sent == [build_command("rclone version", 1, executor.session)]

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_a_result(self) -> None:
        """A failing command should be a result, not an exception."""
        factory = ChannelFactory(lambda: FakeChannel(echo_responder("nope\r\n", exit_code=3)))
        executor = make_executor(factory)
        try:
            result = await executor.execute("false")
        finally:
            await executor.dispose()

        assert result.success is False
        assert result.exit_code == 3

    @pytest.mark.asyncio
    async def test_output_is_normalized(self) -> None:
        """Should strip escape sequences and bare carriage returns."""

        def respond(sent: str) -> list[str]:
            return [
                "\x1b[?2004l\x1b[32mok\x1b[0m\r\n10%\r20%\r\n",
                marker_line(marker_of(sent)),
            ]

        factory = ChannelFactory(lambda: FakeChannel(respond))
        executor = make_executor(factory)
        try:
            result = await executor.execute("progress")
        finally:
            await executor.dispose()

        assert "\x1b" not in result.output
        assert "ok\r\n10%\n20%" in result.output

    @pytest.mark.asyncio
    async def test_marker_split_across_messages(self) -> None:
        """Should complete when the marker arrives in two frames."""

        def respond(sent: str) -> list[str]:
            line = marker_line(marker_of(sent), 0)
            return ["done\r\n", line[:9], line[9:]]

        factory = ChannelFactory(lambda: FakeChannel(respond))
        executor = make_executor(factory)
        try:
            result = await executor.execute("work")
        finally:
            await executor.dispose()

        assert result.success is True

    @pytest.mark.asyncio
    async def test_timeout_disconnects(self) -> None:
        """No marker in time should raise and leave the executor disconnected."""
        factory = ChannelFactory(lambda: FakeChannel(lambda sent: [sent.rstrip("\r") + "\r\n"]))
        executor = make_executor(factory)
        try:
            with pytest.raises(CommandTimeoutError):
                await executor.execute("sleep 1000")
            assert executor.is_connected is False
            assert factory.last.closed is True
        finally:
            await executor.dispose()

    @pytest.mark.asyncio
    async def test_reconnects_after_timeout(self) -> None:
        """The next execute() should open a fresh channel."""
        calls = {"n": 0}

        def make() -> FakeChannel:
            calls["n"] += 1
            if calls["n"] == 1:
                return FakeChannel(lambda sent: [])
            return FakeChannel(echo_responder("again\r\n"))

        factory = ChannelFactory(make)
        executor = make_executor(factory)
        try:
            with pytest.raises(CommandTimeoutError):
                await executor.execute("hang")
            result = await executor.execute("echo again")
        finally:
            await executor.dispose()

        assert result.success is True
        assert len(factory.channels) == 2

    @pytest.mark.asyncio
    async def test_connection_timeout(self) -> None:
        """Should raise ConnectionTimeoutError when the channel never opens."""
        factory = ChannelFactory(lambda: FakeChannel(fail_open=True))
        executor = make_executor(factory)
        try:
            with pytest.raises(ConnectionTimeoutError):
                await executor.execute("ls")
        finally:
            await executor.dispose()

        assert len(factory.channels) > 1
        assert all(channel.sent == [] for channel in factory.channels)

    @pytest.mark.asyncio
    async def test_channel_lost_mid_command(self) -> None:
        """Losing the channel should fail the running command with a connection error."""
        factory = ChannelFactory()
        executor = make_executor(factory)
        try:
            task = asyncio.create_task(executor.execute("long"))
            await wait_until(lambda: bool(factory.channels) and bool(factory.last.sent))
            factory.last.drop()
            with pytest.raises(TerminalConnectionError):
                await task
            assert executor.is_connected is False
        finally:
            await executor.dispose()


class TestSerialization:
    """Tests for the FIFO request queue."""

    @pytest.mark.asyncio
    async def test_one_command_in_flight(self) -> None:
        """A second execute() should wait until the first completes."""
        factory = ChannelFactory()
        executor = make_executor(factory, ExecutorConfig(command_timeout=5.0))
        try:
            first = asyncio.create_task(executor.execute("first"))
            second = asyncio.create_task(executor.execute("second"))
            await wait_until(lambda: bool(factory.channels) and len(factory.last.sent) == 1)
            await asyncio.sleep(0.01)

            channel = factory.last
            assert len(channel.sent) == 1
            assert executor.pending_count == 2

            channel.push(marker_line(marker_of(channel.sent[0]), 0))
            assert (await first).success is True

            await wait_until(lambda: len(channel.sent) == 2)
            assert "second" in channel.sent[1]
            channel.push(marker_line(marker_of(channel.sent[1]), 5))
            assert (await second).exit_code == 5
        finally:
            await executor.dispose()

        assert executor.pending_count == 0

    @pytest.mark.asyncio
    async def test_fifo_order(self) -> None:
        """Commands should be sent in the order execute() was called."""
        factory = ChannelFactory(lambda: FakeChannel(echo_responder()))
        executor = make_executor(factory)
        try:
            await asyncio.gather(*(executor.execute(f"echo {i}") for i in range(5)))
        finally:
            await executor.dispose()

        sent = factory.last.sent
        assert [s.split(" ); ")[0] for s in sent] == [f"( echo {i}" for i in range(5)]


class TestLifecycle:
    """Tests for connect, disconnect and dispose."""

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self) -> None:
        """Connecting twice should open one channel."""
        factory = ChannelFactory()
        executor = make_executor(factory)
        try:
            await executor.connect()
            await executor.connect()
            assert executor.is_connected is True
            assert len(factory.channels) == 1
        finally:
            await executor.dispose()

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self) -> None:
        """connect() should surface the connection error."""
        factory = ChannelFactory(lambda: FakeChannel(fail_open=True))
        executor = make_executor(factory)
        with pytest.raises(TerminalConnectionError):
            await executor.connect()
        assert executor.is_connected is False

    @pytest.mark.asyncio
    async def test_disconnect_is_safe_twice(self) -> None:
        """disconnect() should be callable repeatedly and allow reconnecting."""
        factory = ChannelFactory()
        executor = make_executor(factory)
        try:
            await executor.connect()
            await executor.disconnect()
            await executor.disconnect()
            assert executor.is_connected is False

            await executor.connect()
            assert executor.is_connected is True
        finally:
            await executor.dispose()

    @pytest.mark.asyncio
    async def test_dispose_fails_pending(self) -> None:
        """dispose() should fail the running and queued commands."""
        factory = ChannelFactory()
        executor = make_executor(factory, ExecutorConfig(command_timeout=5.0))
        running = asyncio.create_task(executor.execute("running"))
        queued = asyncio.create_task(executor.execute("queued"))
        await wait_until(lambda: bool(factory.channels) and bool(factory.last.sent))

        await executor.dispose()

        with pytest.raises(TerminalConnectionError):
            await running
        with pytest.raises(ExecutorDisposedError):
            await queued
        assert executor.is_disposed is True
        assert factory.last.sent == [build_command("running", 1, executor.session)]

    @pytest.mark.asyncio
    async def test_execute_after_dispose(self) -> None:
        """execute() and connect() should refuse to run after dispose()."""
        executor = make_executor(ChannelFactory())
        await executor.dispose()
        await executor.dispose()

        with pytest.raises(ExecutorDisposedError):
            await executor.execute("ls")
        with pytest.raises(ExecutorDisposedError):
            await executor.connect()


class TestRedaction:
    """Tests for keeping secrets out of logs."""

    @pytest.mark.asyncio
    async def test_redacted_command_not_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Neither the command line nor its output should reach the logs."""
        secret = "c2VjcmV0LWNvbmZpZw=="

        def respond(sent: str) -> list[str]:
            return [sent.rstrip("\r") + "\r\n", marker_line(marker_of(sent))]

        factory = ChannelFactory(lambda: FakeChannel(respond))
        executor = make_executor(factory)
        caplog.set_level(logging.DEBUG, logger="termsync")
        try:
            result = await executor.execute(f"echo {secret} | base64 -d > conf", redact=True)
        finally:
            await executor.dispose()

        assert result.success is True
        assert secret not in caplog.text
        assert REDACTED in caplog.text

    @pytest.mark.asyncio
    async def test_redacted_output_drops_echo(self) -> None:
        """The result of a redacted command should keep errors but not the echoed secret."""
        secret = "W2RyaXZlXQp0eXBlID0gZHJpdmUKc2NvcGUgPSBkcml2ZQo="

        def respond(sent: str) -> list[str]:
            echo = sent.rstrip("\r")
            wrapped = "\r\n".join(echo[i : i + 30] for i in range(0, len(echo), 30))
            return [
                PROMPT + wrapped + "\r\n",
                "bash: conf: Read-only file system\r\n",
                marker_line(marker_of(sent), 1) + PROMPT,
            ]

        factory = ChannelFactory(lambda: FakeChannel(respond))
        executor = make_executor(factory)
        command = f"echo {secret} | base64 -d > conf"
        try:
            result = await executor.execute(command, redact=True)
        finally:
            await executor.dispose()

        assert result.exit_code == 1
        assert result.output == "bash: conf: Read-only file system"
        assert secret[:10] not in result.output


class TestSessionMarkers:
    """Tests for markers left over from earlier sessions."""

    @pytest.mark.asyncio
    async def test_other_session_marker_ignored(self) -> None:
        """A marker with the same request id but another token should not complete."""
        loop = asyncio.get_running_loop()
        request = PendingCommand(
            request_id=1,
            command="ls",
            redact=False,
            session=SESSION,
            future=loop.create_future(),
        )
        request.state = CommandState.AWAITING_MARKER
        assert request.feed(marker_line(marker_for(1, "0b7d2e44"), 0)) is False
        assert not request.future.done()

    @pytest.mark.asyncio
    async def test_replayed_scrollback(self) -> None:
        """Replayed output of an earlier process should not resolve the first command."""

        def respond(sent: str) -> list[str]:
            return [
                marker_line(marker_for(1, "0b7d2e44"), 0),
                "fresh\r\n",
                marker_line(marker_of(sent), 3),
            ]

        factory = ChannelFactory(lambda: FakeChannel(respond))
        executor = make_executor(factory)
        try:
            result = await executor.execute("ls")
        finally:
            await executor.dispose()

        assert result.exit_code == 3
        assert "fresh" in result.output

    def test_session_is_random(self) -> None:
        """Each executor should get its own token."""
        first = make_executor(ChannelFactory())
        second = make_executor(ChannelFactory())
        assert first.session != second.session
        assert len(first.session) == 8


class TestStripFraming:
    """Tests for strip_framing()."""

    def test_drops_echo_marker_and_prompt(self) -> None:
        """Should keep only what the command printed."""
        framed = build_command("rclone version", 4, SESSION)
        output = (
            f"{PROMPT}{framed.rstrip(chr(13))}\r\n"
            "rclone v1.68.2\r\n"
            "- os/version: ubuntu 22.04\r\n"
            f"{marker_for(4, SESSION)}:exit=0\r\n"
            f"{PROMPT}"
        )
        assert strip_framing(output) == "rclone v1.68.2\n- os/version: ubuntu 22.04"

    def test_keeps_plain_output(self) -> None:
        """Output without framing should pass through."""
        assert strip_framing("a\nb") == "a\nb"
