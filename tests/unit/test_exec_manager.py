"""Unit tests for ExecSessionManager and ExecStream."""

import asyncio
import threading

import pytest
from docker.errors import DockerException
from unittest.mock import MagicMock, patch

from sessionbox.core.events import ExecEnded, ExecError, ExecOutput
from sessionbox.models.errors import ExecSessionNotFoundError, StreamFault
from sessionbox.models.exec import ExecOptions
from sessionbox.services.container.exec import ExecSessionManager, ExecStream


async def wait_until(predicate, timeout: float = 2.0):
    waited = 0.0
    while not predicate():
        if waited >= timeout:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
        waited += 0.01


def blocking_socket():
    """Hijacked socket whose reads block until ``release`` is set."""
    release = threading.Event()
    sock = MagicMock()

    def recv(size):
        release.wait(2)
        return b""

    sock._sock.recv.side_effect = recv
    sock.release = release
    return sock


def scripted_socket(*chunks):
    sock = MagicMock()
    sock._sock.recv.side_effect = list(chunks) + [b""]
    return sock


@pytest.fixture
def exec_manager(mock_docker_client, event_bus):
    return ExecSessionManager(mock_docker_client, "container-abc", event_bus)


@pytest.fixture
def recorded_events(event_bus):
    events = []
    for event_type in (ExecOutput, ExecError, ExecEnded):
        event_bus.register_handler(event_type, events.append)
    return events


class TestInactiveSessions:
    """Test operations on unknown or inactive keys."""

    @pytest.mark.asyncio
    async def test_start_unknown_key_raises(self, exec_manager):
        with pytest.raises(ExecSessionNotFoundError):
            await exec_manager.start_exec_session("missing")

    @pytest.mark.asyncio
    async def test_write_unknown_key_returns_false(self, exec_manager):
        assert await exec_manager.write("missing", "ls\n") is False

    @pytest.mark.asyncio
    async def test_resize_unknown_key_is_noop(self, exec_manager, mock_docker_client):
        await exec_manager.resize("missing", 80, 24)
        mock_docker_client.api.exec_resize.assert_not_called()

    @pytest.mark.asyncio
    async def test_kill_unknown_key_is_noop(self, exec_manager, mock_docker_client):
        await exec_manager.kill("missing")
        mock_docker_client.api.kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_created_but_not_started_is_inactive(self, exec_manager):
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))

        assert exec_manager.is_session_active("shell") is False
        assert await exec_manager.write("shell", "x") is False

    def test_cleanup_unknown_key_is_noop(self, exec_manager):
        exec_manager.cleanup("missing")
        exec_manager.cleanup("missing")


class TestCreate:
    """Test exec creation."""

    @pytest.mark.asyncio
    async def test_create_uses_default_working_dir(self, exec_manager, mock_docker_client):
        session = await exec_manager.create_exec_session(
            "shell", ExecOptions(cmd=["/bin/bash", "-l"], env=["TERM=xterm"])
        )

        assert session.exec_id == "exec-123"
        args = mock_docker_client.api.exec_create.call_args
        assert args.args == ("container-abc", ["/bin/bash", "-l"])
        assert args.kwargs["workdir"] == "/workspace"
        assert args.kwargs["tty"] is True
        assert args.kwargs["stdin"] is True
        assert args.kwargs["environment"] == ["TERM=xterm"]

    @pytest.mark.asyncio
    async def test_create_engine_error_propagates(self, exec_manager, mock_docker_client):
        mock_docker_client.api.exec_create.side_effect = DockerException("container not running")
        with pytest.raises(DockerException):
            await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        assert exec_manager.get_session("shell") is None


class TestStreaming:
    """Test started sessions."""

    @pytest.mark.asyncio
    async def test_output_then_end_events(
        self, exec_manager, mock_docker_client, recorded_events
    ):
        """Test output is published and end-of-stream tears the session down."""
        mock_docker_client.api.exec_start.return_value = scripted_socket(b"hello ", b"world")
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")

        await wait_until(lambda: any(isinstance(e, ExecEnded) for e in recorded_events))

        outputs = [e.data for e in recorded_events if isinstance(e, ExecOutput)]
        assert b"".join(outputs) == b"hello world"
        assert isinstance(recorded_events[-1], ExecEnded)
        # Session is cleaned up before the end event is observed
        assert exec_manager.get_session("shell") is None
        assert exec_manager.active_session_ids() == []

    @pytest.mark.asyncio
    async def test_read_error_publishes_error(
        self, exec_manager, mock_docker_client, recorded_events
    ):
        sock = MagicMock()
        sock._sock.recv.side_effect = ConnectionResetError("reset by peer")
        mock_docker_client.api.exec_start.return_value = sock
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")

        await wait_until(lambda: any(isinstance(e, ExecError) for e in recorded_events))

        error = next(e for e in recorded_events if isinstance(e, ExecError))
        assert "reset by peer" in error.error
        assert exec_manager.is_session_active("shell") is False

    @pytest.mark.asyncio
    async def test_start_failure_raises_stream_fault(self, exec_manager, mock_docker_client):
        mock_docker_client.api.exec_start.side_effect = DockerException("hijack failed")
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))

        with pytest.raises(StreamFault):
            await exec_manager.start_exec_session("shell")
        assert exec_manager.get_session("shell") is None

    @pytest.mark.asyncio
    async def test_write_and_resize_active_session(self, exec_manager, mock_docker_client):
        sock = blocking_socket()
        mock_docker_client.api.exec_start.return_value = sock
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")

        try:
            assert exec_manager.is_session_active("shell") is True
            assert await exec_manager.write("shell", "ls\n") is True
            await wait_until(lambda: sock._sock.sendall.called)
            sock._sock.sendall.assert_called_with(b"ls\n")

            await exec_manager.resize("shell", 120, 40)
            mock_docker_client.api.exec_resize.assert_called_once_with(
                "exec-123", height=40, width=120
            )
        finally:
            exec_manager.cleanup_all()
            sock.release.set()
            await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_kill_signals_and_cleans_up(self, exec_manager, mock_docker_client):
        sock = blocking_socket()
        mock_docker_client.api.exec_start.return_value = sock
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")

        try:
            await exec_manager.kill("shell", "SIGINT")
            mock_docker_client.api.kill.assert_called_once_with("container-abc", signal="SIGINT")
            assert exec_manager.get_session("shell") is None
            sock.close.assert_called_once()

            # Redundant kill is a no-op
            await exec_manager.kill("shell", "SIGINT")
            assert mock_docker_client.api.kill.call_count == 1
        finally:
            sock.release.set()
            await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_kill_cleans_up_even_when_signal_fails(self, exec_manager, mock_docker_client):
        sock = blocking_socket()
        mock_docker_client.api.exec_start.return_value = sock
        mock_docker_client.api.kill.side_effect = DockerException("no such process")
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")

        try:
            await exec_manager.kill("shell")
            assert exec_manager.get_session("shell") is None
        finally:
            sock.release.set()
            await asyncio.sleep(0.05)


class TestExecStream:
    """Test the duplex stream wrapper directly."""

    @pytest.mark.asyncio
    async def test_write_reports_back_pressure(self):
        stream = ExecStream("k", MagicMock(), high_water_mark=4)
        assert stream.write("ab") is True
        assert stream.write("cdef") is False
        assert stream.pending_bytes == 6

    @pytest.mark.asyncio
    async def test_write_after_end_returns_false(self):
        sock = MagicMock()
        stream = ExecStream("k", sock)
        stream.end()
        stream.end()

        assert stream.closed is True
        assert stream.write("x") is False
        sock.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_zero_length_frame_is_not_end_of_stream(self):
        stream = ExecStream("k", MagicMock(), tty=False)
        headers = [(1, 0), (1, 3), (-1, -1)]
        with patch(
            "sessionbox.services.container.exec.next_frame_header", side_effect=headers
        ), patch(
            "sessionbox.services.container.exec.read_exactly", return_value=b"abc"
        ) as read_exactly:
            assert stream._read_chunk() == b"abc"
            assert stream._read_chunk() == b""

        read_exactly.assert_called_once()


class TestStreamFailures:
    """Test write failures and key reuse."""

    @pytest.mark.asyncio
    async def test_write_failure_publishes_error(
        self, exec_manager, mock_docker_client, event_bus
    ):
        sock = blocking_socket()
        sock._sock.sendall.side_effect = BrokenPipeError("broken pipe")
        mock_docker_client.api.exec_start.return_value = sock
        received = []

        async def slow_handler(event):
            await asyncio.sleep(0.01)
            received.append(("async", event))

        event_bus.register_handler(ExecError, slow_handler)
        event_bus.register_handler(ExecError, lambda event: received.append(("sync", event)))

        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        await exec_manager.start_exec_session("shell")
        try:
            assert await exec_manager.write("shell", "ls\n") is True
            await wait_until(lambda: len(received) == 2)

            assert [kind for kind, _ in received] == ["async", "sync"]
            assert all("broken pipe" in event.error for _, event in received)
            assert exec_manager.get_session("shell") is None
            sock.close.assert_called_once()
        finally:
            sock.release.set()
            await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_reused_key_replaces_old_stream(
        self, exec_manager, mock_docker_client, recorded_events
    ):
        old_sock = blocking_socket()
        new_sock = blocking_socket()
        mock_docker_client.api.exec_start.side_effect = [old_sock, new_sock]

        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))
        old_stream = await exec_manager.start_exec_session("shell")
        await exec_manager.create_exec_session("shell", ExecOptions(cmd=["bash"]))

        assert old_stream.closed is True
        old_sock.close.assert_called_once()

        new_stream = await exec_manager.start_exec_session("shell")
        try:
            old_sock.release.set()
            await asyncio.sleep(0.05)

            assert exec_manager.get_session("shell").stream is new_stream
            assert exec_manager.is_session_active("shell") is True
            assert new_stream.closed is False
            assert not any(isinstance(e, ExecEnded) for e in recorded_events)
        finally:
            exec_manager.cleanup_all()
            new_sock.release.set()
            await asyncio.sleep(0.05)
