"""Interactive exec sessions inside a running container.

Each exec session is keyed by a caller-chosen string and wraps one
hijacked engine socket. Output, errors and end-of-stream are published
on the event bus as ``ExecOutput`` / ``ExecError`` / ``ExecEnded``;
errors and end also tear the session down.
"""

import asyncio
import socket
from typing import Awaitable, Callable, Dict, List, Optional, Union

import docker
import structlog
from docker.errors import DockerException
from docker.utils.socket import SocketError, next_frame_header, read_exactly

from ...core.events import EventBus, ExecEnded, ExecError, ExecOutput
from ...models.errors import ExecSessionNotFoundError, StreamFault
from ...models.exec import ExecOptions, ExecSession
from .utils import run_in_executor, short_id

logger = structlog.get_logger(__name__)

DataCallback = Callable[[bytes], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]
EndCallback = Callable[[], Awaitable[None]]


class ExecStream:
    """Duplex wrapper around a hijacked exec socket.

    Reads run in the default executor; writes are queued and drained by
    a single writer task so their order is preserved. ``write`` returns
    False once the queued byte count reaches ``high_water_mark``.
    """

    def __init__(
        self,
        key: str,
        sock,
        tty: bool = True,
        chunk_size: int = 4096,
        high_water_mark: int = 64 * 1024,
    ):
        self.key = key
        self._sock = sock
        self._raw = getattr(sock, "_sock", sock)
        self._tty = tty
        self._chunk_size = chunk_size
        self._high_water_mark = high_water_mark
        self._queue: "asyncio.Queue[bytes]" = asyncio.Queue()
        self._pending = 0
        self._closed = False
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_bytes(self) -> int:
        return self._pending

    def attach(self, on_data: DataCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        """Start the reader and writer tasks."""
        self._reader_task = asyncio.create_task(self._read_loop(on_data, on_error, on_end))
        self._writer_task = asyncio.create_task(self._write_loop(on_error))

    def write(self, data: Union[str, bytes]) -> bool:
        """Queue bytes for the process's stdin.

        Returns:
            False if the stream is closed or the queue is above the high-water mark
        """
        if self._closed:
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._pending += len(data)
        self._queue.put_nowait(data)
        return self._pending < self._high_water_mark

    def end(self) -> None:
        """Close both directions of the socket and stop the writer."""
        if self._closed:
            return
        self._closed = True
        # The writer may be ending its own stream from its error path
        writer = self._writer_task
        if writer is not None and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()
        try:
            self._raw.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def _read_chunk(self) -> bytes:
        if self._tty:
            return self._raw.recv(self._chunk_size)
        # Without a TTY the engine multiplexes stdout/stderr into frames
        while True:
            _, size = next_frame_header(self._sock)
            if size < 0:
                return b""
            if size > 0:
                return read_exactly(self._sock, size)

    async def _read_loop(
        self, on_data: DataCallback, on_error: ErrorCallback, on_end: EndCallback
    ) -> None:
        while not self._closed:
            try:
                data = await run_in_executor(self._read_chunk)
            except (OSError, DockerException, SocketError) as e:
                if self._closed:
                    return
                await on_error(e)
                return
            if not data:
                if not self._closed:
                    await on_end()
                return
            await on_data(data)

    async def _write_loop(self, on_error: ErrorCallback) -> None:
        while True:
            data = await self._queue.get()
            try:
                await run_in_executor(self._raw.sendall, data)
            except OSError as e:
                if not self._closed:
                    await on_error(e)
                return
            finally:
                self._pending -= len(data)


class ExecSessionManager:
    """Manages interactive exec sessions bound to one container."""

    def __init__(
        self,
        client: docker.DockerClient,
        container_id: str,
        event_bus: EventBus,
        default_working_dir: str = "/workspace",
        high_water_mark: int = 64 * 1024,
    ):
        self._client = client
        self._container_id = container_id
        self._event_bus = event_bus
        self._default_working_dir = default_working_dir
        self._high_water_mark = high_water_mark
        self._sessions: Dict[str, ExecSession] = {}

    @property
    def container_id(self) -> str:
        return self._container_id

    def get_session(self, key: str) -> Optional[ExecSession]:
        return self._sessions.get(key)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def create_exec_session(self, key: str, options: ExecOptions) -> ExecSession:
        """Create an exec instance and register it as an inactive session.

        Args:
            key: Caller-chosen session key
            options: Command, environment and attach settings

        Returns:
            The registered (not yet started) session

        Raises:
            docker.errors.APIError: The engine rejected the exec
        """
        logger.info("Creating exec session", key=key, cmd=" ".join(options.cmd))
        try:
            exec_info = await run_in_executor(
                self._client.api.exec_create,
                self._container_id,
                options.cmd,
                stdout=options.attach_stdout,
                stderr=options.attach_stderr,
                stdin=options.attach_stdin,
                tty=options.tty,
                environment=options.env or None,
                workdir=options.working_dir or self._default_working_dir,
                user=options.user or "",
            )
        except DockerException as e:
            logger.error("Failed to create exec session", key=key, error=str(e))
            raise

        if key in self._sessions:
            logger.warning("Replacing existing exec session", key=key)
            self.cleanup(key)

        session = ExecSession(
            key=key,
            container_id=self._container_id,
            exec_id=exec_info["Id"],
            options=options,
        )
        self._sessions[key] = session
        return session

    async def start_exec_session(self, key: str) -> ExecStream:
        """Attach to the exec and start streaming.

        Raises:
            ExecSessionNotFoundError: No session is registered under ``key``
            StreamFault: The engine refused to start or attach
        """
        session = self._sessions.get(key)
        if session is None:
            raise ExecSessionNotFoundError(key)

        logger.info("Starting exec session", key=key, container_id=short_id(self._container_id))
        try:
            sock = await run_in_executor(
                self._client.api.exec_start,
                session.exec_id,
                tty=session.options.tty,
                socket=True,
            )
        except DockerException as e:
            logger.error("Failed to start exec session", key=key, error=str(e))
            self.cleanup(key)
            raise StreamFault(key, str(e)) from e

        stream = ExecStream(
            key, sock, tty=session.options.tty, high_water_mark=self._high_water_mark
        )
        session.stream = stream
        session.is_active = True
        stream.attach(
            on_data=lambda data: self._on_output(stream, data),
            on_error=lambda error: self._on_error(stream, error),
            on_end=lambda: self._on_end(stream),
        )
        return stream

    def _owns(self, stream: ExecStream) -> bool:
        session = self._sessions.get(stream.key)
        return session is not None and session.stream is stream

    async def _on_output(self, stream: ExecStream, data: bytes) -> None:
        if self._owns(stream):
            await self._event_bus.publish(ExecOutput(key=stream.key, data=data))

    async def _on_error(self, stream: ExecStream, error: Exception) -> None:
        if not self._owns(stream):
            stream.end()
            return
        logger.error("Exec session stream error", key=stream.key, error=str(error))
        self.cleanup(stream.key)
        await self._event_bus.publish(ExecError(key=stream.key, error=str(error)))

    async def _on_end(self, stream: ExecStream) -> None:
        if not self._owns(stream):
            stream.end()
            return
        logger.info("Exec session stream ended", key=stream.key)
        self.cleanup(stream.key)
        await self._event_bus.publish(ExecEnded(key=stream.key))

    # ========================================================================
    # I/O
    # ========================================================================

    async def write(self, key: str, data: Union[str, bytes]) -> bool:
        """Forward input to the session.

        Returns:
            False if the session is unknown, inactive, or applying back-pressure
        """
        session = self._sessions.get(key)
        if session is None or session.stream is None or not session.is_active:
            logger.warning("Cannot write to inactive exec session", key=key)
            return False
        return session.stream.write(data)

    async def resize(self, key: str, cols: int, rows: int) -> None:
        session = self._sessions.get(key)
        if session is None or not session.is_active:
            logger.warning("Cannot resize inactive exec session", key=key)
            return
        try:
            await run_in_executor(
                self._client.api.exec_resize, session.exec_id, height=rows, width=cols
            )
            logger.debug("Resized exec session", key=key, cols=cols, rows=rows)
        except DockerException as e:
            logger.error("Failed to resize exec session", key=key, error=str(e))

    async def kill(self, key: str, signal: str = "SIGTERM") -> None:
        """Signal the container process, then always clean the session up."""
        session = self._sessions.get(key)
        if session is None:
            logger.warning("Exec session not found for kill", key=key)
            return
        try:
            if session.stream is not None and session.is_active:
                await run_in_executor(
                    self._client.api.kill, self._container_id, signal=signal
                )
                logger.info("Sent signal to exec session", key=key, signal=signal)
        except DockerException as e:
            logger.error("Failed to kill exec session", key=key, signal=signal, error=str(e))
        finally:
            self.cleanup(key)

    # ========================================================================
    # CLEANUP
    # ========================================================================

    def cleanup(self, key: str) -> None:
        """Deactivate, close and forget one session. Unknown keys are ignored."""
        session = self._sessions.pop(key, None)
        if session is None:
            return
        session.is_active = False
        if session.stream is not None:
            try:
                session.stream.end()
            except OSError as e:
                logger.error("Error ending stream for exec session", key=key, error=str(e))
        logger.info("Cleaned up exec session", key=key)

    def cleanup_all(self) -> None:
        logger.info("Cleaning up all exec sessions", count=len(self._sessions))
        for key in list(self._sessions):
            self.cleanup(key)

    def active_session_ids(self) -> List[str]:
        return [key for key, session in self._sessions.items() if session.is_active]

    def is_session_active(self, key: str) -> bool:
        session = self._sessions.get(key)
        return bool(session and session.is_active)
