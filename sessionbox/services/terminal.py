"""Websocket terminal server.

Bridges browser terminals to login shells inside the session container.
Each websocket connection gets its own exec session; frames are JSON
``{"type": "input" | "resize" | "control", "data": ...}`` inbound and
``{"type": "output", "data": "..."}`` outbound.
"""

import asyncio
import codecs
import contextlib
import json
import shlex
import socket
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..core.events import EventBus, ExecEnded, ExecError, ExecOutput
from ..models.exec import ExecOptions
from ..models.terminal import ControlData, ResizeData, TerminalMessage
from .container.exec import ExecSessionManager
from .container.manager import generate_session_id
from .container.utils import short_id
from .session_store import SessionStore

logger = structlog.get_logger(__name__)

GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
RED = "\x1b[31m"
RESET = "\x1b[0m"


def _banner(color: str, text: str) -> str:
    return f"\r\n{color}● {text}{RESET}\r\n"


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the shutdown coordinator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


@dataclass
class TerminalBridge:
    """One websocket connection and the shell behind it."""

    id: str
    websocket: WebSocket
    shell_key: Optional[str] = None
    is_active: bool = True
    # Output chunks can split multi-byte characters
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )


class TerminalServer:
    """FastAPI websocket server registered in the ``server`` cleanup tier."""

    def __init__(
        self,
        exec_manager: ExecSessionManager,
        event_bus: EventBus,
        host: str = "127.0.0.1",
        port: int = 3000,
        shell: str = "/bin/bash -l",
        working_dir: str = "/workspace",
        session_store: Optional[SessionStore] = None,
        session_id: Optional[str] = None,
        touch_interval: float = 30.0,
    ):
        self._exec_manager = exec_manager
        self._event_bus = event_bus
        self._host = host
        self._port = port
        self._shell = shlex.split(shell)
        self._working_dir = working_dir
        self._session_store = session_store
        self._session_id = session_id
        self._touch_interval = touch_interval
        self._last_touch: Optional[float] = None

        self._bridges: Dict[str, TerminalBridge] = {}
        self._by_shell_key: Dict[str, TerminalBridge] = {}
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

        self.app = self._create_app()

    @property
    def port(self) -> int:
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self._port

    @property
    def connection_count(self) -> int:
        return len(self._bridges)

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="sessionbox terminal", docs_url=None, redoc_url=None)

        @app.get("/health")
        async def health():
            return {
                "status": "healthy",
                "container_id": short_id(self._exec_manager.container_id),
                "terminals": self.connection_count,
                "active_exec_sessions": len(self._exec_manager.active_session_ids()),
            }

        @app.websocket("/ws/terminal")
        async def terminal(websocket: WebSocket):
            await websocket.accept()
            await self.handle_connection(websocket)

        return app

    # ========================================================================
    # SERVER LIFECYCLE
    # ========================================================================

    async def start(self, startup_timeout: float = 5.0) -> None:
        """Bind the socket and start serving in the background.

        Raises:
            OSError: The address could not be bound
            RuntimeError: The server did not come up within ``startup_timeout``
        """
        self._event_bus.register_handler(ExecOutput, self._on_exec_output)
        self._event_bus.register_handler(ExecError, self._on_exec_error)
        self._event_bus.register_handler(ExecEnded, self._on_exec_ended)

        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind((self._host, self._port))
        self._socket.set_inheritable(True)

        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        waited = 0.0
        while not self._server.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise RuntimeError("Terminal server exited during startup")
            if waited >= startup_timeout:
                raise RuntimeError("Terminal server did not start in time")
            await asyncio.sleep(0.05)
            waited += 0.05

        logger.info("Terminal server started", host=self._host, port=self.port)

    async def stop(self) -> None:
        """Close every terminal, then stop accepting connections."""
        for bridge_id in list(self._bridges):
            await self.close_bridge(bridge_id)

        self._event_bus.unregister_handler(ExecOutput, self._on_exec_output)
        self._event_bus.unregister_handler(ExecError, self._on_exec_error)
        self._event_bus.unregister_handler(ExecEnded, self._on_exec_ended)

        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
            self._serve_task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        logger.info("Terminal server stopped")

    # ========================================================================
    # CONNECTIONS
    # ========================================================================

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one accepted websocket until it disconnects."""
        bridge = TerminalBridge(id=generate_session_id("terminal"), websocket=websocket)
        self._bridges[bridge.id] = bridge
        logger.info("New terminal connection", terminal_id=bridge.id)
        await self.record_activity(force=True)

        await self._send_output(bridge, _banner(GREEN, "Terminal connected to Docker container"))
        await self._start_shell(bridge)

        try:
            while bridge.is_active:
                raw = await websocket.receive_text()
                await self.handle_message(bridge, raw)
        except (WebSocketDisconnect, RuntimeError):
            # RuntimeError: the socket was closed from this side (shell ended or server stopping)
            logger.info("Terminal connection closed", terminal_id=bridge.id)
        finally:
            await self.close_bridge(bridge.id)

    async def _start_shell(self, bridge: TerminalBridge) -> None:
        shell_key = generate_session_id("shell")
        bridge.shell_key = shell_key
        self._by_shell_key[shell_key] = bridge
        try:
            await self._exec_manager.create_exec_session(
                shell_key,
                ExecOptions(cmd=list(self._shell), working_dir=self._working_dir),
            )
            await self._exec_manager.start_exec_session(shell_key)
            logger.info("Started shell session", terminal_id=bridge.id, shell_key=shell_key)
        except Exception as e:
            logger.error("Failed to start shell", terminal_id=bridge.id, error=str(e))
            self._by_shell_key.pop(shell_key, None)
            bridge.shell_key = None
            await self._send_output(bridge, _banner(RED, f"Failed to start shell: {e}"))

    async def handle_message(self, bridge: TerminalBridge, raw: str) -> None:
        """Dispatch one inbound frame; malformed frames are logged and dropped."""
        try:
            message = TerminalMessage.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Invalid terminal message", terminal_id=bridge.id, error=str(e))
            return

        await self.record_activity()

        if bridge.shell_key is None:
            logger.warning("No shell session for terminal", terminal_id=bridge.id)
            return

        if message.type == "input" and isinstance(message.data, str):
            if not await self._exec_manager.write(bridge.shell_key, message.data):
                logger.debug("Shell input not accepted", shell_key=bridge.shell_key)
        elif message.type == "resize" and isinstance(message.data, ResizeData):
            await self._exec_manager.resize(
                bridge.shell_key, message.data.cols, message.data.rows
            )
        elif message.type == "control" and isinstance(message.data, ControlData):
            await self._exec_manager.kill(bridge.shell_key, message.data.signal)
        else:
            logger.warning(
                "Unsupported terminal message", terminal_id=bridge.id, type=message.type
            )

    async def record_activity(self, force: bool = False) -> None:
        """Extend the session's expiry, at most once per ``touch_interval``."""
        if self._session_store is None or self._session_id is None:
            return
        now = time.monotonic()
        if (
            not force
            and self._last_touch is not None
            and now - self._last_touch < self._touch_interval
        ):
            return
        self._last_touch = now
        try:
            if not await self._session_store.touch_session(self._session_id):
                logger.warning("Session not found for activity", session_id=self._session_id)
        except Exception as e:
            logger.error(
                "Failed to record session activity",
                session_id=self._session_id,
                error=str(e),
            )

    async def close_bridge(self, bridge_id: str) -> None:
        bridge = self._bridges.pop(bridge_id, None)
        if bridge is None:
            return
        bridge.is_active = False
        if bridge.shell_key:
            self._by_shell_key.pop(bridge.shell_key, None)
            self._exec_manager.cleanup(bridge.shell_key)
        try:
            await bridge.websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass
        logger.info("Cleaned up terminal", terminal_id=bridge_id)

    # ========================================================================
    # EXEC EVENTS
    # ========================================================================

    async def _send_output(self, bridge: TerminalBridge, text: str) -> None:
        try:
            await bridge.websocket.send_text(json.dumps({"type": "output", "data": text}))
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug("Dropping output for closed terminal", terminal_id=bridge.id, error=str(e))

    async def _on_exec_output(self, event: ExecOutput) -> None:
        bridge = self._by_shell_key.get(event.key)
        if bridge is not None:
            text = bridge.decoder.decode(event.data)
            if text:
                await self._send_output(bridge, text)

    async def _on_exec_error(self, event: ExecError) -> None:
        bridge = self._by_shell_key.get(event.key)
        if bridge is not None:
            await self._send_output(bridge, _banner(RED, f"Shell session error: {event.error}"))

    async def _on_exec_ended(self, event: ExecEnded) -> None:
        bridge = self._by_shell_key.get(event.key)
        if bridge is not None:
            await self._send_output(bridge, _banner(YELLOW, "Shell session ended"))
            await self.close_bridge(bridge.id)
