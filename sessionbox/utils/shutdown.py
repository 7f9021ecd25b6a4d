"""Signal-driven shutdown coordination.

The first termination signal (or fatal in-process error) starts a
shutdown; anything after that escalates. Exit codes:

    0  graceful shutdown finished before its deadline
    1  emergency cleanup ran (timeout, failure, or fatal error)
    2  forced exit after a repeated termination signal

The coordinator never calls ``sys.exit`` itself. It resolves an exit
code that ``wait()`` returns to the entry point.
"""

import asyncio
import signal
import threading
from typing import Any, Dict, List, Optional, Set

import structlog

from ..models.errors import EmergencyCleanupTimeout, GracefulShutdownTimeout
from ..services.cleanup import ResourceCleanupRegistry
from .timeouts import race_with_deadline

logger = structlog.get_logger(__name__)

EXIT_GRACEFUL = 0
EXIT_EMERGENCY = 1
EXIT_FORCED = 2

DEFAULT_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP", "SIGQUIT", "SIGUSR1", "SIGUSR2")


class ShutdownCoordinator:
    """Owns process signal handling and sequences graceful vs. emergency shutdown."""

    def __init__(
        self,
        registry: ResourceCleanupRegistry,
        graceful_timeout: float = 10.0,
        emergency_timeout: float = 5.0,
        force_exit_grace: float = 1.0,
        signals: Optional[List[str]] = None,
    ):
        """Initialize the coordinator.

        Args:
            registry: Registry whose resources are torn down on shutdown
            graceful_timeout: Deadline for the tiered graceful shutdown
            emergency_timeout: Deadline for emergency cleanup
            force_exit_grace: Cleanup window after a repeated signal
            signals: Signal names to handle (defaults to DEFAULT_SIGNALS)
        """
        self._registry = registry
        self._graceful_timeout = graceful_timeout
        self._emergency_timeout = emergency_timeout
        self._force_exit_grace = force_exit_grace
        self._signal_names = list(DEFAULT_SIGNALS if signals is None else signals)

        self._shutting_down = False
        self._forcing = False
        self._exit_code: Optional[int] = None
        self._exit_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed_signals: List[signal.Signals] = []
        self._previous_exception_handler = None
        self._previous_threading_excepthook = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    # ========================================================================
    # INSTALLATION
    # ========================================================================

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install signal handlers and fatal-error hooks on the running loop."""
        self._loop = loop or asyncio.get_running_loop()

        for name in self._signal_names:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                self._loop.add_signal_handler(signum, self.handle_signal, signum)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.warning("Cannot install signal handler", signal=name, error=str(e))
                continue
            self._installed_signals.append(signum)
            logger.debug("Signal handler registered", signal=name)

        self._previous_exception_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._loop_exception_handler)

        self._previous_threading_excepthook = threading.excepthook
        threading.excepthook = self._threading_excepthook

        logger.debug("Shutdown handlers installed")

    def remove(self) -> None:
        """Uninstall everything ``install`` set up."""
        if self._loop is None:
            return
        for signum in self._installed_signals:
            self._loop.remove_signal_handler(signum)
        self._installed_signals.clear()
        self._loop.set_exception_handler(self._previous_exception_handler)
        if self._previous_threading_excepthook is not None:
            threading.excepthook = self._previous_threading_excepthook
            self._previous_threading_excepthook = None
        logger.debug("Shutdown handlers removed")

    def _loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]
    ) -> None:
        exception = context.get("exception")
        if exception is None:
            loop.default_exception_handler(context)
            return
        logger.error(
            "Unhandled exception in event loop",
            message=context.get("message"),
            error=str(exception),
        )
        self.handle_critical_error("unhandled_task_exception", exception)

    def _threading_excepthook(self, args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        error = args.exc_value or RuntimeError(str(args.exc_type))
        self._loop.call_soon_threadsafe(
            self.handle_critical_error, "uncaught_thread_exception", error
        )

    # ========================================================================
    # TRIGGERS
    # ========================================================================

    def handle_signal(self, signum: int) -> None:
        """Start a graceful shutdown, or force exit if one is already running."""
        name = signal.Signals(signum).name
        if self._shutting_down:
            logger.warning("Received signal during shutdown, forcing exit", signal=name)
            self._force_exit()
            return

        self._shutting_down = True
        logger.info("Received signal, initiating graceful shutdown", signal=name)
        self._spawn(self._graceful_shutdown())

    def handle_critical_error(self, kind: str, error: BaseException) -> None:
        """React to a fatal in-process error by taking the emergency path."""
        if self._shutting_down:
            logger.error("Critical error during shutdown", kind=kind, error=str(error))
            self._exit(EXIT_EMERGENCY)
            return

        self._shutting_down = True
        logger.error("Critical error, attempting emergency cleanup", kind=kind, error=str(error))
        self._spawn(self._emergency_shutdown())

    async def trigger_shutdown(self, reason: Optional[str] = None) -> int:
        """Programmatically request shutdown and wait for the exit code."""
        if reason:
            logger.info("Shutdown triggered", reason=reason)
        self.handle_signal(signal.SIGTERM)
        return await self.wait()

    async def wait(self) -> int:
        """Block until an exit code has been decided."""
        await self._exit_event.wait()
        if self._exit_code is None:
            raise RuntimeError("Exit event set without an exit code")
        return self._exit_code

    # ========================================================================
    # SEQUENCES
    # ========================================================================

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _graceful_shutdown(self) -> None:
        try:
            report = await race_with_deadline(
                self._registry.shutdown(), self._graceful_timeout, label="graceful shutdown"
            )
        except asyncio.TimeoutError:
            logger.error(GracefulShutdownTimeout(self._graceful_timeout).message)
            logger.warning(
                "Graceful shutdown failed, attempting emergency cleanup",
                hint="Some resources may not be cleaned up properly",
            )
            await self._emergency_shutdown()
            return
        except Exception as e:
            logger.error("Graceful shutdown failed", error=str(e))
            await self._emergency_shutdown()
            return

        if report.failed:
            logger.warning(report.summary())
        else:
            logger.info(report.summary())
        logger.info("Graceful shutdown completed")
        self._exit(EXIT_GRACEFUL)

    async def _emergency_shutdown(self) -> None:
        try:
            report = await race_with_deadline(
                self._registry.emergency_cleanup(),
                self._emergency_timeout,
                label="emergency cleanup",
            )
            if report.failed:
                logger.error(report.summary())
            logger.warning("Emergency cleanup completed")
        except asyncio.TimeoutError:
            logger.error(
                EmergencyCleanupTimeout(self._emergency_timeout).message,
                hint="Some resources may still be running",
            )
        except Exception as e:
            logger.error(
                "Emergency cleanup failed",
                error=str(e),
                hint="Some resources may still be running",
            )
        finally:
            self._exit(EXIT_EMERGENCY)

    def _force_exit(self) -> None:
        if self._forcing:
            return
        self._forcing = True
        logger.error("Force exiting")
        self._spawn(self._forced_cleanup())

    async def _forced_cleanup(self) -> None:
        try:
            await race_with_deadline(
                self._registry.emergency_cleanup(),
                self._force_exit_grace,
                label="forced cleanup",
            )
        except asyncio.TimeoutError:
            logger.warning("Resources may still be running - manual cleanup may be required")
        except Exception as e:
            logger.debug("Error during forced cleanup", error=str(e))
        finally:
            self._exit(EXIT_FORCED)

    def _exit(self, code: int) -> None:
        if self._exit_code is not None:
            return
        self._exit_code = code
        logger.info("Exit code decided", exit_code=code)
        self._exit_event.set()
