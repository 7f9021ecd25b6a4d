"""Session expiry reaper.

Periodically asks the session store for expired sessions and tears them
down in fixed-size batches. Batches run one after another; sessions in a
batch run concurrently and fail independently. A failed session stays
in the store with status ``error`` and an incremented ``error_count`` so
a later cycle can retry it, until ``max_retries`` is reached.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import structlog

from ..core.events import (
    CleanupCompleted,
    CleanupError,
    EventBus,
    SessionCleaned,
    SessionCleanupError,
    SessionDeleted,
    SessionExpired,
)
from ..models.errors import CleanupFailure
from ..models.session import Session, SessionStatus
from .container.manager import ContainerManager
from .container.utils import short_id
from .session_store import SessionStore

logger = structlog.get_logger(__name__)


class SessionExpiryReaper:
    """Finds expired sessions and removes them together with their containers."""

    def __init__(
        self,
        session_store: SessionStore,
        container_manager: ContainerManager,
        event_bus: EventBus,
        interval_seconds: float = 300.0,
        batch_size: int = 10,
        max_retries: int = 3,
    ):
        """Initialize the reaper.

        Args:
            session_store: Store the sessions are read from and deleted in
            container_manager: Manager used to stop and remove containers
            event_bus: Bus for lifecycle events
            interval_seconds: Delay between periodic cycles
            batch_size: Sessions cleaned concurrently per batch
            max_retries: Failed cleanups after which a session is skipped
        """
        self._store = session_store
        self._containers = container_manager
        self._event_bus = event_bus
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._max_retries = max_retries

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._last_run: Optional[datetime] = None
        self._cycles = 0

        self._event_bus.register_handler(SessionExpired, self._on_session_expired)
        self._event_bus.register_handler(SessionDeleted, self._on_session_deleted)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic cleanup loop."""
        if self._running:
            logger.warning("Session reaper is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Session reaper started",
            interval_seconds=self._interval,
            batch_size=self._batch_size,
            max_retries=self._max_retries,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for scheduled one-off cleanups."""
        if not self._running:
            return
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        self._event_bus.unregister_handler(SessionExpired, self._on_session_expired)
        self._event_bus.unregister_handler(SessionDeleted, self._on_session_deleted)
        logger.info("Session reaper stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.run_cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Scheduled cleanup failed", error=str(e))

    # ========================================================================
    # CLEANUP CYCLE
    # ========================================================================

    async def run_cleanup(self) -> CleanupCompleted:
        """Run one cleanup cycle over every expired session.

        Returns:
            The ``CleanupCompleted`` event that was published
        """
        started = time.monotonic()
        try:
            expired = await self._store.find_expired_sessions()
        except Exception as e:
            logger.error("Error during cleanup cycle", error=str(e))
            await self._event_bus.publish(CleanupError(error=str(e)))
            raise

        candidates = [s for s in expired if s.error_count < self._max_retries]
        skipped = len(expired) - len(candidates)
        if skipped:
            logger.warning(
                "Skipping sessions that exceeded cleanup retries",
                count=skipped,
                max_retries=self._max_retries,
            )

        successful = 0
        if candidates:
            logger.info("Found expired sessions to clean up", count=len(candidates))
        for start in range(0, len(candidates), self._batch_size):
            batch = candidates[start:start + self._batch_size]
            successful += await self._process_batch(batch)

        self._cycles += 1
        self._last_run = datetime.now(timezone.utc)
        event = CleanupCompleted(
            total=len(candidates),
            successful=successful,
            failed=len(candidates) - successful,
            skipped=skipped,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        logger.info(
            "Cleanup cycle completed",
            total=event.total,
            successful=event.successful,
            failed=event.failed,
            skipped=event.skipped,
        )
        await self._event_bus.publish(event)
        return event

    async def _process_batch(self, sessions: List[Session]) -> int:
        results = await asyncio.gather(
            *(self.cleanup_session(s.id) for s in sessions), return_exceptions=True
        )
        successful = sum(1 for r in results if r is True)
        failures = [s.id for s, r in zip(sessions, results) if r is not True]
        logger.info(
            "Batch cleanup completed",
            total=len(sessions),
            successful=successful,
            failed=len(failures),
        )
        if failures:
            logger.warning("Failed to clean up sessions", session_ids=failures)
        return successful

    async def cleanup_session(self, session_id: str) -> bool:
        """Stop a session's container and delete the session record.

        Returns:
            True if the session was cleaned up; False if it was missing,
            already being cleaned, or the cleanup failed
        """
        if session_id in self._in_flight:
            logger.debug("Session cleanup already in progress", session_id=session_id)
            return False

        self._in_flight.add(session_id)
        try:
            return await self._cleanup_session(session_id)
        finally:
            self._in_flight.discard(session_id)

    async def _cleanup_session(self, session_id: str) -> bool:
        session = await self._store.get_session(session_id)
        if session is None:
            logger.warning("Session not found for cleanup", session_id=session_id)
            return False

        try:
            logger.info(
                "Cleaning up session",
                session_id=session_id,
                user_id=session.user_id,
                status=session.status.value,
            )
            await self._store.update_session(session_id, status=SessionStatus.STOPPING)

            if session.container_id:
                await self._stop_container(session.container_id, session.container_name)

            await self._store.delete_session(session_id)
        except Exception as e:
            error_count = session.error_count + 1
            logger.error(
                "Failed to clean up session",
                session_id=session_id,
                error=str(e),
                error_count=error_count,
            )
            metadata: Dict[str, Any] = dict(session.metadata)
            metadata["error_count"] = error_count
            await self._store.update_session(
                session_id, status=SessionStatus.ERROR, metadata=metadata
            )
            await self._event_bus.publish(
                SessionCleanupError(session_id=session_id, error=str(e), error_count=error_count)
            )
            return False

        logger.info("Session cleanup completed", session_id=session_id)
        await self._event_bus.publish(
            SessionCleaned(session_id=session_id, container_id=session.container_id)
        )
        return True

    async def _stop_container(self, container_id: str, container_name: Optional[str]) -> None:
        logger.debug(
            "Cleaning up container",
            container_id=short_id(container_id),
            container_name=container_name,
        )
        if not await self._containers.stop(container_id):
            raise CleanupFailure(
                f"container-{container_id}", "failed to stop and remove container"
            )

    # ========================================================================
    # EVENT TRIGGERS
    # ========================================================================

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_session_expired(self, event: SessionExpired) -> None:
        logger.info("Session expired, scheduling cleanup", session_id=event.session_id)
        self._schedule(self.cleanup_session(event.session_id))

    async def _on_session_deleted(self, event: SessionDeleted) -> None:
        if not event.container_id or event.status == SessionStatus.STOPPED.value:
            return
        # Sessions deleted by the reaper itself are mid-cleanup with status "stopping"
        if event.session_id in self._in_flight:
            return
        logger.info(
            "Session deleted with active container, scheduling cleanup",
            session_id=event.session_id,
            container_id=short_id(event.container_id),
        )
        self._schedule(self._cleanup_orphaned_container(event))

    async def _cleanup_orphaned_container(self, event: SessionDeleted) -> None:
        try:
            await self._stop_container(event.container_id, None)
        except Exception as e:
            logger.error(
                "Failed to clean up container for deleted session",
                session_id=event.session_id,
                error=str(e),
            )

    # ========================================================================
    # STATS
    # ========================================================================

    def stats(self) -> Dict[str, Any]:
        next_run = None
        if self._running and self._last_run is not None:
            next_run = (self._last_run + timedelta(seconds=self._interval)).isoformat()
        return {
            "is_running": self._running,
            "interval_seconds": self._interval,
            "batch_size": self._batch_size,
            "max_retries": self._max_retries,
            "cycles": self._cycles,
            "in_flight": len(self._in_flight),
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "next_run": next_run,
        }
