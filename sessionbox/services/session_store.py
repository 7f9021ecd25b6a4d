"""Session storage.

The lifecycle layer consumes sessions; it never invents them. Stores
publish ``SessionExpired`` when a sweep finds expired sessions and
``SessionDeleted`` whenever a record is removed.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import structlog

from ..core.events import EventBus, SessionDeleted, SessionExpired
from ..core.pool import RedisPool
from ..models.session import Session

logger = structlog.get_logger(__name__)


class SessionStore(Protocol):
    """Operations the lifecycle layer needs from a session store."""

    async def create_session(self, session: Session) -> bool:
        ...

    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    async def update_session(self, session_id: str, **updates: Any) -> bool:
        ...

    async def touch_session(self, session_id: str) -> bool:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...

    async def find_expired_sessions(self) -> List[Session]:
        ...

    async def sweep_expired(self) -> int:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore:
    """Process-local session store."""

    def __init__(self, event_bus: EventBus, ttl_minutes: int = 240):
        self._event_bus = event_bus
        self._ttl = timedelta(minutes=ttl_minutes)
        self._sessions: Dict[str, Session] = {}

    async def create_session(self, session: Session) -> bool:
        if session.id in self._sessions:
            logger.warning("Session already exists", session_id=session.id)
            return False
        if session.expires_at is None:
            session.expires_at = session.last_activity + self._ttl
        self._sessions[session.id] = session
        logger.info("Session created", session_id=session.id, user_id=session.user_id)
        return True

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def update_session(self, session_id: str, **updates: Any) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._sessions[session_id] = session.with_updates(**updates)
        logger.debug("Session updated", session_id=session_id, fields=list(updates))
        return True

    async def touch_session(self, session_id: str) -> bool:
        """Record activity and push the expiry out by one TTL."""
        now = _now()
        return await self.update_session(
            session_id, last_activity=now, expires_at=now + self._ttl
        )

    async def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("Session deleted", session_id=session_id, user_id=session.user_id)
        await self._event_bus.publish(
            SessionDeleted(
                session_id=session.id,
                container_id=session.container_id,
                status=session.status.value,
            )
        )
        return True

    async def find_expired_sessions(self) -> List[Session]:
        now = _now()
        return [s for s in self._sessions.values() if s.is_expired(now)]

    async def sweep_expired(self) -> int:
        """Publish ``SessionExpired`` for every expired session.

        Returns:
            Number of expired sessions found
        """
        expired = await self.find_expired_sessions()
        if expired:
            logger.info("Found expired sessions", count=len(expired))
        for session in expired:
            await self._event_bus.publish(SessionExpired(session_id=session.id))
        return len(expired)


class RedisSessionStore:
    """Session store shared through Redis.

    Each session is one JSON string under ``<prefix>:<id>``; the set
    ``<prefix>:index`` holds every known id.
    """

    def __init__(
        self,
        event_bus: EventBus,
        redis_pool: RedisPool,
        ttl_minutes: int = 240,
        key_prefix: str = "sessionbox:sessions",
    ):
        self._event_bus = event_bus
        self._redis_pool = redis_pool
        self._ttl = timedelta(minutes=ttl_minutes)
        self._prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    async def _save(self, session: Session) -> None:
        client = self._redis_pool.get_client()
        pipe = client.pipeline()
        pipe.set(self._key(session.id), json.dumps(session.to_dict()))
        pipe.sadd(self._index_key, session.id)
        await pipe.execute()

    async def create_session(self, session: Session) -> bool:
        if session.expires_at is None:
            session.expires_at = session.last_activity + self._ttl
        client = self._redis_pool.get_client()
        created = await client.set(
            self._key(session.id), json.dumps(session.to_dict()), nx=True
        )
        if not created:
            logger.warning("Session already exists", session_id=session.id)
            return False
        await client.sadd(self._index_key, session.id)
        logger.info("Session created", session_id=session.id, user_id=session.user_id)
        return True

    async def get_session(self, session_id: str) -> Optional[Session]:
        client = self._redis_pool.get_client()
        raw = await client.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            logger.error("Corrupt session record", session_id=session_id, error=str(e))
            return None

    async def update_session(self, session_id: str, **updates: Any) -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        await self._save(session.with_updates(**updates))
        logger.debug("Session updated", session_id=session_id, fields=list(updates))
        return True

    async def touch_session(self, session_id: str) -> bool:
        now = _now()
        return await self.update_session(
            session_id, last_activity=now, expires_at=now + self._ttl
        )

    async def delete_session(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        client = self._redis_pool.get_client()
        pipe = client.pipeline()
        pipe.delete(self._key(session_id))
        pipe.srem(self._index_key, session_id)
        deleted, _ = await pipe.execute()
        if not deleted:
            return False
        logger.info("Session deleted", session_id=session_id)
        await self._event_bus.publish(
            SessionDeleted(
                session_id=session_id,
                container_id=session.container_id if session else None,
                status=session.status.value if session else None,
            )
        )
        return True

    async def find_expired_sessions(self) -> List[Session]:
        client = self._redis_pool.get_client()
        session_ids = sorted(await client.smembers(self._index_key))
        if not session_ids:
            return []
        raws = await client.mget([self._key(sid) for sid in session_ids])
        now = _now()
        expired: List[Session] = []
        stale: List[str] = []
        for session_id, raw in zip(session_ids, raws):
            if raw is None:
                stale.append(session_id)
                continue
            try:
                session = Session.from_dict(json.loads(raw))
            except (ValueError, KeyError) as e:
                logger.error("Corrupt session record", session_id=session_id, error=str(e))
                continue
            if session.is_expired(now):
                expired.append(session)
        if stale:
            await client.srem(self._index_key, *stale)
        return expired

    async def sweep_expired(self) -> int:
        expired = await self.find_expired_sessions()
        if expired:
            logger.info("Found expired sessions", count=len(expired))
        for session in expired:
            await self._event_bus.publish(SessionExpired(session_id=session.id))
        return len(expired)


class SessionExpirySweeper:
    """Periodically flags expired sessions by calling ``sweep_expired``.

    The reaper subscribes to the resulting ``SessionExpired`` events, so
    an expired session is cleaned up within one sweep interval instead
    of waiting for the reaper's own (longer) cycle.
    """

    def __init__(self, store: SessionStore, interval_seconds: float = 60.0):
        self._store = store
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Session expiry sweeper started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session expiry sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._store.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Session expiry sweep failed", error=str(e))
