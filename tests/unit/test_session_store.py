"""Unit tests for the in-memory and Redis session stores."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from sessionbox.core.events import SessionDeleted, SessionExpired
from sessionbox.models.session import Session, SessionStatus
from sessionbox.services.reaper import SessionExpiryReaper
from sessionbox.services.session_store import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionExpirySweeper,
)


@pytest.fixture
def published(event_bus):
    events = []
    event_bus.register_handler(SessionExpired, events.append)
    event_bus.register_handler(SessionDeleted, events.append)
    return events


class TestInMemorySessionStore:
    """Test the process-local store."""

    @pytest.fixture
    def store(self, event_bus):
        return InMemorySessionStore(event_bus, ttl_minutes=30)

    @pytest.mark.asyncio
    async def test_create_assigns_expiry(self, store):
        session = Session(id="s1", user_id="alice")

        assert await store.create_session(session) is True

        stored = await store.get_session("s1")
        assert stored.expires_at == stored.last_activity + timedelta(minutes=30)
        assert stored.is_expired() is False

    @pytest.mark.asyncio
    async def test_duplicate_create_is_rejected(self, store):
        await store.create_session(Session(id="s1", user_id="alice"))
        assert await store.create_session(Session(id="s1", user_id="bob")) is False
        assert (await store.get_session("s1")).user_id == "alice"

    @pytest.mark.asyncio
    async def test_update_and_touch(self, store, session_factory):
        await store.create_session(session_factory("s1", container_id="c1"))

        assert await store.update_session("s1", status=SessionStatus.STOPPING) is True
        assert (await store.get_session("s1")).status == SessionStatus.STOPPING

        assert await store.touch_session("s1") is True
        assert (await store.get_session("s1")).is_expired() is False

        assert await store.update_session("missing", status=SessionStatus.ERROR) is False
        assert await store.touch_session("missing") is False

    @pytest.mark.asyncio
    async def test_delete_publishes_event(self, store, session_factory, published):
        await store.create_session(session_factory("s1", container_id="c1"))

        assert await store.delete_session("s1") is True
        assert await store.delete_session("s1") is False

        assert len(published) == 1
        event = published[0]
        assert isinstance(event, SessionDeleted)
        assert (event.session_id, event.container_id, event.status) == ("s1", "c1", "running")

    @pytest.mark.asyncio
    async def test_sweep_publishes_expired(self, store, session_factory, published):
        await store.create_session(session_factory("old"))
        await store.create_session(session_factory("new", expired=False))

        assert await store.sweep_expired() == 1

        assert [type(e) for e in published] == [SessionExpired]
        assert published[0].session_id == "old"
        # Sweeping only flags sessions; removal is the reaper's job
        assert await store.get_session("old") is not None


def stored_json(session: Session) -> str:
    return json.dumps(session.to_dict())


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.sadd = AsyncMock(return_value=1)
    client.srem = AsyncMock(return_value=1)
    client.smembers = AsyncMock(return_value=set())
    client.mget = AsyncMock(return_value=[])
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    client.pipeline.return_value = pipe
    return client


@pytest.fixture
def redis_store(event_bus, redis_client):
    pool = MagicMock()
    pool.get_client.return_value = redis_client
    return RedisSessionStore(event_bus, pool, ttl_minutes=30, key_prefix="test:sessions")


class TestRedisSessionStore:
    """Test the Redis-backed store against a mocked client."""

    @pytest.mark.asyncio
    async def test_create_uses_set_nx_and_index(self, redis_store, redis_client):
        session = Session(id="s1", user_id="alice")

        assert await redis_store.create_session(session) is True

        key, payload = redis_client.set.await_args.args
        assert key == "test:sessions:s1"
        assert redis_client.set.await_args.kwargs == {"nx": True}
        assert json.loads(payload)["expires_at"] is not None
        redis_client.sadd.assert_awaited_once_with("test:sessions:index", "s1")

    @pytest.mark.asyncio
    async def test_duplicate_create_is_rejected(self, redis_store, redis_client):
        redis_client.set.return_value = None

        assert await redis_store.create_session(Session(id="s1", user_id="alice")) is False
        redis_client.sadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_round_trips_record(self, redis_store, redis_client, session_factory):
        original = session_factory("s1", container_id="c1", error_count=2)
        redis_client.get.return_value = stored_json(original)

        session = await redis_store.get_session("s1")

        assert session == original
        redis_client.get.assert_awaited_once_with("test:sessions:s1")

    @pytest.mark.asyncio
    async def test_corrupt_record_reads_as_missing(self, redis_store, redis_client):
        redis_client.get.return_value = "{not json"
        assert await redis_store.get_session("s1") is None

    @pytest.mark.asyncio
    async def test_update_rewrites_record(self, redis_store, redis_client, session_factory):
        redis_client.get.return_value = stored_json(session_factory("s1", container_id="c1"))

        assert await redis_store.update_session("s1", status=SessionStatus.ERROR) is True

        pipe = redis_client.pipeline.return_value
        key, payload = pipe.set.call_args.args
        assert key == "test:sessions:s1"
        assert json.loads(payload)["status"] == "error"
        pipe.sadd.assert_called_once_with("test:sessions:index", "s1")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_publishes_event(
        self, redis_store, redis_client, session_factory, published
    ):
        redis_client.get.return_value = stored_json(session_factory("s1", container_id="c1"))

        assert await redis_store.delete_session("s1") is True

        pipe = redis_client.pipeline.return_value
        pipe.delete.assert_called_once_with("test:sessions:s1")
        pipe.srem.assert_called_once_with("test:sessions:index", "s1")
        assert published[0].container_id == "c1"

    @pytest.mark.asyncio
    async def test_delete_missing_returns_false(self, redis_store, redis_client, published):
        redis_client.pipeline.return_value.execute.return_value = [0, 0]

        assert await redis_store.delete_session("ghost") is False
        assert published == []

    @pytest.mark.asyncio
    async def test_find_expired_prunes_stale_index(
        self, redis_store, redis_client, session_factory
    ):
        redis_client.smembers.return_value = {"a", "b", "c"}
        redis_client.mget.return_value = [
            stored_json(session_factory("a")),
            None,
            stored_json(session_factory("c", expired=False)),
        ]

        expired = await redis_store.find_expired_sessions()

        assert [s.id for s in expired] == ["a"]
        redis_client.mget.assert_awaited_once_with(
            ["test:sessions:a", "test:sessions:b", "test:sessions:c"]
        )
        redis_client.srem.assert_awaited_once_with("test:sessions:index", "b")

    @pytest.mark.asyncio
    async def test_sweep_publishes_expired(
        self, redis_store, redis_client, session_factory, published
    ):
        redis_client.smembers.return_value = {"a"}
        redis_client.mget.return_value = [stored_json(session_factory("a"))]

        assert await redis_store.sweep_expired() == 1
        assert published[0].session_id == "a"

    @pytest.mark.asyncio
    async def test_empty_index(self, redis_store, redis_client):
        assert await redis_store.find_expired_sessions() == []
        redis_client.mget.assert_not_awaited()


class TestSessionExpirySweeper:
    """Test the periodic expiry sweep."""

    @pytest.mark.asyncio
    async def test_sweep_hands_expired_sessions_to_reaper(
        self, event_bus, session_factory, mock_container_manager
    ):
        store = InMemorySessionStore(event_bus)
        await store.create_session(session_factory("old", container_id="c1"))
        await store.create_session(session_factory("live", container_id="c2", expired=False))
        SessionExpiryReaper(store, mock_container_manager, event_bus)
        sweeper = SessionExpirySweeper(store, interval_seconds=0.01)

        await sweeper.start()
        try:
            for _ in range(200):
                if await store.get_session("old") is None:
                    break
                await asyncio.sleep(0.01)
        finally:
            await sweeper.stop()

        assert await store.get_session("old") is None
        assert await store.get_session("live") is not None
        mock_container_manager.stop.assert_awaited_once_with("c1")
        assert sweeper.is_running is False

    @pytest.mark.asyncio
    async def test_sweep_error_keeps_loop_running(self):
        store = MagicMock()
        store.sweep_expired = AsyncMock(side_effect=[ConnectionError("redis down"), 0, 0, 0, 0])
        sweeper = SessionExpirySweeper(store, interval_seconds=0.01)

        await sweeper.start()
        try:
            for _ in range(200):
                if store.sweep_expired.await_count >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await sweeper.stop()

        assert store.sweep_expired.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await SessionExpirySweeper(MagicMock()).stop()


class TestSessionModel:
    """Test session record helpers."""

    def test_expiry_boundary(self):
        now = datetime.now(timezone.utc)
        session = Session(id="s1", user_id="u", expires_at=now)

        assert session.is_expired(now) is False
        assert session.is_expired(now + timedelta(seconds=1)) is True
        assert Session(id="s2", user_id="u").is_expired() is False

    def test_error_count_from_metadata(self, session_factory):
        assert session_factory("s1").error_count == 0
        assert session_factory("s1", error_count=2).error_count == 2
