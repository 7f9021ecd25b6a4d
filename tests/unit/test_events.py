"""Unit tests for the EventBus."""

import pytest

from sessionbox.core.events import EventBus, ExecEnded, ExecOutput, SessionCleaned


class TestEventBus:
    """Test handler registration and delivery."""

    @pytest.mark.asyncio
    async def test_publish_reaches_all_handlers_in_order(self, event_bus):
        received = []

        async def async_handler(event):
            received.append(("async", event.session_id))

        def sync_handler(event):
            received.append(("sync", event.session_id))

        event_bus.register_handler(SessionCleaned, async_handler)
        event_bus.register_handler(SessionCleaned, sync_handler)

        await event_bus.publish(SessionCleaned(session_id="s1"))

        assert received == [("async", "s1"), ("sync", "s1")]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, event_bus):
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        event_bus.register_handler(ExecEnded, broken)
        event_bus.register_handler(ExecEnded, received.append)

        await event_bus.publish(ExecEnded(key="k"))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_events_are_routed_by_type(self, event_bus):
        outputs = []
        event_bus.register_handler(ExecOutput, outputs.append)

        await event_bus.publish(ExecEnded(key="k"))
        await event_bus.publish(ExecOutput(key="k", data=b"x"))

        assert [e.data for e in outputs] == [b"x"]

    @pytest.mark.asyncio
    async def test_subscribe_decorator(self):
        bus = EventBus()
        received = []

        @bus.subscribe(SessionCleaned)
        async def on_cleaned(event):
            received.append(event.container_id)

        await bus.publish(SessionCleaned(session_id="s1", container_id="c1"))

        assert received == ["c1"]
        # Decorator returns the handler unchanged
        assert on_cleaned.__name__ == "on_cleaned"

    @pytest.mark.asyncio
    async def test_unregister_and_clear(self, event_bus):
        received = []
        event_bus.register_handler(ExecEnded, received.append)
        event_bus.register_handler(ExecOutput, received.append)

        event_bus.unregister_handler(ExecEnded, received.append)
        event_bus.unregister_handler(ExecEnded, received.append)
        await event_bus.publish(ExecEnded(key="k"))
        assert received == []
        assert event_bus.handler_count(ExecOutput) == 1

        event_bus.clear()
        assert event_bus.handler_count(ExecOutput) == 0

    def test_events_are_timestamped(self):
        event = SessionCleaned(session_id="s1")
        assert event.timestamp.tzinfo is not None
