"""Event bus for lifecycle notifications.

Components publish typed events instead of calling each other's
internals. Several handlers may subscribe to the same event type; each
one is invoked in registration order, and a failing handler is logged
without affecting the others or the publisher.

Usage:
    bus = EventBus()

    @bus.subscribe(SessionCleaned)
    async def on_cleaned(event: SessionCleaned):
        ...

    await bus.publish(SessionCleaned(session_id="abc"))
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, DefaultDict, List, Optional, Type

import structlog

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    """Base class for all events."""

    timestamp: datetime = field(default_factory=_now, init=False)


# ============================================================================
# EXEC SESSION EVENTS
# ============================================================================


@dataclass
class ExecOutput(Event):
    key: str = ""
    data: bytes = b""


@dataclass
class ExecError(Event):
    key: str = ""
    error: str = ""


@dataclass
class ExecEnded(Event):
    key: str = ""


# ============================================================================
# SESSION / REAPER EVENTS
# ============================================================================


@dataclass
class SessionExpired(Event):
    """A session was flagged expired by the session store."""

    session_id: str = ""


@dataclass
class SessionDeleted(Event):
    """A session record was deleted while a container may still be attached."""

    session_id: str = ""
    container_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class SessionCleaned(Event):
    session_id: str = ""
    container_id: Optional[str] = None


@dataclass
class SessionCleanupError(Event):
    session_id: str = ""
    error: str = ""
    error_count: int = 0


@dataclass
class CleanupCompleted(Event):
    """One reaper cycle finished."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: float = 0.0


@dataclass
class CleanupError(Event):
    """One reaper cycle failed before it could process sessions."""

    error: str = ""


Handler = Callable[[Any], Any]


class EventBus:
    """Multi-subscriber, in-process event bus."""

    def __init__(self):
        self._handlers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)

    def register_handler(self, event_type: Type[Event], handler: Handler) -> None:
        """Register a sync or async handler for an event type."""
        self._handlers[event_type].append(handler)

    def unregister_handler(self, event_type: Type[Event], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribe(self, event_type: Type[Event]) -> Callable[[Handler], Handler]:
        """Decorator form of ``register_handler``."""

        def decorator(handler: Handler) -> Handler:
            self.register_handler(event_type, handler)
            return handler

        return decorator

    def handler_count(self, event_type: Type[Event]) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: Event) -> None:
        """Deliver an event to every handler registered for its type."""
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    def clear(self) -> None:
        self._handlers.clear()
