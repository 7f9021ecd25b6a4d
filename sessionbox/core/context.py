"""Process-wide application context.

Built once at process start and handed to whatever needs to register
resources, publish events, or react to shutdown. There are no module
level singletons for these objects.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from ..config import Settings
from ..services.cleanup import ResourceCleanupRegistry
from ..services.container.client import DockerClientFactory
from ..services.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from ..utils.shutdown import ShutdownCoordinator
from .events import EventBus
from .pool import RedisPool

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    event_bus: EventBus
    registry: ResourceCleanupRegistry
    coordinator: ShutdownCoordinator
    docker_factory: DockerClientFactory
    session_store: SessionStore
    redis_pool: Optional[RedisPool] = None

    @classmethod
    def create(cls, settings: Settings) -> "AppContext":
        lifecycle = settings.lifecycle
        event_bus = EventBus()
        registry = ResourceCleanupRegistry(
            emergency_resource_timeout=lifecycle.emergency_resource_timeout
        )
        coordinator = ShutdownCoordinator(
            registry,
            graceful_timeout=lifecycle.graceful_shutdown_timeout,
            emergency_timeout=lifecycle.emergency_shutdown_timeout,
            force_exit_grace=lifecycle.force_exit_grace,
        )

        redis_pool: Optional[RedisPool] = None
        session_store: SessionStore
        if settings.session_store_backend == "redis":
            redis_pool = RedisPool(settings.redis)
            session_store = RedisSessionStore(
                event_bus, redis_pool, ttl_minutes=lifecycle.session_ttl_minutes
            )
        else:
            session_store = InMemorySessionStore(
                event_bus, ttl_minutes=lifecycle.session_ttl_minutes
            )
        logger.debug("Session store selected", backend=settings.session_store_backend)

        return cls(
            settings=settings,
            event_bus=event_bus,
            registry=registry,
            coordinator=coordinator,
            docker_factory=DockerClientFactory(),
            session_store=session_store,
            redis_pool=redis_pool,
        )

    async def close(self) -> None:
        """Release connections held by the context."""
        if self.redis_pool is not None:
            await self.redis_pool.close()
        self.docker_factory.close()
        self.event_bus.clear()
