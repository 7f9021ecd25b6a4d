"""Resource cleanup registry.

Tracks every resource the process has allocated and tears them down
either gracefully (tier by tier: servers, containers, networks, volumes)
or in an emergency (everything at once, each resource on a short
deadline).
"""

import asyncio
from typing import Dict, List, Optional

import structlog

from ..models.cleanup import (
    TEARDOWN_ORDER,
    CleanupResource,
    ResourceKind,
    ResourceOutcome,
    ShutdownReport,
    Stoppable,
)
from ..models.container import CleanupOptions
from ..models.errors import CleanupFailure
from ..utils.timeouts import race_with_deadline
from .container.manager import ContainerManager
from .container.utils import short_id

logger = structlog.get_logger(__name__)


class ResourceCleanupRegistry:
    """Registry of cleanable resources, with one shutdown pass per process.

    ``shutdown`` is idempotent: the first call starts the pass and every
    later or concurrent call awaits the same pass and receives the same
    report.
    """

    def __init__(self, emergency_resource_timeout: float = 3.0):
        self._resources: Dict[str, CleanupResource] = {}
        self._emergency_resource_timeout = emergency_resource_timeout
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_task is not None

    def __len__(self) -> int:
        return len(self._resources)

    def register(self, resource: CleanupResource) -> None:
        """Register a resource; re-registering an id replaces it."""
        if resource.id in self._resources:
            logger.warning("Replacing registered cleanup resource", resource_id=resource.id)
        self._resources[resource.id] = resource
        logger.debug(
            "Registered cleanup resource",
            resource_id=resource.id,
            kind=resource.kind.value,
            description=resource.description,
        )

    def unregister(self, resource_id: str) -> None:
        resource = self._resources.pop(resource_id, None)
        if resource is not None:
            logger.debug("Unregistered cleanup resource", description=resource.description)

    def resources(self) -> List[CleanupResource]:
        return list(self._resources.values())

    # ========================================================================
    # GRACEFUL SHUTDOWN
    # ========================================================================

    async def shutdown(self) -> ShutdownReport:
        """Tear down all resources tier by tier.

        Returns:
            Per-resource outcomes; partial failure is reported, not raised
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._perform_shutdown())
        # Cancelling one caller leaves the pass running for the others
        return await asyncio.shield(self._shutdown_task)

    async def _perform_shutdown(self) -> ShutdownReport:
        report = ShutdownReport()
        resources = self.resources()
        if not resources:
            logger.info("No resources to clean up")
            return report

        logger.info("Gracefully shutting down resources", count=len(resources))

        for kind in TEARDOWN_ORDER:
            tier = [r for r in resources if r.kind == kind]
            if not tier:
                continue
            logger.debug("Cleaning up tier", kind=kind.value, count=len(tier))
            outcomes = await asyncio.gather(
                *(self._cleanup_one(resource) for resource in tier)
            )
            report.outcomes.extend(outcomes)

        if report.failed == 0:
            logger.info("Cleanup process completed", successful=report.successful)
        else:
            logger.warning(
                "Cleanup process completed with failures",
                successful=report.successful,
                failed=report.failed,
                failed_resources=[o.description for o in report.failed_resources],
            )
        return report

    async def _cleanup_one(self, resource: CleanupResource) -> ResourceOutcome:
        logger.info("Cleaning up resource", description=resource.description)
        try:
            await resource.cleanup()
        except Exception as e:
            logger.error(
                "Failed to clean up resource", description=resource.description, error=str(e)
            )
            return ResourceOutcome(
                resource_id=resource.id,
                kind=resource.kind,
                description=resource.description,
                success=False,
                error=str(e) or type(e).__name__,
            )
        finally:
            self.unregister(resource.id)
        return ResourceOutcome(
            resource_id=resource.id,
            kind=resource.kind,
            description=resource.description,
            success=True,
        )

    # ========================================================================
    # EMERGENCY CLEANUP
    # ========================================================================

    async def emergency_cleanup(self) -> ShutdownReport:
        """Clean every resource concurrently, each on a short deadline.

        The registry is always emptied afterwards, including resources
        whose cleanup timed out; those may remain on the engine.
        """
        resources = self.resources()
        logger.warning("Performing emergency cleanup", count=len(resources))
        report = ShutdownReport(emergency=True)
        try:
            outcomes = await asyncio.gather(
                *(self._emergency_one(resource) for resource in resources)
            )
            report.outcomes.extend(outcomes)
        finally:
            self._resources.clear()
        logger.warning(
            "Emergency cleanup completed",
            successful=report.successful,
            failed=report.failed,
        )
        return report

    async def _emergency_one(self, resource: CleanupResource) -> ResourceOutcome:
        try:
            await race_with_deadline(
                resource.cleanup(),
                self._emergency_resource_timeout,
                label=resource.description,
            )
        except asyncio.TimeoutError:
            logger.error("Emergency cleanup timed out", description=resource.description)
            return ResourceOutcome(
                resource_id=resource.id,
                kind=resource.kind,
                description=resource.description,
                success=False,
                error="Cleanup timeout",
            )
        except Exception as e:
            logger.error(
                "Emergency cleanup failed", description=resource.description, error=str(e)
            )
            return ResourceOutcome(
                resource_id=resource.id,
                kind=resource.kind,
                description=resource.description,
                success=False,
                error=str(e) or type(e).__name__,
            )
        logger.debug("Emergency cleanup successful", description=resource.description)
        return ResourceOutcome(
            resource_id=resource.id,
            kind=resource.kind,
            description=resource.description,
            success=True,
        )


# ============================================================================
# RESOURCE FACTORIES
# ============================================================================


def container_resource(
    manager: ContainerManager, container_id: str, session_id: Optional[str] = None
) -> CleanupResource:
    """Cleanup resource that stops and removes one container."""
    resource_id = f"container-{container_id}"
    description = f"Docker container {short_id(container_id)}"
    if session_id:
        description += f" ({session_id})"

    async def cleanup() -> None:
        if await manager.stop(container_id):
            logger.debug("Container stopped", container_id=short_id(container_id))
            return
        result = await manager.cleanup_container(container_id, CleanupOptions(force=True))
        if not result.success:
            raise CleanupFailure(resource_id, "; ".join(result.errors) or "unknown error")
        logger.debug("Container force-removed", container_id=short_id(container_id))

    return CleanupResource(
        id=resource_id,
        kind=ResourceKind.CONTAINER,
        description=description,
        cleanup=cleanup,
    )


def server_resource(
    server_id: str, server: Stoppable, description: Optional[str] = None
) -> CleanupResource:
    """Cleanup resource that stops anything accepting new work (servers, loops)."""

    async def cleanup() -> None:
        await server.stop()
        logger.debug("Server stopped", server_id=server_id)

    return CleanupResource(
        id=f"server-{server_id}",
        kind=ResourceKind.SERVER,
        description=description or f"Web server {server_id}",
        cleanup=cleanup,
    )
