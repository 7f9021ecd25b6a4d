"""Cleanup registry models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable


class ResourceKind(str, Enum):
    """Cleanup tiers, listed in teardown order."""

    SERVER = "server"
    CONTAINER = "container"
    NETWORK = "network"
    VOLUME = "volume"


TEARDOWN_ORDER = (
    ResourceKind.SERVER,
    ResourceKind.CONTAINER,
    ResourceKind.NETWORK,
    ResourceKind.VOLUME,
)


@runtime_checkable
class Stoppable(Protocol):
    """Anything that can be asked to stop serving and release its resources."""

    async def stop(self) -> None:
        ...


@dataclass
class CleanupResource:
    """A resource tracked by the cleanup registry."""

    id: str
    kind: ResourceKind
    description: str
    cleanup: Callable[[], Awaitable[None]]


@dataclass
class ResourceOutcome:
    resource_id: str
    kind: ResourceKind
    description: str
    success: bool
    error: Optional[str] = None


@dataclass
class ShutdownReport:
    """Per-resource outcome of a graceful shutdown or emergency cleanup pass."""

    outcomes: List[ResourceOutcome] = field(default_factory=list)
    emergency: bool = False

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def failed_resources(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if not o.success]

    def summary(self) -> str:
        """Operator-facing summary of the pass."""
        if self.failed == 0:
            return f"All {self.successful} resource(s) cleaned up successfully"
        lines = [
            f"Cleanup completed with {self.failed} failure(s) out of "
            f"{self.total} resource(s)",
        ]
        for outcome in self.failed_resources:
            lines.append(f"  - {outcome.description}: {outcome.error}")
        lines.extend(
            [
                "Some resources may still be running",
                "Check for orphaned containers: docker ps -a",
                "Manual cleanup may be required: docker container prune",
            ]
        )
        return "\n".join(lines)
