"""Container lifecycle data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class ContainerStatus(str, Enum):
    """Lifecycle states a managed container moves through."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class PortMapping:
    """A container port published on a dynamically assigned host port."""

    container: int
    host: int
    protocol: str = "tcp"


@dataclass
class ContainerConfig:
    """Inputs for creating one session container."""

    session_id: str
    workspace_dir: str
    image: str
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerRecord:
    """A container owned by one session.

    Only the container manager changes ``status`` and ``ports``.
    """

    id: str
    name: str
    session_id: str
    status: ContainerStatus = ContainerStatus.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ports: List[PortMapping] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass
class ContainerCreateResult:
    success: bool
    container: Optional[ContainerRecord] = None
    error: Optional[str] = None


@dataclass
class ContainerRunResult:
    """Outcome of create/start; ``step`` names the step that failed."""

    success: bool
    container: Optional[ContainerRecord] = None
    container_id: Optional[str] = None
    ports: List[PortMapping] = field(default_factory=list)
    error: Optional[str] = None
    step: Optional[str] = None


@dataclass
class CleanupOptions:
    """How hard to try when stopping and removing a container."""

    force: bool = False
    remove_volumes: bool = False
    timeout: Optional[int] = None


@dataclass
class CleanupResult:
    """Aggregated outcome of stopping/removing one or more containers."""

    success: bool = True
    containers_removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "CleanupResult") -> None:
        self.containers_removed.extend(other.containers_removed)
        self.errors.extend(other.errors)
        if not other.success:
            self.success = False
