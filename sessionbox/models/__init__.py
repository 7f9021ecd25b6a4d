"""Data models for sessionbox."""

from .cleanup import (
    CleanupResource,
    ResourceKind,
    ResourceOutcome,
    ShutdownReport,
    Stoppable,
    TEARDOWN_ORDER,
)
from .container import (
    CleanupOptions,
    CleanupResult,
    ContainerConfig,
    ContainerCreateResult,
    ContainerRecord,
    ContainerRunResult,
    ContainerStatus,
    PortMapping,
)
from .errors import (
    CleanupFailure,
    ContainerCreateError,
    ContainerNotFoundError,
    ContainerStartError,
    EmergencyCleanupTimeout,
    EngineUnavailableError,
    ErrorType,
    ExecSessionInactiveError,
    ExecSessionNotFoundError,
    GracefulShutdownTimeout,
    ImageBuildError,
    SessionboxException,
    StreamFault,
)
from .exec import ExecOptions, ExecSession
from .image import ImageBuildResult, ImageInfo, ImageInspectResult
from .session import Session, SessionStatus
from .terminal import ControlData, ResizeData, TerminalMessage

__all__ = [
    # Cleanup models
    "CleanupResource",
    "ResourceKind",
    "ResourceOutcome",
    "ShutdownReport",
    "Stoppable",
    "TEARDOWN_ORDER",
    # Container models
    "CleanupOptions",
    "CleanupResult",
    "ContainerConfig",
    "ContainerCreateResult",
    "ContainerRecord",
    "ContainerRunResult",
    "ContainerStatus",
    "PortMapping",
    # Errors
    "CleanupFailure",
    "ContainerCreateError",
    "ContainerNotFoundError",
    "ContainerStartError",
    "EmergencyCleanupTimeout",
    "EngineUnavailableError",
    "ErrorType",
    "ExecSessionInactiveError",
    "ExecSessionNotFoundError",
    "GracefulShutdownTimeout",
    "ImageBuildError",
    "SessionboxException",
    "StreamFault",
    # Exec models
    "ExecOptions",
    "ExecSession",
    # Image models
    "ImageBuildResult",
    "ImageInfo",
    "ImageInspectResult",
    # Session models
    "Session",
    "SessionStatus",
    # Terminal models
    "ControlData",
    "ResizeData",
    "TerminalMessage",
]
