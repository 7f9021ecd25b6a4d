"""Error taxonomy for container provisioning and teardown.

Engine failures are converted to structured results at the point of the
call. These exceptions are raised only where a failure must stop the
caller: the top-level provisioning sequence, shutdown deadlines, and
programming errors such as starting an unknown exec session.
"""

from enum import Enum
from typing import List, Optional


class ErrorType(str, Enum):
    """Error type enumeration."""

    ENGINE_UNAVAILABLE = "engine_unavailable"
    IMAGE_BUILD_FAILED = "image_build_failed"
    CONTAINER_CREATE_FAILED = "container_create_failed"
    CONTAINER_START_FAILED = "container_start_failed"
    CONTAINER_NOT_FOUND = "container_not_found"
    EXEC_SESSION_NOT_FOUND = "exec_session_not_found"
    EXEC_SESSION_INACTIVE = "exec_session_inactive"
    STREAM_FAULT = "stream_fault"
    CLEANUP_FAILED = "cleanup_failed"
    GRACEFUL_SHUTDOWN_TIMEOUT = "graceful_shutdown_timeout"
    EMERGENCY_CLEANUP_TIMEOUT = "emergency_cleanup_timeout"
    INTERNAL = "internal"


class SessionboxException(Exception):
    """Base exception for sessionbox."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL,
        details: Optional[List[str]] = None,
    ):
        self.message = message
        self.error_type = error_type
        self.details = details or []
        super().__init__(message)

    def user_message(self) -> str:
        """Render the message plus any detail lines for an operator."""
        if not self.details:
            return self.message
        lines = [self.message] + [f"  - {d}" for d in self.details]
        return "\n".join(lines)


class EngineUnavailableError(SessionboxException):
    """The container engine could not be reached."""

    DEFAULT_HINTS = [
        "Make sure the Docker daemon is installed and running",
        "Check that your user has permission to access Docker",
        "Try running: docker version",
    ]

    def __init__(self, message: str = None, details: Optional[List[str]] = None):
        super().__init__(
            message=message or "Docker is not available or not running",
            error_type=ErrorType.ENGINE_UNAVAILABLE,
            details=details if details is not None else list(self.DEFAULT_HINTS),
        )


class ImageBuildError(SessionboxException):
    """Building the base image failed."""

    LOG_TAIL_LINES = 20

    def __init__(self, image: str, message: str, build_logs: Optional[List[str]] = None):
        self.image = image
        self.build_logs = build_logs or []
        tail = [line for line in self.build_logs if line.strip()][-self.LOG_TAIL_LINES:]
        super().__init__(
            message=f"Failed to build image {image}: {message}",
            error_type=ErrorType.IMAGE_BUILD_FAILED,
            details=[line.rstrip() for line in tail],
        )


class ContainerCreateError(SessionboxException):
    """Creating the session container failed."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(
            message=f"Failed to create container for session {session_id}: {message}",
            error_type=ErrorType.CONTAINER_CREATE_FAILED,
        )


class ContainerStartError(SessionboxException):
    """Starting a created container failed (the container is rolled back)."""

    def __init__(self, container_id: str, message: str):
        self.container_id = container_id
        super().__init__(
            message=f"Failed to start container {container_id[:12]}: {message}",
            error_type=ErrorType.CONTAINER_START_FAILED,
        )


class ContainerNotFoundError(SessionboxException):
    """The container does not exist on the engine."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(
            message=f"Container {container_id[:12]} not found",
            error_type=ErrorType.CONTAINER_NOT_FOUND,
        )


class ExecSessionNotFoundError(SessionboxException):
    """No exec session is registered under the key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            message=f"Exec session {key} not found",
            error_type=ErrorType.EXEC_SESSION_NOT_FOUND,
        )


class ExecSessionInactiveError(SessionboxException):
    """The exec session exists but has no live stream."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            message=f"Exec session {key} is not active",
            error_type=ErrorType.EXEC_SESSION_INACTIVE,
        )


class StreamFault(SessionboxException):
    """The duplex stream of an exec session failed."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(
            message=f"Stream fault in exec session {key}: {message}",
            error_type=ErrorType.STREAM_FAULT,
        )


class CleanupFailure(SessionboxException):
    """A registered resource could not be cleaned up."""

    def __init__(self, resource_id: str, message: str):
        self.resource_id = resource_id
        super().__init__(
            message=f"Cleanup of {resource_id} failed: {message}",
            error_type=ErrorType.CLEANUP_FAILED,
        )


class GracefulShutdownTimeout(SessionboxException):
    """Graceful shutdown did not finish within its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            message=f"Graceful shutdown timed out after {timeout:g}s",
            error_type=ErrorType.GRACEFUL_SHUTDOWN_TIMEOUT,
        )


class EmergencyCleanupTimeout(SessionboxException):
    """Emergency cleanup did not finish within its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            message=f"Emergency cleanup timed out after {timeout:g}s",
            error_type=ErrorType.EMERGENCY_CLEANUP_TIMEOUT,
        )
