"""Pytest configuration and shared fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing config
# Use setdefault to allow environment variables to override defaults
os.environ.setdefault("BASE_IMAGE_NAME", "sessionbox-test")
os.environ.setdefault("CONTAINER_NAME_PREFIX", "sessionbox")
os.environ.setdefault("LABEL_PREFIX", "sessionbox")
os.environ.setdefault("SESSION_STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_FORMAT", "console")

from docker.errors import APIError, NotFound

from sessionbox.config import DockerConfig, settings
from sessionbox.core.events import EventBus
from sessionbox.models.session import Session, SessionStatus


def make_api_error(status_code: int, message: str = "engine error") -> APIError:
    """Build a docker APIError carrying an HTTP status code."""
    response = MagicMock()
    response.status_code = status_code
    if status_code == 404:
        return NotFound(message, response=response, explanation=message)
    return APIError(message, response=response, explanation=message)


def make_session(
    session_id: str,
    container_id: Optional[str] = None,
    expired: bool = True,
    error_count: int = 0,
    status: SessionStatus = SessionStatus.RUNNING,
) -> Session:
    now = datetime.now(timezone.utc)
    metadata = {"error_count": error_count} if error_count else {}
    return Session(
        id=session_id,
        user_id="tester",
        status=status,
        container_id=container_id,
        container_name=f"sessionbox-{session_id}" if container_id else None,
        expires_at=now - timedelta(minutes=1) if expired else now + timedelta(hours=1),
        metadata=metadata,
    )


@pytest.fixture
def docker_config() -> DockerConfig:
    """Docker configuration used by container tests."""
    return settings.docker.model_copy(
        update={"base_image_name": "sessionbox-test", "container_stop_timeout": 2}
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def mock_container():
    """Mock docker-py Container with running state and published ports."""
    container = MagicMock()
    container.id = "c0ffee1234567890abcdef"
    container.name = "sessionbox-test-session"
    container.status = "running"
    container.labels = {"sessionbox.session": "test-session"}
    container.attrs = {
        "State": {"Status": "running"},
        "NetworkSettings": {
            "Ports": {
                "80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49154"}],
                "22/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}],
            }
        },
    }
    return container


@pytest.fixture
def mock_docker_client(mock_container):
    """Mock docker-py client whose containers API returns ``mock_container``."""
    client = MagicMock()
    client.containers.create.return_value = mock_container
    client.containers.get.return_value = mock_container
    client.containers.list.return_value = []
    client.api.exec_create.return_value = {"Id": "exec-123"}
    client.ping.return_value = True
    return client


@pytest.fixture
def mock_container_manager():
    """Mock ContainerManager for reaper and registry tests."""
    manager = MagicMock()
    manager.stop = AsyncMock(return_value=True)
    manager.cleanup_container = AsyncMock()
    return manager


@pytest.fixture
def api_error():
    """Factory for docker APIErrors with a given HTTP status."""
    return make_api_error


@pytest.fixture
def session_factory():
    """Factory for session records (expired by default)."""
    return make_session
