"""Docker client factory and initialization."""

from typing import Optional

import docker
import structlog
from docker.errors import DockerException

from ...models.errors import EngineUnavailableError

logger = structlog.get_logger(__name__)


class DockerClientFactory:
    """Creates and caches the Docker SDK client.

    The client is created from the environment (``DOCKER_HOST`` and
    friends) the first time it is needed and pinged before use.
    """

    def __init__(self, timeout: int = 60):
        self._timeout = timeout
        self._client: Optional[docker.DockerClient] = None
        self._initialization_error: Optional[str] = None

    def get_client(self) -> docker.DockerClient:
        """Return a connected client.

        Raises:
            EngineUnavailableError: The engine could not be reached
        """
        if self._client is not None:
            return self._client

        try:
            client = docker.from_env(timeout=self._timeout)
            client.ping()
        except DockerException as e:
            self._initialization_error = str(e)
            logger.error("Docker engine unavailable", error=str(e))
            raise EngineUnavailableError() from e

        self._client = client
        self._initialization_error = None
        logger.info("Docker client initialized")
        return client

    def get_initialization_error(self) -> Optional[str]:
        """Get the last connection error, if any."""
        return self._initialization_error

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Error closing Docker client", error=str(e))
            self._client = None
