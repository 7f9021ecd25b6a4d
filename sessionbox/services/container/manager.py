"""Container lifecycle management.

One container per session: created from the base image with the
workspace mounted read-only, two ports published on dynamic host ports,
fixed memory/CPU limits, a non-root user, and a long-lived shell that
keeps it alive. Engine errors are turned into result objects here; only
``execute_command`` re-raises.
"""

import random
import string
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import docker
import structlog
from docker.errors import APIError, DockerException
from docker.models.containers import Container

from ...config import DockerConfig
from ...models.container import (
    CleanupOptions,
    CleanupResult,
    ContainerConfig,
    ContainerCreateResult,
    ContainerRecord,
    ContainerRunResult,
    ContainerStatus,
)
from .utils import (
    extract_port_mappings,
    is_not_found,
    is_not_modified,
    run_in_executor,
    short_id,
)

logger = structlog.get_logger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id(prefix: str = "sessionbox") -> str:
    """Generate a unique session id: ``<prefix>-<epoch-ms>-<6 base36 chars>``."""
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def container_environment(
    session_id: str,
    workspace_path: str = "/workspace",
    api_key: Optional[str] = None,
) -> Dict[str, str]:
    """Environment variables every session container receives."""
    env: Dict[str, str] = {}
    if api_key:
        env["SESSIONBOX_API_KEY"] = api_key
    env["SESSIONBOX_SESSION_ID"] = session_id
    env["SESSIONBOX_WORKSPACE"] = workspace_path
    return env


class ContainerManager:
    """Creates, starts, inspects, stops and removes session containers."""

    def __init__(self, client: docker.DockerClient, config: DockerConfig):
        self._client = client
        self._config = config
        self._records: Dict[str, ContainerRecord] = {}
        self._session_containers: Dict[str, str] = {}

    @property
    def client(self) -> docker.DockerClient:
        return self._client

    def container_name(self, session_id: str) -> str:
        return f"{self._config.container_name_prefix}-{session_id}"

    def label(self, key: str) -> str:
        return f"{self._config.label_prefix}.{key}"

    def get_record(self, container_id: str) -> Optional[ContainerRecord]:
        """Locally tracked record for a container this manager created."""
        return self._records.get(container_id)

    # ========================================================================
    # CREATE / START
    # ========================================================================

    async def create(self, config: ContainerConfig) -> ContainerCreateResult:
        """Create (but do not start) the container for a session.

        Args:
            config: Session id, workspace directory, image and environment

        Returns:
            Result with a ``created`` record, or the engine error
        """
        existing = self._session_containers.get(config.session_id)
        if existing:
            error = f"Session {config.session_id} already has container {short_id(existing)}"
            logger.warning(
                "Refusing to create second container for session",
                session_id=config.session_id,
                container_id=short_id(existing),
            )
            return ContainerCreateResult(success=False, error=error)

        name = self.container_name(config.session_id)
        created_at = datetime.now(timezone.utc)
        workspace = self._config.container_workspace_path

        logger.info("Creating container", session_id=config.session_id, name=name)
        logger.debug(
            "Container options",
            name=name,
            image=config.image,
            workspace=config.workspace_dir,
            env_vars=len(config.environment),
        )

        try:
            container = await run_in_executor(
                self._client.containers.create,
                image=config.image,
                command=["bash"],
                name=name,
                environment=[f"{k}={v}" for k, v in config.environment.items()],
                working_dir=workspace,
                user=self._config.container_user,
                volumes={config.workspace_dir: {"bind": workspace, "mode": "ro"}},
                ports={port: None for port in self._config.container_ports},
                mem_limit=self._config.memory_limit_bytes,
                cpu_shares=self._config.container_cpu_shares,
                network_mode=self._config.container_network_mode,
                auto_remove=False,
                labels={
                    self.label("session"): config.session_id,
                    self.label("created"): created_at.isoformat(),
                    self.label("version"): self._config.app_version,
                },
                tty=True,
                stdin_open=True,
            )
        except DockerException as e:
            logger.error(
                "Failed to create container", session_id=config.session_id, error=str(e)
            )
            return ContainerCreateResult(success=False, error=str(e))

        record = ContainerRecord(
            id=container.id,
            name=name,
            session_id=config.session_id,
            status=ContainerStatus.CREATED,
            created_at=created_at,
        )
        self._records[record.id] = record
        self._session_containers[config.session_id] = record.id
        logger.info("Container created", name=name, container_id=record.short_id)
        return ContainerCreateResult(success=True, container=record)

    async def start(self, container_id: str) -> ContainerRunResult:
        """Start a created container and discover its published ports."""
        logger.info("Starting container", container_id=short_id(container_id))
        try:
            container = await run_in_executor(self._client.containers.get, container_id)
            await run_in_executor(container.start)
            await run_in_executor(container.reload)
        except DockerException as e:
            logger.error(
                "Failed to start container", container_id=short_id(container_id), error=str(e)
            )
            self._set_status(container_id, ContainerStatus.ERROR)
            return ContainerRunResult(
                success=False, container_id=container_id, error=str(e), step="start"
            )

        ports = extract_port_mappings(container.attrs or {})
        record = self._records.get(container_id)
        if record is not None:
            record.status = ContainerStatus.RUNNING
            record.ports = ports

        logger.info(
            "Container started successfully",
            container_id=short_id(container_id),
            name=container.name,
            ports=[f"{p.container}/{p.protocol}->{p.host}" for p in ports],
        )
        return ContainerRunResult(
            success=True, container=record, container_id=container_id, ports=ports
        )

    async def run(self, config: ContainerConfig) -> ContainerRunResult:
        """Create and start a container, removing it again if start fails."""
        create_result = await self.create(config)
        if not create_result.success or create_result.container is None:
            return ContainerRunResult(
                success=False,
                error=create_result.error or "Failed to create container",
                step="create",
            )

        container_id = create_result.container.id
        start_result = await self.start(container_id)
        if not start_result.success:
            logger.warning(
                "Rolling back container after failed start",
                session_id=config.session_id,
                container_id=short_id(container_id),
            )
            rollback = await self.cleanup_container(container_id, CleanupOptions(force=True))
            if not rollback.success:
                logger.error(
                    "Rollback of orphaned container failed",
                    container_id=short_id(container_id),
                    errors=rollback.errors,
                )
            return start_result

        logger.info(
            "Container is running and ready",
            session_id=config.session_id,
            container_id=short_id(container_id),
        )
        return start_result

    # ========================================================================
    # INSPECT
    # ========================================================================

    async def inspect(self, container_id: str) -> Optional[ContainerRecord]:
        """Look a container up on the engine.

        Returns:
            The record, or None if the container does not exist or could
            not be inspected
        """
        try:
            container = await run_in_executor(self._client.containers.get, container_id)
        except DockerException as e:
            if is_not_found(e):
                logger.debug("Container not found", container_id=short_id(container_id))
            else:
                logger.error(
                    "Error getting container info",
                    container_id=short_id(container_id),
                    error=str(e),
                )
            return None
        return self._record_from_container(container)

    def _record_from_container(self, container: Container) -> ContainerRecord:
        attrs = container.attrs or {}
        labels = container.labels or {}
        state = ((attrs.get("State") or {}).get("Status") or container.status or "").lower()
        status = {
            "created": ContainerStatus.CREATED,
            "running": ContainerStatus.RUNNING,
            "restarting": ContainerStatus.RUNNING,
            "paused": ContainerStatus.RUNNING,
            "removing": ContainerStatus.STOPPING,
            "exited": ContainerStatus.STOPPED,
            "dead": ContainerStatus.ERROR,
        }.get(state, ContainerStatus.ERROR)

        created_raw = labels.get(self.label("created")) or attrs.get("Created")
        try:
            created_at = datetime.fromisoformat(str(created_raw).replace("Z", "+00:00"))
        except ValueError:
            created_at = datetime.now(timezone.utc)

        return ContainerRecord(
            id=container.id,
            name=(container.name or "").lstrip("/"),
            session_id=labels.get(self.label("session"), ""),
            status=status,
            created_at=created_at,
            ports=extract_port_mappings(attrs),
        )

    async def list_managed_containers(self) -> List[ContainerRecord]:
        """List every container carrying this app's session label or name prefix."""
        found: Dict[str, Container] = {}
        label_filter = {"label": self.label("session")}
        name_filter = {"name": f"{self._config.container_name_prefix}-"}
        for filters in (label_filter, name_filter):
            containers = await run_in_executor(
                self._client.containers.list, all=True, filters=filters
            )
            for container in containers:
                found.setdefault(container.id, container)
        return [self._record_from_container(c) for c in found.values()]

    # ========================================================================
    # STOP / CLEANUP
    # ========================================================================

    async def stop(self, container_id: str) -> bool:
        """Stop and remove a container; an absent container counts as success."""
        result = await self.cleanup_container(
            container_id,
            CleanupOptions(force=False, timeout=self._config.container_stop_timeout),
        )
        return result.success

    async def cleanup_container(
        self, container_id: str, options: Optional[CleanupOptions] = None
    ) -> CleanupResult:
        """Stop then remove one container.

        Not-found at any step means the container is already gone and is
        reported as success. A stop failure aborts unless ``force`` is set,
        in which case removal is still attempted.

        Args:
            container_id: Container id or name
            options: Force, volume removal and stop timeout

        Returns:
            Aggregated cleanup result
        """
        options = options or CleanupOptions()
        timeout = (
            options.timeout
            if options.timeout is not None
            else self._config.container_stop_timeout
        )
        result = CleanupResult()
        cid = short_id(container_id)
        logger.info("Cleaning up container", container_id=cid, force=options.force)

        try:
            container = await run_in_executor(self._client.containers.get, container_id)
        except DockerException as e:
            if is_not_found(e):
                logger.info("Container not found, already cleaned up", container_id=cid)
                self._forget(container_id)
                return result
            logger.error("Error during container cleanup", container_id=cid, error=str(e))
            result.errors.append(f"Cleanup error: {e}")
            result.success = False
            return result

        self._set_status(container.id, ContainerStatus.STOPPING)

        try:
            await run_in_executor(container.stop, timeout=timeout)
            logger.debug("Stopped container", container_id=cid)
        except APIError as e:
            if is_not_modified(e):
                logger.debug("Container already stopped", container_id=cid)
            elif is_not_found(e):
                logger.debug("Container not found", container_id=cid)
                self._forget(container.id)
                return result
            else:
                logger.warning("Failed to stop container", container_id=cid, error=str(e))
                if not options.force:
                    result.errors.append(f"Failed to stop container: {e}")
                    result.success = False
                    self._set_status(container.id, ContainerStatus.ERROR)
                    return result
        except DockerException as e:
            logger.warning("Failed to stop container", container_id=cid, error=str(e))
            if not options.force:
                result.errors.append(f"Failed to stop container: {e}")
                result.success = False
                self._set_status(container.id, ContainerStatus.ERROR)
                return result

        try:
            await run_in_executor(
                container.remove, force=options.force, v=options.remove_volumes
            )
            logger.info("Removed container", container_id=cid)
            result.containers_removed.append(container_id)
        except DockerException as e:
            if is_not_found(e):
                logger.debug("Container already removed", container_id=cid)
            else:
                logger.error("Failed to remove container", container_id=cid, error=str(e))
                result.errors.append(f"Failed to remove container: {e}")
                result.success = False

        if result.success:
            self._set_status(container.id, ContainerStatus.STOPPED)
            self._forget(container.id)
        else:
            self._set_status(container.id, ContainerStatus.ERROR)
        return result

    async def cleanup_all_by_session_label(
        self, options: Optional[CleanupOptions] = None
    ) -> CleanupResult:
        """Clean up every managed container, continuing past failures."""
        result = CleanupResult()
        logger.info("Cleaning up all managed containers")
        try:
            records = await self.list_managed_containers()
        except DockerException as e:
            logger.error("Error during bulk container cleanup", error=str(e))
            result.errors.append(f"Bulk cleanup error: {e}")
            result.success = False
            return result

        logger.debug("Found managed containers", count=len(records))
        for record in records:
            result.merge(await self.cleanup_container(record.id, options))

        if result.success:
            logger.info(
                "Successfully cleaned up containers", removed=len(result.containers_removed)
            )
        else:
            logger.warning(
                "Cleanup completed with errors",
                removed=len(result.containers_removed),
                errors=len(result.errors),
            )
        return result

    # ========================================================================
    # EXEC
    # ========================================================================

    async def execute_command(self, container_id: str, command: List[str]) -> str:
        """Create a raw interactive exec instance and return its id.

        Raises:
            docker.errors.APIError: The engine rejected the exec
        """
        try:
            exec_info = await run_in_executor(
                self._client.api.exec_create,
                container_id,
                command,
                stdout=True,
                stderr=True,
                stdin=True,
                tty=True,
                user=self._config.container_user,
            )
        except DockerException as e:
            logger.error(
                "Failed to execute command in container",
                container_id=short_id(container_id),
                command=command,
                error=str(e),
            )
            raise
        return exec_info["Id"]

    # ========================================================================
    # INTERNAL
    # ========================================================================

    def _set_status(self, container_id: str, status: ContainerStatus) -> None:
        record = self._records.get(container_id)
        if record is not None:
            record.status = status

    def _forget(self, container_id: str) -> None:
        record = self._records.pop(container_id, None)
        if record is not None:
            record.status = ContainerStatus.STOPPED
            if self._session_containers.get(record.session_id) == container_id:
                del self._session_containers[record.session_id]

