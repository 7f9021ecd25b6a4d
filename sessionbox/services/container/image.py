"""Base image provisioning.

Makes sure the session base image exists locally, building it from the
configured Dockerfile when it is missing. Every failure is returned as a
result object; nothing here raises for engine errors.
"""

import math
import os
import re
from typing import Any, Dict, List, Optional, Tuple

import docker
import structlog
from docker.errors import DockerException, ImageNotFound
from requests.exceptions import RequestException

from ...config import DockerConfig
from ...models.image import ImageBuildResult, ImageInfo, ImageInspectResult
from .utils import run_in_executor

logger = structlog.get_logger(__name__)

_IMAGE_ID_PATTERN = re.compile(r"writing image sha256:([a-f0-9]+)")
_SUCCESS_ID_PATTERN = re.compile(r"Successfully built ([a-f0-9]+)")


def format_bytes(size: int) -> str:
    """Format a byte count for humans (``1.5 MB``)."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    value = round(size / math.pow(1024, i), 2)
    return f"{value:g} {units[i]}"


class ImageProvisioner:
    """Ensures the base image for session containers is available."""

    def __init__(self, client: docker.DockerClient, config: DockerConfig):
        self._client = client
        self._config = config

    @property
    def image_name(self) -> str:
        return self._config.base_image_name

    # ========================================================================
    # ENGINE
    # ========================================================================

    async def is_engine_available(self) -> bool:
        """Ping the engine."""
        try:
            await run_in_executor(self._client.ping)
            return True
        except DockerException as e:
            logger.error("Docker is not available", error=str(e))
            return False

    async def engine_info(self) -> Optional[Dict[str, Any]]:
        """Return daemon info for diagnostics, or None if it cannot be read."""
        try:
            return await run_in_executor(self._client.info)
        except DockerException as e:
            logger.error("Failed to get Docker info", error=str(e))
            return None

    # ========================================================================
    # IMAGE OPERATIONS
    # ========================================================================

    async def inspect(self) -> ImageInspectResult:
        """Look up the base image.

        Returns:
            ``exists=False`` without an error when the image is absent;
            ``error`` is set for any other failure.
        """
        logger.debug("Inspecting image", image=self.image_name)
        try:
            image = await run_in_executor(self._client.images.get, self.image_name)
        except ImageNotFound:
            logger.info("Image not found", image=self.image_name)
            return ImageInspectResult(exists=False)
        except DockerException as e:
            logger.error("Error inspecting image", image=self.image_name, error=str(e))
            return ImageInspectResult(exists=False, error=str(e))

        attrs = image.attrs or {}
        info = ImageInfo(
            id=image.id,
            tags=list(image.tags or []),
            size=int(attrs.get("Size") or 0),
            created=str(attrs.get("Created") or ""),
        )
        logger.info(
            "Image found",
            image=self.image_name,
            id=info.id.replace("sha256:", "")[:12],
            size=format_bytes(info.size),
            created=info.created,
        )
        return ImageInspectResult(exists=True, image_info=info)

    async def build(self, build_args: Optional[Dict[str, str]] = None) -> ImageBuildResult:
        """Build the base image from the configured Dockerfile.

        Args:
            build_args: Optional ``--build-arg`` values

        Returns:
            Build result carrying every log line the engine produced
        """
        context = os.path.abspath(self._config.build_context_dir)
        dockerfile = self._config.dockerfile_path
        logger.info(
            "Building image", image=self.image_name, dockerfile=dockerfile, context=context
        )

        if not os.path.isfile(os.path.join(context, dockerfile)):
            error = f"Dockerfile not found: {os.path.join(context, dockerfile)}"
            logger.error("Failed to build image", image=self.image_name, error=error)
            return ImageBuildResult(success=False, error=error)

        build_logs: List[str] = []
        try:
            image_id, error = await run_in_executor(
                self._run_build, context, dockerfile, build_args or {}, build_logs
            )
        except (DockerException, RequestException, OSError) as e:
            logger.error("Error building image", image=self.image_name, error=str(e))
            return ImageBuildResult(success=False, build_logs=build_logs, error=str(e))

        if error:
            logger.error("Failed to build image", image=self.image_name, error=error)
            return ImageBuildResult(success=False, build_logs=build_logs, error=error)

        logger.info("Successfully built image", image=self.image_name, image_id=image_id)
        return ImageBuildResult(success=True, image_id=image_id, build_logs=build_logs)

    def _run_build(
        self,
        context: str,
        dockerfile: str,
        build_args: Dict[str, str],
        build_logs: List[str],
    ) -> Tuple[Optional[str], Optional[str]]:
        """Consume the engine's build stream (blocking).

        Returns:
            (image_id, error) - error is None on success
        """
        image_id: Optional[str] = None
        stream = self._client.api.build(
            path=context,
            dockerfile=dockerfile,
            tag=self.image_name,
            buildargs=build_args,
            rm=True,
            decode=True,
        )
        for chunk in stream:
            if "error" in chunk:
                message = str(chunk["error"]).strip()
                build_logs.append(message)
                return image_id, message

            line = chunk.get("stream")
            if line:
                build_logs.append(line)
                match = _IMAGE_ID_PATTERN.search(line) or _SUCCESS_ID_PATTERN.search(line)
                if match:
                    image_id = match.group(1)
                stripped = line.strip()
                if stripped.startswith("Step") or "Successfully" in stripped:
                    logger.debug("Build progress", line=stripped)

            aux = chunk.get("aux")
            if isinstance(aux, dict) and aux.get("ID"):
                image_id = aux["ID"].replace("sha256:", "")

        return image_id, None

    async def ensure(self) -> ImageInspectResult:
        """Inspect the image, building it only when it is missing."""
        result, _ = await self.ensure_with_logs()
        return result

    async def ensure_with_logs(self) -> Tuple[ImageInspectResult, List[str]]:
        """Like ``ensure`` but also returns the build log when a build ran."""
        logger.info("Ensuring base image is available", image=self.image_name)
        result = await self.inspect()
        if result.exists:
            logger.info("Image already exists, no build needed", image=self.image_name)
            return result, []

        if result.error:
            logger.warning(
                "Image inspect failed, attempting build",
                image=self.image_name,
                error=result.error,
            )

        build_result = await self.build()
        if not build_result.success:
            return (
                ImageInspectResult(
                    exists=False, error=f"Failed to build image: {build_result.error}"
                ),
                build_result.build_logs,
            )
        return await self.inspect(), build_result.build_logs
