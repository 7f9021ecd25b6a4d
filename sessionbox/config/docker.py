"""Container engine configuration."""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class DockerConfig(BaseSettings):
    """Image, naming, and resource-limit settings for session containers."""

    base_image_name: str = Field(default="sessionbox-base")
    dockerfile_path: str = Field(default="Dockerfile.base")
    build_context_dir: str = Field(default=".")

    container_name_prefix: str = Field(default="sessionbox")
    container_workspace_path: str = Field(default="/workspace")
    container_user: str = Field(default="sessionbox")
    container_memory_mb: int = Field(default=512, ge=64, le=16384)
    container_cpu_shares: int = Field(default=512, ge=2, le=262144)
    container_ports: List[str] = Field(default_factory=lambda: ["22/tcp", "80/tcp"])
    container_network_mode: str = Field(default="bridge")
    container_stop_timeout: int = Field(default=10, ge=0, le=300)

    label_prefix: str = Field(default="sessionbox")
    app_version: str = Field(default="0.1.0")

    @property
    def memory_limit_bytes(self) -> int:
        return self.container_memory_mb * 1024 * 1024

    class Config:
        env_prefix = ""
        extra = "ignore"
