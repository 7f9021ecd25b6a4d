"""Configuration management for sessionbox.

Settings are read once from the environment (and an optional ``.env``
file) into a flat ``Settings`` object. Grouped views are available for
components that only need one slice of the configuration.

Usage:
    from sessionbox.config import settings

    # Grouped access
    settings.docker.base_image_name
    settings.lifecycle.graceful_shutdown_timeout
    settings.redis.get_url()

    # Flat access
    settings.base_image_name
    settings.get_redis_url()
"""

from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .api import APIConfig
from .docker import DockerConfig
from .lifecycle import LifecycleConfig
from .logging import LoggingConfig
from .redis import RedisConfig


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Image provisioning
    base_image_name: str = Field(default="sessionbox-base")
    dockerfile_path: str = Field(
        default="Dockerfile.base",
        description="Dockerfile path, relative to the build context",
    )
    build_context_dir: str = Field(default=".")

    # Container lifecycle
    container_name_prefix: str = Field(default="sessionbox")
    container_workspace_path: str = Field(default="/workspace")
    container_user: str = Field(default="sessionbox")
    container_memory_mb: int = Field(default=512, ge=64, le=16384)
    container_cpu_shares: int = Field(default=512, ge=2, le=262144)
    container_ports: List[str] = Field(default_factory=lambda: ["22/tcp", "80/tcp"])
    container_network_mode: str = Field(default="bridge")
    container_stop_timeout: int = Field(
        default=10,
        ge=0,
        le=300,
        description="Seconds the engine waits for a graceful stop before killing",
    )
    label_prefix: str = Field(default="sessionbox")
    app_version: str = Field(default="0.1.0")
    workspace_api_key: Optional[str] = Field(
        default=None,
        description="API key forwarded into the container environment",
    )

    # Shutdown
    graceful_shutdown_timeout: float = Field(default=10.0, gt=0, le=600)
    emergency_shutdown_timeout: float = Field(default=5.0, gt=0, le=120)
    emergency_resource_timeout: float = Field(default=3.0, gt=0, le=120)
    force_exit_grace: float = Field(default=1.0, ge=0, le=30)

    # Session expiry
    reaper_interval_seconds: float = Field(default=300.0, gt=0, le=86400)
    reaper_batch_size: int = Field(default=10, ge=1, le=100)
    reaper_max_retries: int = Field(default=3, ge=1, le=50)
    session_ttl_minutes: int = Field(default=240, ge=1, le=10080)
    session_sweep_interval_seconds: float = Field(default=60.0, gt=0, le=86400)
    session_touch_interval_seconds: float = Field(default=30.0, ge=0, le=3600)
    session_store_backend: str = Field(
        default="memory", description="Session store backend: 'memory' or 'redis'"
    )

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_url: Optional[str] = Field(default=None)
    redis_max_connections: int = Field(default=20, ge=1)
    redis_socket_timeout: int = Field(default=5, ge=1)
    redis_socket_connect_timeout: int = Field(default=5, ge=1)

    # Terminal server
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=3000, ge=1, le=65535)
    terminal_shell: str = Field(default="/bin/bash -l")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)
    log_max_size_mb: int = Field(default=100, ge=1)
    log_backup_count: int = Field(default=5, ge=1)

    @validator("container_name_prefix", "label_prefix")
    def validate_prefix(cls, v):
        """Prefixes are used for name/label discovery and must be non-empty."""
        v = v.strip()
        if not v:
            raise ValueError("prefix must not be empty")
        return v

    @validator("emergency_resource_timeout")
    def validate_emergency_resource_timeout(cls, v, values):
        """Per-resource emergency cleanup must finish before the coordinator gives up."""
        limit = values.get("emergency_shutdown_timeout")
        if limit is not None and v >= limit:
            raise ValueError(
                "emergency_resource_timeout must be less than emergency_shutdown_timeout"
            )
        return v

    @validator("log_level")
    def normalize_log_level(cls, v):
        return v.upper()

    @validator("session_store_backend")
    def validate_session_store_backend(cls, v):
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("session_store_backend must be 'memory' or 'redis'")
        return v

    # ========================================================================
    # GROUPED CONFIG ACCESS
    # ========================================================================

    @property
    def docker(self) -> DockerConfig:
        """Access container engine configuration group."""
        return DockerConfig(
            base_image_name=self.base_image_name,
            dockerfile_path=self.dockerfile_path,
            build_context_dir=self.build_context_dir,
            container_name_prefix=self.container_name_prefix,
            container_workspace_path=self.container_workspace_path,
            container_user=self.container_user,
            container_memory_mb=self.container_memory_mb,
            container_cpu_shares=self.container_cpu_shares,
            container_ports=self.container_ports,
            container_network_mode=self.container_network_mode,
            container_stop_timeout=self.container_stop_timeout,
            label_prefix=self.label_prefix,
            app_version=self.app_version,
        )

    @property
    def lifecycle(self) -> LifecycleConfig:
        """Access shutdown and reaper configuration group."""
        return LifecycleConfig(
            graceful_shutdown_timeout=self.graceful_shutdown_timeout,
            emergency_shutdown_timeout=self.emergency_shutdown_timeout,
            emergency_resource_timeout=self.emergency_resource_timeout,
            force_exit_grace=self.force_exit_grace,
            reaper_interval_seconds=self.reaper_interval_seconds,
            reaper_batch_size=self.reaper_batch_size,
            reaper_max_retries=self.reaper_max_retries,
            session_ttl_minutes=self.session_ttl_minutes,
            session_sweep_interval_seconds=self.session_sweep_interval_seconds,
            session_touch_interval_seconds=self.session_touch_interval_seconds,
        )

    @property
    def redis(self) -> RedisConfig:
        """Access Redis configuration group."""
        return RedisConfig(
            redis_host=self.redis_host,
            redis_port=self.redis_port,
            redis_password=self.redis_password,
            redis_db=self.redis_db,
            redis_url=self.redis_url,
            redis_max_connections=self.redis_max_connections,
            redis_socket_timeout=self.redis_socket_timeout,
            redis_socket_connect_timeout=self.redis_socket_connect_timeout,
        )

    @property
    def api(self) -> APIConfig:
        """Access terminal server configuration group."""
        return APIConfig(
            api_host=self.api_host,
            api_port=self.api_port,
            terminal_shell=self.terminal_shell,
        )

    @property
    def logging(self) -> LoggingConfig:
        """Access logging configuration group."""
        return LoggingConfig(
            log_level=self.log_level,
            log_format=self.log_format,
            log_file=self.log_file,
            log_max_size_mb=self.log_max_size_mb,
            log_backup_count=self.log_backup_count,
        )

    def get_redis_url(self) -> str:
        """Get Redis connection URL."""
        return self.redis.get_url()


# Global settings instance
settings = Settings()

__all__ = [
    "Settings",
    "settings",
    "APIConfig",
    "DockerConfig",
    "LifecycleConfig",
    "LoggingConfig",
    "RedisConfig",
]
