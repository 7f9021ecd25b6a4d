"""Shutdown and session-expiry timing configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings


class LifecycleConfig(BaseSettings):
    """Deadlines for graceful/emergency shutdown and reaper pacing.

    All durations are in seconds.
    """

    graceful_shutdown_timeout: float = Field(default=10.0, gt=0, le=600)
    emergency_shutdown_timeout: float = Field(default=5.0, gt=0, le=120)
    # Must stay below emergency_shutdown_timeout so the registry is cleared
    # before the coordinator gives up; Settings rejects anything else.
    emergency_resource_timeout: float = Field(default=3.0, gt=0, le=120)
    force_exit_grace: float = Field(default=1.0, ge=0, le=30)

    reaper_interval_seconds: float = Field(default=300.0, gt=0, le=86400)
    reaper_batch_size: int = Field(default=10, ge=1, le=100)
    reaper_max_retries: int = Field(default=3, ge=1, le=50)
    session_ttl_minutes: int = Field(default=240, ge=1, le=10080)
    session_sweep_interval_seconds: float = Field(default=60.0, gt=0, le=86400)
    session_touch_interval_seconds: float = Field(default=30.0, ge=0, le=3600)

    class Config:
        env_prefix = ""
        extra = "ignore"
