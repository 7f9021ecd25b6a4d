"""Terminal server configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings


class APIConfig(BaseSettings):
    """Bind address for the websocket terminal server."""

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=3000, ge=1, le=65535)
    terminal_shell: str = Field(default="/bin/bash -l")

    class Config:
        env_prefix = ""
        extra = "ignore"
