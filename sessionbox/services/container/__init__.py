"""Container management services.

This package provides Docker container management functionality split into:
- client.py: Docker client factory and initialization
- image.py: Base image provisioning
- manager.py: Container lifecycle management
- exec.py: Interactive exec sessions
- utils.py: Shared utilities for container operations
"""

from .client import DockerClientFactory
from .exec import ExecSessionManager, ExecStream
from .image import ImageProvisioner, format_bytes
from .manager import ContainerManager, container_environment, generate_session_id
from .utils import extract_port_mappings, run_in_executor

__all__ = [
    "ContainerManager",
    "DockerClientFactory",
    "ExecSessionManager",
    "ExecStream",
    "ImageProvisioner",
    "container_environment",
    "extract_port_mappings",
    "format_bytes",
    "generate_session_id",
    "run_in_executor",
]
