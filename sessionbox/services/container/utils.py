"""Shared utilities for container operations."""

import asyncio
import functools
from typing import Any, Dict, List, Optional

from docker.errors import APIError, NotFound

from ...models.container import PortMapping


async def run_in_executor(func, *args, **kwargs):
    """
    Run a blocking function in the default thread pool executor.

    Args:
        func: Blocking function to run
        *args: Arguments to pass to the function
        **kwargs: Keyword arguments to pass to the function

    Returns:
        Result of the function
    """
    loop = asyncio.get_running_loop()
    if kwargs:
        func = functools.partial(func, **kwargs)
    return await loop.run_in_executor(None, func, *args)


def is_not_found(error: Exception) -> bool:
    """True when an engine error means the object does not exist."""
    if isinstance(error, NotFound):
        return True
    return isinstance(error, APIError) and error.status_code == 404


def is_not_modified(error: Exception) -> bool:
    """True when the engine reports the request changed nothing (HTTP 304)."""
    return isinstance(error, APIError) and error.status_code == 304


def short_id(container_id: Optional[str]) -> str:
    return container_id[:12] if container_id else "none"


def extract_port_mappings(attrs: Dict[str, Any]) -> List[PortMapping]:
    """Read published port bindings from container inspect data.

    Args:
        attrs: ``container.attrs`` after a reload

    Returns:
        One mapping per bound container port; unbound ports are skipped
    """
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    mappings: List[PortMapping] = []
    for port_key, bindings in ports.items():
        if not bindings:
            continue
        port, _, protocol = port_key.partition("/")
        host_port = bindings[0].get("HostPort")
        if not host_port:
            continue
        mappings.append(
            PortMapping(
                container=int(port),
                host=int(host_port),
                protocol=protocol or "tcp",
            )
        )
    mappings.sort(key=lambda m: m.container)
    return mappings
