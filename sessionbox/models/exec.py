"""Interactive exec session models."""

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass
class ExecOptions:
    """Command and attach settings for an exec session."""

    cmd: List[str]
    env: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    tty: bool = True
    attach_stdin: bool = True
    attach_stdout: bool = True
    attach_stderr: bool = True
    user: Optional[str] = None


@dataclass
class ExecSession:
    """One interactive command stream attached to a running container.

    ``is_active`` is true only between a successful start and the first
    terminal event (end, error, kill, or explicit cleanup).
    """

    key: str
    container_id: str
    exec_id: str
    options: ExecOptions
    stream: Optional[Any] = None
    is_active: bool = False
