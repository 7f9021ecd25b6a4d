"""Image provisioning result models."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ImageInfo:
    """Summary of a locally available image."""

    id: str
    tags: List[str] = field(default_factory=list)
    size: int = 0
    created: str = ""


@dataclass
class ImageInspectResult:
    """Outcome of looking an image up on the engine.

    A missing image is a normal negative result (``exists=False`` and no
    ``error``); any other failure is reported in ``error``.
    """

    exists: bool
    image_info: Optional[ImageInfo] = None
    error: Optional[str] = None


@dataclass
class ImageBuildResult:
    """Outcome of building an image, with the captured build log."""

    success: bool
    image_id: Optional[str] = None
    build_logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
