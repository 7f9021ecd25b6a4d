"""Session models.

Sessions are owned by the session store; lifecycle code only reads them
and changes status/metadata through the store's update/delete API.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SessionStatus(str, Enum):
    """Session status enumeration."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class Session:
    """One user's sandbox; owns at most one container."""

    id: str
    user_id: str
    status: SessionStatus = SessionStatus.STARTING
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return int(self.metadata.get("error_count", 0))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(timezone.utc))

    def with_updates(self, **updates: Any) -> "Session":
        return replace(self, **updates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "container_id": self.container_id,
            "container_name": self.container_name,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        expires_at = data.get("expires_at")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            status=SessionStatus(data.get("status", SessionStatus.STARTING.value)),
            container_id=data.get("container_id"),
            container_name=data.get("container_name"),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            metadata=dict(data.get("metadata") or {}),
        )
