from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = "user"
    avatar: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token; kept after revocation as an audit trail."""

    token: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return not self.revoked and now < self.expires_at


@dataclass
class Task:
    id: str
    user_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    position: int = 0
    estimated_time: Optional[int] = None
    actual_time: int = 0
    is_important: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, title: str, *, position: int, **fields) -> "Task":
        now = utcnow()
        return cls(
            id=uuid.uuid4().hex,
            user_id=user_id,
            title=title,
            position=position,
            created_at=now,
            updated_at=now,
            **fields,
        )
