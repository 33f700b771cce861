from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskboard.config import get_settings
from taskboard.storage.models import Task, TaskPriority, TaskStatus, User

MAX_TAGS = 50
MAX_TAG_LENGTH = 50
MAX_PASSWORD_LENGTH = 128


class CamelModel(BaseModel):
    """Wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are removed first so they cannot
    be used to register look-alike addresses.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_email",
    "unauthorized",
    "invalid_credentials",
    "invalid_or_expired_token",
    "not_found",
    "rate_limited",
    "server_error",
})


class FieldError(BaseModel):
    field: str
    message: str


class ErrorBody(BaseModel):
    """Error envelope with a stable ``code`` clients can branch on."""

    success: bool = False
    error: str
    code: str
    errors: Optional[List[FieldError]] = None
    stack: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Success envelope shared by every endpoint."""

    success: bool = True
    message: str = ""
    data: Optional[Any] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Valid email is required")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("Valid email is required")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Valid email is required")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Valid email is required")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Valid email is required")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Valid email is required")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    min_length = get_settings().password_min_length
    if len(value) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_title(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("Title is required")
    if len(value) > 200:
        raise ValueError("Title cannot be more than 200 characters")
    return value


def _validate_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if len(value) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags are allowed")
    cleaned = [tag.strip() for tag in value if tag and tag.strip()]
    if any(len(tag) > MAX_TAG_LENGTH for tag in cleaned):
        raise ValueError(f"Tags must be at most {MAX_TAG_LENGTH} characters")
    return cleaned


# auth


class RegisterRequest(CamelModel):
    name: str = Field(..., max_length=100)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _require_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class TokenRefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    avatar: Optional[str] = None
    role: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            avatar=user.avatar,
            role=user.role,
            created_at=user.created_at,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    access_token: str
    refresh_token: str


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str


class ProfileResponse(CamelModel):
    user: UserResponse


# tasks


class TaskCreateRequest(CamelModel):
    title: str
    description: Optional[str] = Field(default=None, max_length=1000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None
    estimated_time: Optional[int] = Field(default=None, ge=0)
    actual_time: Optional[int] = Field(default=None, ge=0)
    is_important: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _validate_create_title(cls, value: str) -> str:
        return _validate_title(value)

    @field_validator("tags")
    @classmethod
    def _validate_create_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_tags(value)

    def task_fields(self) -> Dict[str, Any]:
        """Provided fields only; unset ones fall back to model defaults."""
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True).items()
            if name != "title" and value is not None
        }


# Fields that may be cleared with an explicit null on update
_NULLABLE_UPDATE_FIELDS = frozenset({"description", "due_date", "estimated_time"})


class TaskUpdateRequest(CamelModel):
    """Partial update; clients usually send the whole merged record.

    Read-only fields (id, userId, createdAt, updatedAt) in the body are
    ignored.
    """

    title: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None
    position: Optional[int] = Field(default=None, ge=0)
    estimated_time: Optional[int] = Field(default=None, ge=0)
    actual_time: Optional[int] = Field(default=None, ge=0)
    is_important: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _validate_update_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_title(value)

    @field_validator("tags")
    @classmethod
    def _validate_update_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_tags(value)

    def changes(self) -> Dict[str, Any]:
        changes = {}
        for name, value in self.model_dump(exclude_unset=True).items():
            if value is None and name not in _NULLABLE_UPDATE_FIELDS:
                continue
            if name == "description" and value is None:
                value = ""
            changes[name] = value
        return changes


class TaskPositionRequest(CamelModel):
    position: int = Field(..., ge=0)
    status: Optional[TaskStatus] = None


class TaskTimeRequest(CamelModel):
    actual_time: int = Field(..., ge=0)


class TaskResponse(CamelModel):
    id: str
    user_id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    position: int
    estimated_time: Optional[int] = None
    actual_time: int = 0
    is_important: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            user_id=task.user_id,
            title=task.title,
            description=task.description,
            status=task.status,
            priority=task.priority,
            due_date=task.due_date,
            tags=list(task.tags),
            position=task.position,
            estimated_time=task.estimated_time,
            actual_time=task.actual_time,
            is_important=task.is_important,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TaskListResponse(CamelModel):
    tasks: List[TaskResponse]
    pagination: Pagination


class StatsSummary(CamelModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    todo: int = 0
    high_priority: int = 0


class StatsRates(CamelModel):
    completion_rate: int = 0


class StatsResponse(CamelModel):
    summary: StatsSummary
    rates: StatsRates
    last_updated: datetime


class HealthResponse(BaseModel):
    success: bool = True
    message: str
    timestamp: datetime
    uptime: float
    environment: str
