from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from taskboard.logging import get_logger
from taskboard.storage.errors import ConstraintViolation
from taskboard.storage.models import (
    RefreshTokenRecord,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    utcnow,
)

# Fields a task update may touch; ownership, id and timestamps are store-managed
TASK_MUTABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "priority",
        "due_date",
        "tags",
        "position",
        "estimated_time",
        "actual_time",
        "is_important",
    }
)


class MemoryStore:
    """In-memory document store with optional JSON persistence.

    All reads and writes go through one re-entrant lock, which makes each
    public method atomic with respect to the others. Refresh-token rotation
    relies on this: the active check, the revoke and the insert of the
    replacement happen inside a single critical section.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.tasks: Dict[str, Task] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_loaded",
                    users=len(self.users),
                    tasks=len(self.tasks),
                    refresh_token_count=len(self.refresh_tokens),
                )

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "taskboard_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        with self._data_lock:
            if self.fs_root is not None and not os.access(self.fs_root, os.W_OK):
                raise RuntimeError("state directory is not writable")

    # users / credentials
    def create_user(self, name: str, email: str, *, role: str = "user") -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=uuid.uuid4().hex, name=name, email=normalized, role=role)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def _insert_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        if token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already stored", {"field": "token"})
        record = RefreshTokenRecord(
            token=token, user_id=user_id, issued_at=utcnow(), expires_at=expires_at
        )
        self.refresh_tokens[token] = record
        return record

    def save_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            record = self._insert_refresh_token(token, user_id, expires_at)
            self._persist_state()
            return record

    def find_active_refresh_token(
        self, token: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.user_id != user_id or not record.is_active(now):
                return None
            return replace(record)

    def revoke_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            stored = self.refresh_tokens.get(record.token)
            if stored is None or stored.revoked:
                return
            stored.revoked = True
            stored.revoked_at = utcnow()
            self._persist_state()

    def revoke_user_refresh_token(self, token: str, user_id: str) -> bool:
        """Revoke ``token`` if it belongs to ``user_id``; returns whether it did."""
        with self._data_lock:
            stored = self.refresh_tokens.get(token)
            if stored is None or stored.user_id != user_id or stored.revoked:
                return False
            self.revoke_refresh_token(stored)
            return True

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        new_expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]:
        """Swap an active refresh token for its successor in one step.

        Returns ``None`` without side effects if ``old_token`` is not active
        for ``user_id`` at the time the lock is held.
        """
        with self._data_lock:
            stored = self.refresh_tokens.get(old_token)
            if stored is None or stored.user_id != user_id or not stored.is_active():
                return None
            now = utcnow()
            stored.revoked = True
            stored.revoked_at = now
            record = self._insert_refresh_token(new_token, user_id, new_expires_at)
            self._persist_state()
            return replace(record)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return sorted(
                (replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id),
                key=lambda r: r.issued_at,
            )

    # tasks
    def create_task(self, user_id: str, title: str, **fields: Any) -> Task:
        unknown = set(fields) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation("unknown task fields", {"fields": sorted(unknown)})
        fields.pop("position", None)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            positions = [t.position for t in self.tasks.values() if t.user_id == user_id]
            position = max(positions) + 1 if positions else 0
            task = Task.new(user_id, title, position=position, **fields)
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id:
                return None
            return task

    def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Task], int]:
        needle = search.lower() if search else None
        with self._data_lock:
            matches = []
            for task in self.tasks.values():
                if task.user_id != user_id:
                    continue
                if status and task.status != status:
                    continue
                if priority and task.priority != priority:
                    continue
                if needle and needle not in task.title.lower() and needle not in (
                    task.description or ""
                ).lower():
                    continue
                matches.append(task)
        matches.sort(key=lambda t: t.created_at, reverse=True)
        return matches[offset : offset + limit], len(matches)

    def update_task(
        self, task_id: str, user_id: str, changes: Dict[str, Any]
    ) -> Optional[Task]:
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation("unknown task fields", {"fields": sorted(unknown)})
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id:
                return None
            for name, value in changes.items():
                setattr(task, name, value)
            task.updated_at = utcnow()
            self._persist_state()
            return task

    def delete_task(self, task_id: str, user_id: str) -> bool:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id:
                return False
            self.tasks.pop(task_id, None)
            self._persist_state()
            return True

    def task_counts(self, user_id: str) -> Dict[str, int]:
        with self._data_lock:
            owned = [t for t in self.tasks.values() if t.user_id == user_id]
        return {
            "total": len(owned),
            "completed": sum(1 for t in owned if t.status == TaskStatus.COMPLETED),
            "in_progress": sum(1 for t in owned if t.status == TaskStatus.IN_PROGRESS),
            "todo": sum(1 for t in owned if t.status == TaskStatus.TODO),
            "high_priority": sum(1 for t in owned if t.priority == TaskPriority.HIGH),
        }

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        # Write to a temp file then rename so a crash never leaves half a file
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except Exception as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "avatar": user.avatar,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            name=data.get("name", ""),
            email=data["email"],
            role=data.get("role", "user"),
            avatar=data.get("avatar"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token=data["token"],
            user_id=data["user_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "description": task.description,
            "status": TaskStatus(task.status).value,
            "priority": TaskPriority(task.priority).value,
            "due_date": self._serialize_datetime(task.due_date),
            "tags": list(task.tags),
            "position": task.position,
            "estimated_time": task.estimated_time,
            "actual_time": task.actual_time,
            "is_important": task.is_important,
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", TaskStatus.TODO.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            due_date=self._deserialize_datetime(data.get("due_date")),
            tags=list(data.get("tags", [])),
            position=int(data.get("position", 0)),
            estimated_time=data.get("estimated_time"),
            actual_time=int(data.get("actual_time", 0)),
            is_important=bool(data.get("is_important", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
