from __future__ import annotations

import math
from datetime import timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from taskboard.config import Settings
from taskboard.logging import get_logger
from taskboard.service.errors import NotFoundError, ValidationError
from taskboard.storage.errors import ConstraintViolation
from taskboard.storage.models import Task, TaskPriority, TaskStatus, utcnow

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000


class TaskStore(Protocol):
    def create_task(self, user_id: str, title: str, **fields: Any) -> Task: ...

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]: ...

    def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Task], int]: ...

    def update_task(
        self, task_id: str, user_id: str, changes: Dict[str, Any]
    ) -> Optional[Task]: ...

    def delete_task(self, task_id: str, user_id: str) -> bool: ...

    def task_counts(self, user_id: str) -> Dict[str, int]: ...


def completion_rate(completed: int, total: int) -> int:
    """Whole-number percentage, halves rounded up; 0 when there are no tasks."""
    if not total:
        return 0
    return int(math.floor(completed / total * 100 + 0.5))


class TaskService:
    """Owner-scoped task CRUD plus the summary statistics.

    Every lookup is keyed by ``(task_id, user_id)``; a task owned by someone
    else is indistinguishable from one that does not exist.
    """

    def __init__(self, store: TaskStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[Task], Dict[str, int]]:
        if page < 1:
            raise ValidationError("Page must be at least 1", detail={"field": "page"})
        limit = limit or self.settings.default_page_size
        if limit < 1 or limit > self.settings.max_page_size:
            raise ValidationError(
                f"Limit must be between 1 and {self.settings.max_page_size}",
                detail={"field": "limit"},
            )
        status_value = self._coerce_status(status).value if status else None
        priority_value = self._coerce_priority(priority).value if priority else None
        tasks, total = self.store.list_tasks(
            user_id,
            status=status_value,
            priority=priority_value,
            search=search.strip() if search else None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        }
        return tasks, pagination

    async def get_task(self, task_id: str, user_id: str) -> Task:
        task = self.store.get_task(task_id, user_id)
        if not task:
            raise NotFoundError("Task not found")
        return task

    async def create_task(self, user_id: str, *, title: str, **fields: Any) -> Task:
        clean = self._clean_fields({"title": title, **fields})
        due_date = clean.get("due_date")
        if due_date is not None and due_date <= utcnow():
            raise ValidationError(
                "Due date must be in the future", detail={"field": "dueDate"}
            )
        title_value = clean.pop("title")
        try:
            task = self.store.create_task(user_id, title_value, **clean)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        self.logger.info("task_created", task_id=task.id, position=task.position)
        return task

    async def update_task(
        self, task_id: str, user_id: str, changes: Dict[str, Any]
    ) -> Task:
        clean = self._clean_fields(changes)
        try:
            task = self.store.update_task(task_id, user_id, clean)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if not task:
            raise NotFoundError("Task not found")
        self.logger.info("task_updated", task_id=task.id, fields=sorted(clean))
        return task

    async def update_position(
        self,
        task_id: str,
        user_id: str,
        position: int,
        status: Optional[str] = None,
    ) -> Task:
        changes: Dict[str, Any] = {"position": position}
        if status is not None:
            changes["status"] = status
        return await self.update_task(task_id, user_id, changes)

    async def update_time(self, task_id: str, user_id: str, actual_time: int) -> Task:
        return await self.update_task(task_id, user_id, {"actual_time": actual_time})

    async def delete_task(self, task_id: str, user_id: str) -> None:
        if not self.store.delete_task(task_id, user_id):
            raise NotFoundError("Task not found")
        self.logger.info("task_deleted", task_id=task_id)

    async def stats(self, user_id: str) -> Dict[str, Any]:
        counts = self.store.task_counts(user_id)
        return {
            "summary": counts,
            "rates": {
                "completion_rate": completion_rate(counts["completed"], counts["total"])
            },
            "last_updated": utcnow(),
        }

    def _clean_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        clean: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == "title":
                value = (value or "").strip()
                if not value:
                    raise ValidationError("Title is required", detail={"field": "title"})
                if len(value) > TITLE_MAX_LENGTH:
                    raise ValidationError(
                        "Title cannot be more than 200 characters",
                        detail={"field": "title"},
                    )
            elif name == "description":
                value = (value or "").strip()
                if len(value) > DESCRIPTION_MAX_LENGTH:
                    raise ValidationError(
                        "Description cannot be more than 1000 characters",
                        detail={"field": "description"},
                    )
            elif name == "status":
                value = self._coerce_status(value)
            elif name == "priority":
                value = self._coerce_priority(value)
            elif name == "tags":
                value = [tag.strip() for tag in (value or []) if tag and tag.strip()]
            elif name in {"estimated_time", "actual_time"}:
                if value is not None and value < 0:
                    raise ValidationError(
                        "Time must be a positive number of minutes",
                        detail={"field": name},
                    )
                if name == "actual_time" and value is None:
                    value = 0
            elif name == "position":
                if value is None or value < 0:
                    raise ValidationError(
                        "Position must be zero or greater", detail={"field": "position"}
                    )
            elif name == "due_date" and value is not None and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            elif name == "is_important":
                value = bool(value)
            clean[name] = value
        return clean

    @staticmethod
    def _coerce_status(value: Any) -> TaskStatus:
        try:
            return TaskStatus(value)
        except ValueError as exc:
            raise ValidationError(
                "Status must be one of todo, in-progress, completed",
                detail={"field": "status"},
            ) from exc

    @staticmethod
    def _coerce_priority(value: Any) -> TaskPriority:
        try:
            return TaskPriority(value)
        except ValueError as exc:
            raise ValidationError(
                "Priority must be one of low, medium, high",
                detail={"field": "priority"},
            ) from exc


__all__ = ["TaskService", "TaskStore", "completion_rate"]
