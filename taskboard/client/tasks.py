from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from taskboard.client.notifications import Notifier
from taskboard.client.session import ApiError, SessionManager
from taskboard.logging import get_logger
from taskboard.service.tasks import completion_rate
from taskboard.storage.models import utcnow

logger = get_logger(__name__)

PROVISIONAL_PREFIX = "tmp-"

# Server-managed fields never sent back in an update payload
_READ_ONLY_FIELDS = ("id", "userId", "createdAt", "updatedAt")


@dataclass
class SyncResult:
    success: bool
    task: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    count: int = 0


def _error_message(exc: Exception, fallback: str) -> str:
    if isinstance(exc, ApiError) and exc.message:
        return exc.message
    return fallback


class TaskSyncEngine:
    """Client-side task list kept in step with the server optimistically.

    Local state changes first and the API call follows. Creates and updates
    are reconciled with the server copy or reverted; deletes and reorders
    stay applied even when the server call fails.
    """

    def __init__(self, session: SessionManager, *, notifier: Optional[Notifier] = None) -> None:
        self.session = session
        self.notifier = notifier or Notifier()
        self.tasks: List[Dict[str, Any]] = []
        self.stats: Optional[Dict[str, Any]] = None
        self.pagination: Dict[str, int] = {"page": 1, "limit": 20, "total": 0, "totalPages": 1}

    def find(self, task_id: str) -> Optional[Dict[str, Any]]:
        return next((t for t in self.tasks if t.get("id") == task_id), None)

    def _replace(self, task_id: str, task: Dict[str, Any]) -> None:
        self.tasks = [task if t.get("id") == task_id else t for t in self.tasks]

    def _remove(self, task_id: str) -> None:
        self.tasks = [t for t in self.tasks if t.get("id") != task_id]

    async def fetch_tasks(self, **filters: Any) -> SyncResult:
        params = {k: v for k, v in filters.items() if v is not None and v != ""}
        try:
            data = await self.session.get("/tasks", params=params)
        except ApiError as exc:
            message = _error_message(exc, "Failed to fetch tasks")
            self.notifier.error(message)
            return SyncResult(success=False, error=message)
        data = data or {}
        self.tasks = list(data.get("tasks", []))
        self.pagination = dict(data.get("pagination", self.pagination))
        return SyncResult(success=True)

    async def fetch_stats(self) -> Dict[str, Any]:
        """Server statistics, or local aggregates when the call fails.

        The fallback only covers the tasks currently loaded, so it can
        disagree with the server when the list is paginated or filtered.
        """
        try:
            self.stats = await self.session.get("/tasks/stats/summary")
        except ApiError as exc:
            logger.info("client_stats_fallback", status_code=exc.status_code, error=exc.message)
            self.stats = self.local_stats()
        return self.stats

    def local_stats(self) -> Dict[str, Any]:
        total = len(self.tasks)
        completed = sum(1 for t in self.tasks if t.get("status") == "completed")
        return {
            "summary": {
                "total": total,
                "completed": completed,
                "inProgress": sum(1 for t in self.tasks if t.get("status") == "in-progress"),
                "todo": sum(1 for t in self.tasks if t.get("status") == "todo"),
                "highPriority": sum(1 for t in self.tasks if t.get("priority") == "high"),
            },
            "rates": {"completionRate": completion_rate(completed, total)},
            "lastUpdated": utcnow().isoformat(),
        }

    async def create_task(self, data: Dict[str, Any]) -> SyncResult:
        provisional_id = f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"
        now = utcnow().isoformat()
        provisional = {
            "description": "",
            "status": "todo",
            "priority": "medium",
            "tags": [],
            "actualTime": 0,
            "isImportant": False,
            **data,
            "id": provisional_id,
            "createdAt": now,
            "updatedAt": now,
        }
        self.tasks = [provisional, *self.tasks]
        try:
            created = await self.session.post("/tasks", json=data)
        except ApiError as exc:
            self._remove(provisional_id)
            message = _error_message(exc, "Failed to create task")
            logger.warning("client_task_create_failed", error=message)
            self.notifier.error(message)
            return SyncResult(success=False, error=message)
        self._replace(provisional_id, created)
        await self.fetch_stats()
        self.notifier.success("Task created successfully!")
        return SyncResult(success=True, task=created)

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> SyncResult:
        snapshot = self.find(task_id)
        if snapshot is None:
            self.notifier.error("Task not found")
            return SyncResult(success=False, error="Task not found")
        snapshot = copy.deepcopy(snapshot)
        merged = {**snapshot, **updates}
        self._replace(task_id, merged)
        payload = {k: v for k, v in merged.items() if k not in _READ_ONLY_FIELDS}
        try:
            updated = await self.session.put(f"/tasks/{task_id}", json=payload)
        except ApiError as exc:
            self._replace(task_id, snapshot)
            message = _error_message(exc, "Failed to update task")
            logger.warning("client_task_update_rolled_back", task_id=task_id, error=message)
            self.notifier.error(message)
            return SyncResult(success=False, task=snapshot, error=message)
        self._replace(task_id, updated)
        await self.fetch_stats()
        self.notifier.success("Task updated successfully!")
        return SyncResult(success=True, task=updated)

    async def delete_task(self, task_id: str) -> SyncResult:
        self._remove(task_id)
        try:
            await self.session.delete(f"/tasks/{task_id}")
        except ApiError as exc:
            # Not restored: the task stays hidden until the next fetch
            message = _error_message(exc, "Failed to delete task")
            logger.warning("client_task_delete_failed", task_id=task_id, error=message)
            self.notifier.error(message)
            return SyncResult(success=False, error=message)
        await self.fetch_stats()
        self.notifier.success("Task deleted successfully!")
        return SyncResult(success=True)

    async def update_task_position(
        self, task_id: str, position: int, status: Optional[str] = None
    ) -> SyncResult:
        current = self.find(task_id)
        if current is not None:
            moved = {**current, "position": position}
            if status is not None:
                moved["status"] = status
            self._replace(task_id, moved)
        body: Dict[str, Any] = {"position": position}
        if status is not None:
            body["status"] = status
        try:
            updated = await self.session.patch(f"/tasks/{task_id}/position", json=body)
        except ApiError as exc:
            message = _error_message(exc, "Failed to update task position")
            logger.warning("client_task_move_failed", task_id=task_id, error=message)
            self.notifier.error(message)
            return SyncResult(success=False, error=message)
        if updated:
            self._replace(task_id, updated)
        return SyncResult(success=True, task=updated)

    async def update_task_time(self, task_id: str, actual_time: int) -> SyncResult:
        try:
            updated = await self.session.patch(
                f"/tasks/{task_id}/time", json={"actualTime": actual_time}
            )
        except ApiError as exc:
            message = _error_message(exc, "Failed to update time")
            self.notifier.error(message)
            return SyncResult(success=False, error=message)
        self._replace(task_id, updated)
        return SyncResult(success=True, task=updated)

    async def clear_completed(self) -> SyncResult:
        completed = [t for t in self.tasks if t.get("status") == "completed"]
        results = await asyncio.gather(
            *(self.session.delete(f"/tasks/{t['id']}") for t in completed),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        for result in failures:
            if not isinstance(result, ApiError):
                raise result
        deleted_ids = {
            t["id"] for t, r in zip(completed, results) if not isinstance(r, Exception)
        }
        self.tasks = [t for t in self.tasks if t.get("id") not in deleted_ids]
        await self.fetch_stats()
        if failures:
            message = "Failed to clear completed tasks"
            logger.warning("client_clear_completed_partial", failed=len(failures), deleted=len(deleted_ids))
            self.notifier.error(message)
            return SyncResult(success=False, error=message, count=len(deleted_ids))
        self.notifier.success(f"Cleared {len(deleted_ids)} completed tasks!")
        return SyncResult(success=True, count=len(deleted_ids))


__all__ = ["SyncResult", "TaskSyncEngine", "PROVISIONAL_PREFIX"]
