from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from taskboard.logging import get_logger
from taskboard.storage.models import utcnow

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass
class Notification:
    level: NotificationLevel
    message: str
    created_at: datetime = field(default_factory=utcnow)


class Notifier:
    """Fan-out for transient user-facing messages (toast equivalents).

    Listeners are called synchronously; ``history`` keeps the most recent
    notifications for front ends that poll instead of subscribing.
    """

    def __init__(self, *, history_size: int = 50) -> None:
        self._listeners: List[Callable[[Notification], None]] = []
        self.history: List[Notification] = []
        self.history_size = history_size

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, level: NotificationLevel, message: str) -> Notification:
        note = Notification(level=level, message=message)
        self.history.append(note)
        overflow = len(self.history) - max(self.history_size, 0)
        if overflow > 0:
            del self.history[:overflow]
        logger.debug("client_notification", level=level.value, message=message)
        for listener in list(self._listeners):
            listener(note)
        return note

    def success(self, message: str) -> Notification:
        return self.notify(NotificationLevel.SUCCESS, message)

    def error(self, message: str) -> Notification:
        return self.notify(NotificationLevel.ERROR, message)

    def last(self) -> Optional[Notification]:
        return self.history[-1] if self.history else None


__all__ = ["Notification", "NotificationLevel", "Notifier"]
