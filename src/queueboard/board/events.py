"""In-process publish/subscribe for board state changes.

Delivery is best-effort: there is no persistence or replay, and a failing
subscriber never prevents the others from being notified.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from queueboard.storage.common import utc_now

logger = logging.getLogger(__name__)


class TaskEventType(str, Enum):
    EXECUTOR_STARTED = "executor:started"
    EXECUTOR_STOPPED = "executor:stopped"
    TASK_CLAIMED = "task:claimed"
    TASK_MOVED = "task:moved"
    TASK_FAILED = "task:failed"
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_DELETED = "task:deleted"
    TASK_COMMENT = "task:comment"


@dataclass(slots=True)
class TaskEvent:
    type: TaskEventType
    task_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


TaskEventCallback = Callable[[TaskEvent], None]


class EventBus:
    """Fan out task events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[TaskEventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: TaskEventCallback) -> Callable[[], None]:
        """Register a callback and return a function that unregisters it."""

        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: TaskEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.warning("Event subscriber failed for %s", event.type.value, exc_info=True)
