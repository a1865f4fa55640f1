"""
Queue Lifecycle Events

Typed notifications emitted by the queue service and dispatcher, and a small
publish/subscribe bus that delivers them to listeners.
"""

import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Queue lifecycle event types."""

    INITIALIZED = "initialized"
    TASK_ENQUEUED = "task_enqueued"
    TASK_DEQUEUED = "task_dequeued"
    TASK_COMPLETED = "task_completed"
    TASK_RETRYING = "task_retrying"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    TASK_RECLAIMED = "task_reclaimed"
    TASK_REQUEUED = "task_requeued"
    WORKER_REGISTERED = "worker_registered"
    WORKER_UNREGISTERED = "worker_unregistered"
    WARNING = "warning"
    ERROR = "error"
    SHUTDOWN = "shutdown"


class QueueEvent(BaseModel):
    """A single lifecycle notification."""

    type: EventType
    timestamp: datetime
    task_id: Optional[str] = None
    worker_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


EventListener = Callable[[QueueEvent], Union[None, Awaitable[None]]]


class QueueEventBus:
    """Fan-out of queue events to registered listeners.

    Listeners may be plain callables or coroutine functions. A listener that
    raises is logged and skipped; it never affects the queue operation that
    published the event.
    """

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: EventListener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def publish(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    f"Event listener failed for {event.type.value}: {e}",
                    extra={"event_type": event.type.value, "task_id": event.task_id},
                    exc_info=True,
                )
