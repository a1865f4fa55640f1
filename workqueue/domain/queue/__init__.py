"""
Queue Domain

Entities, value objects, events and storage contracts for the task queue.
"""

from .entities import QueueStats, ResultEntry, Task, WorkerRegistration
from .events import EventListener, EventType, QueueEvent, QueueEventBus
from .exceptions import (
    HandlerError,
    InvalidArgumentError,
    QueueException,
    StorageError,
    TaskNotFoundError,
)
from .repository_interfaces import (
    PriorityIndex,
    QueueStorage,
    ResultCache,
    TaskStore,
    WorkerRegistry,
)
from .value_objects import (
    DEAD_LETTER_SCORE,
    PRIORITY_SCORES,
    TERMINAL_STATUSES,
    TaskPriority,
    TaskStatus,
    dead_letter_queue_name,
    generate_task_id,
    generate_worker_id,
    queue_name,
)

__all__ = [
    "Task",
    "WorkerRegistration",
    "ResultEntry",
    "QueueStats",
    "EventType",
    "EventListener",
    "QueueEvent",
    "QueueEventBus",
    "QueueException",
    "InvalidArgumentError",
    "TaskNotFoundError",
    "HandlerError",
    "StorageError",
    "TaskStore",
    "PriorityIndex",
    "WorkerRegistry",
    "ResultCache",
    "QueueStorage",
    "TaskPriority",
    "TaskStatus",
    "PRIORITY_SCORES",
    "DEAD_LETTER_SCORE",
    "TERMINAL_STATUSES",
    "queue_name",
    "dead_letter_queue_name",
    "generate_task_id",
    "generate_worker_id",
]
