"""
workqueue

Priority task queue with retry and exponential backoff, dead-letter handling,
worker heartbeats and per-worker concurrency limits.
"""

from .core.clock import ManualClock, SystemClock
from .core.config import Settings, get_settings
from .core.logging_config import configure_logging
from .domain.queue import (
    EventType,
    HandlerError,
    InvalidArgumentError,
    QueueEvent,
    QueueException,
    QueueStats,
    StorageError,
    Task,
    TaskNotFoundError,
    TaskPriority,
    TaskStatus,
    WorkerRegistration,
)
from .infrastructure.storage import create_storage
from .services.queues import (
    DeadLetterQueue,
    Dispatcher,
    ExponentialBackoffRetry,
    LeaseReaper,
    QueueService,
    RetryPolicy,
)

__version__ = "0.1.0"

__all__ = [
    "QueueService",
    "Dispatcher",
    "DeadLetterQueue",
    "LeaseReaper",
    "RetryPolicy",
    "ExponentialBackoffRetry",
    "create_storage",
    "Settings",
    "get_settings",
    "configure_logging",
    "SystemClock",
    "ManualClock",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "WorkerRegistration",
    "QueueStats",
    "QueueEvent",
    "EventType",
    "QueueException",
    "InvalidArgumentError",
    "TaskNotFoundError",
    "HandlerError",
    "StorageError",
]
