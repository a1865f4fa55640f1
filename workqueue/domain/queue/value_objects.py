"""
Queue Value Objects

Priority and status enumerations plus the naming and identifier rules shared
by every storage backend.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from ...core.clock import to_epoch_ms


class TaskPriority(str, Enum):
    """Task priority levels, dequeued highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def score(self) -> int:
        """Ordering score (higher number = higher priority)."""
        return PRIORITY_SCORES[self]


PRIORITY_SCORES = {
    TaskPriority.CRITICAL: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 1,
}

# Dead letter entries sort below every live priority
DEAD_LETTER_SCORE = 0


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    # Reserved for handlers reporting a timeout; the queue never sets it
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


def queue_name(prefix: str, task_type: str) -> str:
    """Queue key for a task type: ``<prefix>:<task_type>``."""
    return f"{prefix}:{task_type}"


def dead_letter_queue_name(prefix: str) -> str:
    """Queue key for the dead letter queue: ``<prefix>:dlq``."""
    return f"{prefix}:dlq"


def generate_task_id(now: datetime) -> str:
    """Time-ordered task id, e.g. ``task-1704067200000-1a2b3c4d``."""
    return f"task-{to_epoch_ms(now)}-{uuid4().hex[:8]}"


def generate_worker_id() -> str:
    """Worker id, e.g. ``worker-1a2b3c4d``."""
    return f"worker-{uuid4().hex[:8]}"
