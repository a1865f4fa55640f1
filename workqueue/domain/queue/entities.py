"""
Queue Domain Entities

Task records, worker registrations, cached results and queue statistics.
Entities are pydantic models so every backend can serialize them the same way.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...core.clock import elapsed_ms
from .value_objects import TaskPriority, TaskStatus


class Task(BaseModel):
    """A unit of work tracked by the queue."""

    id: str = Field(..., min_length=1, description="Time-ordered task id")
    task_type: str = Field(..., min_length=1, description="Queue the task lives in")
    priority: TaskPriority = Field(TaskPriority.NORMAL, description="Task priority")
    payload: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque task payload"
    )
    status: TaskStatus = Field(TaskStatus.PENDING)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    timeout_ms: int = Field(
        default=300000, ge=1, description="Advisory timeout handed to handlers"
    )
    error: Optional[str] = Field(None, description="Last recorded error")
    result: Optional[Any] = Field(None, description="Set only on completion")

    @model_validator(mode="after")
    def validate_retry_budget(self) -> "Task":
        """Retry count can never exceed the retry budget."""
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        """Processing time, available once the task completed after a dequeue."""
        if self.started_at and self.completed_at:
            return elapsed_ms(self.started_at, self.completed_at)
        return None

    @property
    def wait_time_ms(self) -> Optional[int]:
        """Time spent queued before the current attempt started."""
        if self.started_at:
            return elapsed_ms(self.created_at, self.started_at)
        return None


class WorkerRegistration(BaseModel):
    """Registration metadata for a worker process."""

    worker_id: str = Field(..., min_length=1)
    task_types: List[str] = Field(..., min_length=1)
    max_concurrent: int = Field(default=1, ge=1)
    current_tasks: int = Field(default=0, ge=0)
    last_heartbeat: datetime
    registered_at: datetime
    hostname: Optional[str] = None
    container_id: Optional[str] = None

    @field_validator("task_types")
    @classmethod
    def validate_task_types(cls, v):
        """Task types must be non-empty strings."""
        if any(not isinstance(t, str) or not t.strip() for t in v):
            raise ValueError("task_types must contain non-empty strings")
        return v

    @model_validator(mode="after")
    def validate_in_flight(self) -> "WorkerRegistration":
        """In-flight count never exceeds the concurrency ceiling."""
        if self.current_tasks > self.max_concurrent:
            raise ValueError(
                f"current_tasks ({self.current_tasks}) exceeds max_concurrent ({self.max_concurrent})"
            )
        return self

    def heartbeat_age_ms(self, now: datetime) -> int:
        return elapsed_ms(self.last_heartbeat, now)

    def is_stale(self, now: datetime, threshold_ms: int) -> bool:
        return self.heartbeat_age_ms(now) >= threshold_ms


class ResultEntry(BaseModel):
    """Completed task result with an expiry."""

    task_id: str
    result: Optional[Any] = None
    expires_at: datetime

    @classmethod
    def create(
        cls, task_id: str, result: Any, ttl_seconds: int, now: datetime
    ) -> "ResultEntry":
        return cls(
            task_id=task_id,
            result=result,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class QueueStats(BaseModel):
    """Snapshot of queue state."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    dead_letter: int = 0
    by_priority: Dict[str, int] = Field(
        default_factory=lambda: {p.value: 0 for p in TaskPriority}
    )
    by_worker_type: Dict[str, int] = Field(default_factory=dict)
    average_wait_time_ms: float = 0.0
    average_processing_time_ms: float = 0.0
    workers: int = 0
