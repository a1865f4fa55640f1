"""
Queue Retry Policies

Retry decisions and backoff delays for failed tasks.
"""

import random
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from ...core.config import Settings, get_settings
from ...domain.queue.entities import Task


class RetryPolicy(BaseModel):
    """Backoff configuration."""

    base_delay_ms: int = Field(
        default=1000, ge=0, description="Delay before the first retry"
    )
    max_delay_ms: int = Field(default=30000, ge=0, description="Delay cap")
    multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Delay multiplier"
    )
    jitter: bool = Field(default=False, description="Add +/-25% jitter to delays")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
        )


class RetryStrategy(ABC):
    """Abstract base class for retry strategies."""

    @abstractmethod
    def should_retry(self, task: Task, retryable: bool) -> bool:
        """
        Determine if a failed task gets another attempt.

        Args:
            task: Task as stored before the failure is recorded
            retryable: Whether the caller considers the failure transient

        Returns:
            True if the task should be rescheduled
        """
        pass

    @abstractmethod
    def calculate_delay_ms(self, retry_count: int) -> int:
        """
        Calculate the retry delay.

        Args:
            retry_count: Retry count after incrementing for this failure

        Returns:
            Delay in milliseconds
        """
        pass


class ExponentialBackoffRetry(RetryStrategy):
    """
    Exponential backoff capped at a maximum delay.

    With the default policy the delays after the first, second and third
    failures are 2 s, 4 s and 8 s, and never more than 30 s.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def should_retry(self, task: Task, retryable: bool) -> bool:
        return retryable and task.retry_count < task.max_retries

    def calculate_delay_ms(self, retry_count: int) -> int:
        delay = self.policy.base_delay_ms * (self.policy.multiplier**retry_count)
        delay = min(delay, self.policy.max_delay_ms)

        if self.policy.jitter:
            jitter_amount = delay * 0.25
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0, int(delay))
