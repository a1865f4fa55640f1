"""
Queue Services

Task queue, dispatcher, retry policies, dead letter handling and lease
reclamation.
"""

from .dead_letter import DeadLetterQueue
from .dispatcher import Dispatcher, TaskHandler
from .lease_reaper import LeaseReaper
from .queue_service import QueueService
from .retry import ExponentialBackoffRetry, RetryPolicy, RetryStrategy

__all__ = [
    "QueueService",
    "Dispatcher",
    "TaskHandler",
    "DeadLetterQueue",
    "LeaseReaper",
    "RetryPolicy",
    "RetryStrategy",
    "ExponentialBackoffRetry",
]
