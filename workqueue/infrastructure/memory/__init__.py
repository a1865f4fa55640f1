"""
In-process queue storage.
"""

from .stores import (
    InMemoryPriorityIndex,
    InMemoryQueueStorage,
    InMemoryResultCache,
    InMemoryTaskStore,
    InMemoryWorkerRegistry,
)

__all__ = [
    "InMemoryTaskStore",
    "InMemoryPriorityIndex",
    "InMemoryWorkerRegistry",
    "InMemoryResultCache",
    "InMemoryQueueStorage",
]
