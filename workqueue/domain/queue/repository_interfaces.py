"""
Queue Repository Interfaces

Abstract storage contracts shared by the in-memory and Redis backends.
Stores hand out copies; the queue service is the only writer of task state,
and every status transition it makes goes through ``put_if_status``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entities import ResultEntry, Task, WorkerRegistration
from .value_objects import TaskStatus


class TaskStore(ABC):
    """Map from task id to task record."""

    @abstractmethod
    async def put(self, task: Task) -> None:
        """Insert or overwrite a task record."""
        pass

    @abstractmethod
    async def put_if_status(self, task: Task, expected: TaskStatus) -> bool:
        """
        Overwrite a task record only if its stored status is ``expected``.

        The check and the write are atomic for every writer sharing the
        store, including other processes.

        Returns:
            False if the record is missing or its status changed
        """
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        """Return a copy of the task, or None."""
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """Delete a task record."""
        pass

    @abstractmethod
    async def list_all(self) -> List[Task]:
        """Return copies of every stored task."""
        pass


class PriorityIndex(ABC):
    """
    Per-queue ordered sequence of pending task ids.

    Ready entries are ordered by score (higher first), then by insertion
    order. Entries pushed with a future ``ready_at`` are held back until
    ``pop`` is called with ``now >= ready_at``.
    """

    @abstractmethod
    async def push(
        self,
        queue: str,
        task_id: str,
        score: int,
        ready_at: Optional[datetime] = None,
    ) -> None:
        """Insert a task id into a queue."""
        pass

    @abstractmethod
    async def pop(self, queue: str, now: datetime) -> Optional[str]:
        """Promote due delayed entries, then remove and return the front id."""
        pass

    @abstractmethod
    async def remove(self, queue: str, task_id: str) -> bool:
        """Remove a task id from a queue, ready or delayed."""
        pass

    @abstractmethod
    async def size(self, queue: str) -> int:
        """Number of entries in a queue, ready and delayed."""
        pass

    @abstractmethod
    async def list_ids(self, queue: str) -> List[str]:
        """Ready ids in dequeue order followed by delayed ids in ready order."""
        pass


class WorkerRegistry(ABC):
    """Map from worker id to registration metadata."""

    @abstractmethod
    async def register(self, registration: WorkerRegistration) -> None:
        pass

    @abstractmethod
    async def get(self, worker_id: str) -> Optional[WorkerRegistration]:
        pass

    @abstractmethod
    async def heartbeat(
        self, worker_id: str, now: datetime, current_tasks: Optional[int] = None
    ) -> bool:
        """Refresh a worker's heartbeat. Returns False for unknown workers."""
        pass

    @abstractmethod
    async def unregister(self, worker_id: str) -> bool:
        pass

    @abstractmethod
    async def list_all(self) -> List[WorkerRegistration]:
        pass


class ResultCache(ABC):
    """Time-bounded cache of completed task results."""

    @abstractmethod
    async def set(self, entry: ResultEntry) -> None:
        pass

    @abstractmethod
    async def get(self, task_id: str, now: datetime) -> Optional[ResultEntry]:
        """Return the entry if present and not expired; expired entries are evicted."""
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        pass

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        """Evict every expired entry and return how many were removed."""
        pass


class QueueStorage:
    """Bundle of the four stores a queue service runs against."""

    def __init__(
        self,
        tasks: TaskStore,
        index: PriorityIndex,
        workers: WorkerRegistry,
        results: ResultCache,
    ):
        self.tasks = tasks
        self.index = index
        self.workers = workers
        self.results = results

    async def initialize(self) -> None:
        """Prepare backend resources. No-op for in-process stores."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass
