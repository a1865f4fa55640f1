"""
In-Memory Queue Stores

Process-local implementations of the queue storage contracts. Each store
guards its maps with its own asyncio.Lock and returns deep copies, so callers
never hold a reference into stored state.
"""

import asyncio
import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ...domain.queue.entities import ResultEntry, Task, WorkerRegistration
from ...domain.queue.repository_interfaces import (
    PriorityIndex,
    QueueStorage,
    ResultCache,
    TaskStore,
    WorkerRegistry,
)
from ...domain.queue.value_objects import TaskStatus

logger = logging.getLogger(__name__)


class InMemoryTaskStore(TaskStore):
    """Dictionary-backed task records."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def put(self, task: Task) -> None:
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    async def put_if_status(self, task: Task, expected: TaskStatus) -> bool:
        async with self._lock:
            current = self._tasks.get(task.id)
            if current is None or current.status != expected:
                return False
            self._tasks[task.id] = task.model_copy(deep=True)
            return True

    async def get(self, task_id: str) -> Optional[Task]:
        async with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            return self._tasks.pop(task_id, None) is not None

    async def list_all(self) -> List[Task]:
        async with self._lock:
            return [task.model_copy(deep=True) for task in self._tasks.values()]


@dataclass(order=True)
class _DelayedEntry:
    ready_at: datetime
    seq: int
    task_id: str = field(compare=False)
    score: int = field(compare=False)


class InMemoryPriorityIndex(PriorityIndex):
    """
    Ordered per-queue id lists.

    Ready entries are ``(score, task_id)`` pairs kept highest score first.
    A new entry goes in front of the first entry with a strictly lower score,
    which keeps equal-score entries in arrival order. Delayed entries are kept
    sorted by ``(ready_at, seq)`` and moved into the ready list by ``pop``.
    """

    def __init__(self) -> None:
        self._ready: Dict[str, List[tuple]] = {}
        self._delayed: Dict[str, List[_DelayedEntry]] = {}
        self._seq = 0
        self._lock = asyncio.Lock()

    def _insert_ready(self, queue: str, task_id: str, score: int) -> None:
        entries = self._ready.setdefault(queue, [])
        position = len(entries)
        for i, (existing_score, _) in enumerate(entries):
            if existing_score < score:
                position = i
                break
        entries.insert(position, (score, task_id))

    def _promote_due(self, queue: str, now: datetime) -> None:
        delayed = self._delayed.get(queue)
        while delayed and delayed[0].ready_at <= now:
            entry = delayed.pop(0)
            self._insert_ready(queue, entry.task_id, entry.score)

    async def push(
        self,
        queue: str,
        task_id: str,
        score: int,
        ready_at: Optional[datetime] = None,
    ) -> None:
        async with self._lock:
            if ready_at is None:
                self._insert_ready(queue, task_id, score)
                return

            self._seq += 1
            bisect.insort(
                self._delayed.setdefault(queue, []),
                _DelayedEntry(
                    ready_at=ready_at, seq=self._seq, task_id=task_id, score=score
                ),
            )

    async def pop(self, queue: str, now: datetime) -> Optional[str]:
        async with self._lock:
            self._promote_due(queue, now)
            entries = self._ready.get(queue)
            if not entries:
                return None
            _, task_id = entries.pop(0)
            return task_id

    async def remove(self, queue: str, task_id: str) -> bool:
        async with self._lock:
            entries = self._ready.get(queue, [])
            for i, (_, existing_id) in enumerate(entries):
                if existing_id == task_id:
                    del entries[i]
                    return True

            delayed = self._delayed.get(queue, [])
            for i, entry in enumerate(delayed):
                if entry.task_id == task_id:
                    del delayed[i]
                    return True

            return False

    async def size(self, queue: str) -> int:
        async with self._lock:
            return len(self._ready.get(queue, [])) + len(self._delayed.get(queue, []))

    async def list_ids(self, queue: str) -> List[str]:
        async with self._lock:
            ready = [task_id for _, task_id in self._ready.get(queue, [])]
            delayed = [entry.task_id for entry in self._delayed.get(queue, [])]
            return ready + delayed


class InMemoryWorkerRegistry(WorkerRegistry):
    """Dictionary-backed worker registrations."""

    def __init__(self) -> None:
        self._workers: Dict[str, WorkerRegistration] = {}
        self._lock = asyncio.Lock()

    async def register(self, registration: WorkerRegistration) -> None:
        async with self._lock:
            self._workers[registration.worker_id] = registration.model_copy(deep=True)

    async def get(self, worker_id: str) -> Optional[WorkerRegistration]:
        async with self._lock:
            registration = self._workers.get(worker_id)
            return registration.model_copy(deep=True) if registration else None

    async def heartbeat(
        self, worker_id: str, now: datetime, current_tasks: Optional[int] = None
    ) -> bool:
        async with self._lock:
            registration = self._workers.get(worker_id)
            if registration is None:
                return False

            registration.last_heartbeat = now
            if current_tasks is not None:
                registration.current_tasks = current_tasks
            return True

    async def unregister(self, worker_id: str) -> bool:
        async with self._lock:
            return self._workers.pop(worker_id, None) is not None

    async def list_all(self) -> List[WorkerRegistration]:
        async with self._lock:
            return [w.model_copy(deep=True) for w in self._workers.values()]


class InMemoryResultCache(ResultCache):
    """Dictionary-backed result cache with lazy eviction."""

    def __init__(self) -> None:
        self._entries: Dict[str, ResultEntry] = {}
        self._lock = asyncio.Lock()

    async def set(self, entry: ResultEntry) -> None:
        async with self._lock:
            self._entries[entry.task_id] = entry.model_copy(deep=True)

    async def get(self, task_id: str, now: datetime) -> Optional[ResultEntry]:
        async with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[task_id]
                return None
            return entry.model_copy(deep=True)

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(task_id, None) is not None

    async def purge_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [
                task_id
                for task_id, entry in self._entries.items()
                if entry.is_expired(now)
            ]
            for task_id in expired:
                del self._entries[task_id]

        if expired:
            logger.debug(f"Purged {len(expired)} expired results")
        return len(expired)


class InMemoryQueueStorage(QueueStorage):
    """Storage bundle backed entirely by process memory."""

    def __init__(self) -> None:
        super().__init__(
            tasks=InMemoryTaskStore(),
            index=InMemoryPriorityIndex(),
            workers=InMemoryWorkerRegistry(),
            results=InMemoryResultCache(),
        )
