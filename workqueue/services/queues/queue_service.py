"""
Queue Service

Primary task queue service. Owns every task state transition: enqueue,
dequeue, completion, failure with retry and dead-lettering, cancellation,
worker registration and statistics.

All mutating operations run under a single asyncio.Lock so that popping an id
from the priority index and claiming the task are one step. Events are
published after the lock is released, so listeners may call back into the
service.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from opentelemetry.trace import Status, StatusCode

from ...core.clock import Clock, SystemClock, elapsed_ms
from ...core.config import Settings, get_settings
from ...core.telemetry import QueueMetrics, get_tracer
from ...domain.queue.entities import QueueStats, ResultEntry, Task, WorkerRegistration
from ...domain.queue.events import EventListener, EventType, QueueEvent, QueueEventBus
from ...domain.queue.exceptions import InvalidArgumentError, StorageError
from ...domain.queue.repository_interfaces import QueueStorage
from ...domain.queue.value_objects import (
    DEAD_LETTER_SCORE,
    TaskPriority,
    TaskStatus,
    dead_letter_queue_name,
    generate_task_id,
    generate_worker_id,
    queue_name,
)
from ...infrastructure.storage import create_storage
from .lease_reaper import LeaseReaper
from .retry import ExponentialBackoffRetry, RetryPolicy, RetryStrategy

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

RESERVED_TASK_TYPES = frozenset({"dlq"})

# (event type, task id, worker id, data) queued for publication after the lock
_PendingEvent = Tuple[EventType, Optional[str], Optional[str], Dict[str, Any]]


class QueueService:
    """
    Priority task queue with retry, dead-letter handling and worker tracking.

    Tasks are dequeued highest priority first and in arrival order within a
    priority. A failed task is retried with exponential backoff until its
    retry budget is spent, after which it is marked failed and, when enabled,
    pushed onto the dead letter queue.
    """

    def __init__(
        self,
        storage: Optional[QueueStorage] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        event_bus: Optional[QueueEventBus] = None,
        metrics: Optional[QueueMetrics] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or create_storage(self.settings)
        self.clock = clock or SystemClock()
        self.retry_strategy = retry_strategy or ExponentialBackoffRetry(
            RetryPolicy.from_settings(self.settings)
        )
        self.events = event_bus or QueueEventBus()
        self.metrics = metrics or QueueMetrics()

        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._cleanup_task: Optional[asyncio.Task] = None
        self._lease_reaper: Optional[LeaseReaper] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Prepare storage and start background maintenance."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                await self.storage.initialize()
            except Exception as e:
                logger.error(f"Failed to initialize queue service: {e}")
                raise

            self._cleanup_task = asyncio.create_task(self._result_cleanup_loop())

            if self.settings.LEASE_REAPER_ENABLED:
                self._lease_reaper = LeaseReaper(
                    self, interval_ms=self.settings.LEASE_REAPER_INTERVAL_MS
                )
                await self._lease_reaper.start()

            self._initialized = True
            logger.info(
                "Queue service initialized",
                extra={
                    "queue_prefix": self.settings.queue_prefix,
                    "lease_reaper_enabled": self.settings.LEASE_REAPER_ENABLED,
                },
            )

        await self.emit(EventType.INITIALIZED)

    async def close(self) -> None:
        """Stop background maintenance and release storage."""
        if self._lease_reaper:
            await self._lease_reaper.stop()
            self._lease_reaper = None

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        if self._initialized:
            await self.storage.close()
            self._initialized = False
            logger.info("Queue service closed")

    def subscribe(self, listener: EventListener):
        """Register an event listener. Returns a callable that removes it."""
        return self.events.subscribe(listener)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: Union[TaskPriority, str] = TaskPriority.NORMAL,
        max_retries: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        """
        Add a task to its type's queue.

        Args:
            task_type: Queue to enqueue into
            payload: Opaque task payload
            priority: Task priority
            max_retries: Retry budget (defaults to MAX_RETRIES)
            timeout_ms: Advisory handler timeout (defaults to DEFAULT_TIMEOUT_MS)

        Returns:
            Task id

        Raises:
            InvalidArgumentError: If any argument is invalid; nothing is stored
        """
        self._validate_task_type(task_type)
        priority = self._coerce_priority(priority)
        max_retries = self._coerce_int(
            "max_retries",
            self.settings.max_retries if max_retries is None else max_retries,
            minimum=0,
        )
        timeout_ms = self._coerce_int(
            "timeout_ms",
            self.settings.DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms,
            minimum=1,
        )
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            raise InvalidArgumentError(
                "payload must be a dict", field="payload", value=payload
            )

        await self.initialize()

        with tracer.start_as_current_span("queue_service.enqueue") as span:
            span.set_attribute("task.type", task_type)
            span.set_attribute("task.priority", priority.value)

            try:
                async with self._lock:
                    now = self.clock.now()
                    task = Task(
                        id=generate_task_id(now),
                        task_type=task_type,
                        priority=priority,
                        payload=payload,
                        created_at=now,
                        max_retries=max_retries,
                        timeout_ms=timeout_ms,
                    )
                    await self.storage.tasks.put(task)
                    await self.storage.index.push(
                        self._queue(task_type), task.id, priority.score
                    )
            except StorageError as e:
                self._record_span_error(span, e)
                logger.exception(
                    f"Failed to enqueue {task_type} task",
                    extra={"task_type": task_type},
                )
                raise

            span.set_attribute("task.id", task.id)

        self.metrics.tasks_enqueued.add(
            1, {"task_type": task_type, "priority": priority.value}
        )
        logger.info(
            f"Task {task.id} enqueued",
            extra={
                "task_id": task.id,
                "task_type": task_type,
                "priority": priority.value,
            },
        )
        await self.emit(
            EventType.TASK_ENQUEUED,
            task_id=task.id,
            data={"task_type": task_type, "priority": priority.value},
        )
        return task.id

    async def dequeue(
        self, task_types: Sequence[str], worker_id: Optional[str] = None
    ) -> Optional[Task]:
        """
        Claim the next ready task from the given types.

        Types are scanned in the order given; within a type the highest
        priority, oldest ready task wins. Ids whose record is missing or no
        longer pending are discarded. Never blocks waiting for work, and an
        empty type list simply finds nothing.

        Returns:
            The claimed task in ``processing`` state, or None
        """
        if isinstance(task_types, str):
            task_types = [task_types]
        if not task_types:
            return None
        for task_type in task_types:
            self._validate_task_type(task_type)

        with tracer.start_as_current_span("queue_service.dequeue") as span:
            span.set_attribute("queue.task_types", list(task_types))
            if worker_id:
                span.set_attribute("worker.id", worker_id)

            claimed: Optional[Task] = None
            try:
                async with self._lock:
                    now = self.clock.now()
                    for task_type in task_types:
                        claimed = await self._claim_next(task_type, worker_id, now)
                        if claimed:
                            break
            except StorageError as e:
                self._record_span_error(span, e)
                logger.exception(
                    "Failed to dequeue task",
                    extra={"task_types": list(task_types), "worker_id": worker_id},
                )
                raise

            if claimed is None:
                span.set_attribute("queue.empty", True)
                return None

            span.set_attribute("task.id", claimed.id)

        self.metrics.tasks_dequeued.add(1, {"task_type": claimed.task_type})
        logger.info(
            f"Task {claimed.id} dequeued",
            extra={"task_id": claimed.id, "worker_id": worker_id},
        )
        await self.emit(
            EventType.TASK_DEQUEUED,
            task_id=claimed.id,
            worker_id=worker_id,
            data={
                "task_type": claimed.task_type,
                "wait_time_ms": claimed.wait_time_ms,
            },
        )
        return claimed

    async def _claim_next(
        self, task_type: str, worker_id: Optional[str], now: datetime
    ) -> Optional[Task]:
        queue = self._queue(task_type)
        while True:
            task_id = await self.storage.index.pop(queue, now)
            if task_id is None:
                return None

            task: Optional[Task] = None
            try:
                task = await self.storage.tasks.get(task_id)
                if task is None or task.status != TaskStatus.PENDING:
                    logger.debug(
                        f"Discarding stale index entry {task_id}",
                        extra={"queue": queue, "task_id": task_id},
                    )
                    continue

                task.status = TaskStatus.PROCESSING
                task.started_at = now
                task.worker_id = worker_id
                claimed = await self.storage.tasks.put_if_status(
                    task, TaskStatus.PENDING
                )
            except StorageError:
                # The id is already off the index; put it back or it is lost
                await self._restore_index_entry(queue, task_id, task)
                raise

            if not claimed:
                logger.debug(
                    f"Task {task_id} changed state before it was claimed",
                    extra={"queue": queue, "task_id": task_id},
                )
                continue
            return task

    async def _restore_index_entry(
        self, queue: str, task_id: str, task: Optional[Task]
    ) -> None:
        # Priority is unknown when reading the record itself failed
        score = task.priority.score if task else TaskPriority.NORMAL.score
        try:
            await self.storage.index.push(queue, task_id, score)
        except StorageError:
            logger.exception(
                f"Could not return task {task_id} to its queue",
                extra={"queue": queue, "task_id": task_id},
            )

    async def complete(self, task_id: str, result: Any = None) -> bool:
        """
        Mark a task completed and cache its result.

        Unknown ids and tasks already in a terminal state are reported as
        warnings and left untouched.

        Returns:
            True if the task transitioned to ``completed``
        """
        with tracer.start_as_current_span("queue_service.complete") as span:
            span.set_attribute("task.id", task_id)

            warning = None
            try:
                async with self._lock:
                    task = await self.storage.tasks.get(task_id)
                    warning = self._transition_warning(task_id, task)
                    if warning is None:
                        now = self.clock.now()
                        previous = task.status
                        task.status = TaskStatus.COMPLETED
                        task.completed_at = now
                        task.result = result
                        if await self.storage.tasks.put_if_status(task, previous):
                            await self._drop_index_entry(task, previous)
                            await self.storage.results.set(
                                ResultEntry.create(
                                    task.id,
                                    result,
                                    self.settings.result_ttl_seconds,
                                    now,
                                )
                            )
                        else:
                            warning = self._conflict_warning(task_id)
            except StorageError as e:
                self._record_span_error(span, e)
                logger.exception(
                    f"Failed to complete task {task_id}", extra={"task_id": task_id}
                )
                raise

        if warning:
            await self._warn(task_id, warning, operation="complete")
            return False

        duration_ms = task.duration_ms
        self.metrics.tasks_completed.add(1, {"task_type": task.task_type})
        if duration_ms is not None:
            self.metrics.task_duration.record(
                duration_ms, {"task_type": task.task_type}
            )
        logger.info(
            f"Task {task_id} completed",
            extra={"task_id": task_id, "duration_ms": duration_ms},
        )
        await self.emit(
            EventType.TASK_COMPLETED,
            task_id=task_id,
            worker_id=task.worker_id,
            data={"task_type": task.task_type, "duration_ms": duration_ms},
        )
        return True

    async def fail(
        self,
        task_id: str,
        error: Union[str, BaseException],
        retryable: bool = True,
    ) -> bool:
        """
        Record a task failure.

        While the retry budget allows it and the failure is retryable, the
        task goes back to ``pending`` and becomes dequeue-eligible after an
        exponential backoff delay. Otherwise it is marked ``failed`` and
        pushed onto the dead letter queue when dead-lettering is enabled.

        Returns:
            True if the failure was applied
        """
        message = self._error_message(error)

        with tracer.start_as_current_span("queue_service.fail") as span:
            span.set_attribute("task.id", task_id)
            span.set_attribute("task.retryable", retryable)

            warning = None
            pending_event = None
            try:
                async with self._lock:
                    task = await self.storage.tasks.get(task_id)
                    warning = self._transition_warning(task_id, task)
                    if warning is None:
                        pending_event = await self._apply_failure(
                            task, message, retryable, self.clock.now()
                        )
                        if pending_event is None:
                            warning = self._conflict_warning(task_id)
            except StorageError as e:
                self._record_span_error(span, e)
                logger.exception(
                    f"Failed to record failure of task {task_id}",
                    extra={"task_id": task_id},
                )
                raise

        if warning:
            await self._warn(task_id, warning, operation="fail")
            return False

        await self.emit(*pending_event)
        return True

    async def _apply_failure(
        self, task: Task, message: str, retryable: bool, now: datetime
    ) -> Optional[_PendingEvent]:
        """
        Apply a failure to a non-terminal task. Caller holds the lock.

        Returns None, changing nothing, if the stored task left the status it
        was read in.
        """
        previous = task.status
        worker_id = task.worker_id

        if self.retry_strategy.should_retry(task, retryable):
            task.retry_count += 1
            delay_ms = self.retry_strategy.calculate_delay_ms(task.retry_count)
            task.status = TaskStatus.PENDING
            task.started_at = None
            task.worker_id = None
            task.error = message
            if not await self.storage.tasks.put_if_status(task, previous):
                return None
            await self._drop_index_entry(task, previous)
            await self.storage.index.push(
                self._queue(task.task_type),
                task.id,
                task.priority.score,
                ready_at=now + timedelta(milliseconds=delay_ms),
            )

            self.metrics.tasks_retried.add(1, {"task_type": task.task_type})
            logger.warning(
                f"Task {task.id} failed, retry {task.retry_count}/{task.max_retries} in {delay_ms}ms: {message}",
                extra={
                    "task_id": task.id,
                    "retry_count": task.retry_count,
                    "delay_ms": delay_ms,
                },
            )
            return (
                EventType.TASK_RETRYING,
                task.id,
                worker_id,
                {
                    "retry_count": task.retry_count,
                    "delay_ms": delay_ms,
                    "error": message,
                },
            )

        task.status = TaskStatus.FAILED
        task.completed_at = now
        task.error = message
        if not await self.storage.tasks.put_if_status(task, previous):
            return None
        await self._drop_index_entry(task, previous)

        dead_lettered = False
        if self.settings.DEAD_LETTER_ENABLED:
            await self.storage.index.push(
                self._dead_letter_queue, task.id, DEAD_LETTER_SCORE
            )
            dead_lettered = True
            self.metrics.tasks_dead_lettered.add(1, {"task_type": task.task_type})

        self.metrics.tasks_failed.add(1, {"task_type": task.task_type})
        logger.error(
            f"Task {task.id} failed permanently: {message}",
            extra={
                "task_id": task.id,
                "retry_count": task.retry_count,
                "dead_lettered": dead_lettered,
            },
        )
        return (
            EventType.TASK_FAILED,
            task.id,
            worker_id,
            {
                "error": message,
                "retry_count": task.retry_count,
                "dead_lettered": dead_lettered,
            },
        )

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a pending task.

        Returns:
            True if the task was pending and is now cancelled
        """
        async with self._lock:
            task = await self.storage.tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                logger.debug(
                    f"Task {task_id} not cancellable",
                    extra={
                        "task_id": task_id,
                        "status": task.status.value if task else None,
                    },
                )
                return False

            task.status = TaskStatus.CANCELLED
            task.completed_at = self.clock.now()
            if not await self.storage.tasks.put_if_status(task, TaskStatus.PENDING):
                logger.debug(
                    f"Task {task_id} left pending before it could be cancelled",
                    extra={"task_id": task_id},
                )
                return False
            await self._drop_index_entry(task, TaskStatus.PENDING)

        logger.info(f"Task {task_id} cancelled", extra={"task_id": task_id})
        await self.emit(
            EventType.TASK_CANCELLED,
            task_id=task_id,
            data={"task_type": task.task_type},
        )
        return True

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get a copy of a task record."""
        return await self.storage.tasks.get(task_id)

    async def get_result(self, task_id: str) -> Optional[Any]:
        """Get a completed task's result, or None once its TTL has passed."""
        entry = await self.storage.results.get(task_id, self.clock.now())
        return entry.result if entry else None

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task record along with its index entries and cached result."""
        async with self._lock:
            task = await self.storage.tasks.get(task_id)
            if task is None:
                return False

            await self._drop_index_entry(task, task.status)
            if task.status == TaskStatus.FAILED:
                await self.storage.index.remove(self._dead_letter_queue, task.id)
            await self.storage.results.delete(task.id)
            await self.storage.tasks.delete(task.id)

        logger.info(f"Task {task_id} deleted", extra={"task_id": task_id})
        return True

    async def cleanup_expired_tasks(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Delete completed and cancelled tasks finished more than
        ``max_age_seconds`` ago (default RESULT_TTL_SECONDS). Failed tasks
        still on the dead letter queue are kept.

        Returns:
            Number of tasks deleted
        """
        max_age_seconds = (
            self.settings.result_ttl_seconds
            if max_age_seconds is None
            else max_age_seconds
        )
        cutoff = self.clock.now() - timedelta(seconds=max_age_seconds)

        deleted = 0
        async with self._lock:
            dead_letter_ids = set(
                await self.storage.index.list_ids(self._dead_letter_queue)
            )
            for task in await self.storage.tasks.list_all():
                if not task.is_terminal or task.completed_at is None:
                    continue
                if task.completed_at > cutoff or task.id in dead_letter_ids:
                    continue
                await self.storage.results.delete(task.id)
                await self.storage.tasks.delete(task.id)
                deleted += 1

        if deleted:
            logger.info(
                f"Cleaned up {deleted} expired tasks",
                extra={"max_age_seconds": max_age_seconds},
            )
        return deleted

    async def purge_expired_results(self) -> int:
        """Evict expired results from the result cache."""
        return await self.storage.results.purge_expired(self.clock.now())

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def register_worker(
        self,
        task_types: Sequence[str],
        *,
        max_concurrent: int = 1,
        hostname: Optional[str] = None,
        container_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> str:
        """
        Register a worker, overwriting any registration with the same id.

        Returns:
            Worker id
        """
        if isinstance(task_types, str) or not task_types:
            raise InvalidArgumentError(
                "task_types must be a non-empty list",
                field="task_types",
                value=task_types,
            )
        for task_type in task_types:
            self._validate_task_type(task_type)
        max_concurrent = self._coerce_int("max_concurrent", max_concurrent, minimum=1)

        await self.initialize()

        now = self.clock.now()
        registration = WorkerRegistration(
            worker_id=worker_id or generate_worker_id(),
            task_types=list(task_types),
            max_concurrent=max_concurrent,
            current_tasks=0,
            last_heartbeat=now,
            registered_at=now,
            hostname=hostname,
            container_id=container_id,
        )
        await self.storage.workers.register(registration)

        logger.info(
            f"Worker {registration.worker_id} registered",
            extra={
                "worker_id": registration.worker_id,
                "task_types": registration.task_types,
                "max_concurrent": max_concurrent,
            },
        )
        await self.emit(
            EventType.WORKER_REGISTERED,
            worker_id=registration.worker_id,
            data={
                "task_types": registration.task_types,
                "max_concurrent": max_concurrent,
                "hostname": hostname,
            },
        )
        return registration.worker_id

    async def heartbeat(
        self, worker_id: str, current_tasks: Optional[int] = None
    ) -> bool:
        """
        Refresh a worker's heartbeat and optionally its in-flight count.

        Returns:
            False if the worker is not registered
        """
        registration = await self.storage.workers.get(worker_id)
        if registration is None:
            logger.warning(
                f"Heartbeat from unregistered worker {worker_id}",
                extra={"worker_id": worker_id},
            )
            return False

        if current_tasks is not None:
            current_tasks = self._coerce_int("current_tasks", current_tasks, minimum=0)
            if current_tasks > registration.max_concurrent:
                raise InvalidArgumentError(
                    f"current_tasks ({current_tasks}) exceeds max_concurrent ({registration.max_concurrent})",
                    field="current_tasks",
                    value=current_tasks,
                )

        return await self.storage.workers.heartbeat(
            worker_id, self.clock.now(), current_tasks
        )

    async def unregister_worker(self, worker_id: str) -> bool:
        removed = await self.storage.workers.unregister(worker_id)
        if removed:
            logger.info(
                f"Worker {worker_id} unregistered", extra={"worker_id": worker_id}
            )
            await self.emit(EventType.WORKER_UNREGISTERED, worker_id=worker_id)
        return removed

    async def get_workers(self) -> List[WorkerRegistration]:
        return await self.storage.workers.list_all()

    async def find_stale_workers(
        self, threshold_ms: Optional[int] = None
    ) -> List[WorkerRegistration]:
        """Workers whose last heartbeat is older than the threshold."""
        if threshold_ms is None:
            threshold_ms = self.settings.WORKER_STALE_AFTER_MS
        now = self.clock.now()
        return [
            worker
            for worker in await self.storage.workers.list_all()
            if worker.is_stale(now, threshold_ms)
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> QueueStats:
        """Snapshot of task counts, wait and processing times and workers."""
        tasks = await self.storage.tasks.list_all()
        workers = await self.storage.workers.list_all()

        stats = QueueStats(workers=len(workers))
        wait_times: List[int] = []
        processing_times: List[int] = []

        for task in tasks:
            if task.status == TaskStatus.PENDING:
                stats.pending += 1
                stats.by_priority[task.priority.value] += 1
                stats.by_worker_type[task.task_type] = (
                    stats.by_worker_type.get(task.task_type, 0) + 1
                )
            elif task.status == TaskStatus.PROCESSING:
                stats.processing += 1
            elif task.status == TaskStatus.COMPLETED:
                stats.completed += 1
            elif task.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT):
                stats.failed += 1
            elif task.status == TaskStatus.CANCELLED:
                stats.cancelled += 1

            if task.wait_time_ms is not None:
                wait_times.append(task.wait_time_ms)
            if task.status == TaskStatus.COMPLETED and task.duration_ms is not None:
                processing_times.append(task.duration_ms)

        stats.dead_letter = await self.storage.index.size(self._dead_letter_queue)
        if wait_times:
            stats.average_wait_time_ms = sum(wait_times) / len(wait_times)
        if processing_times:
            stats.average_processing_time_ms = sum(processing_times) / len(
                processing_times
            )
        return stats

    # ------------------------------------------------------------------
    # Dead letter queue
    # ------------------------------------------------------------------

    async def dead_letter_ids(self) -> List[str]:
        """Dead-lettered task ids, oldest first."""
        return await self.storage.index.list_ids(self._dead_letter_queue)

    async def requeue_dead_letter(self, task_id: str, reset_retries: bool = True) -> bool:
        """
        Move a dead-lettered task back onto its type's queue as ``pending``.

        Returns:
            False if the id is not on the dead letter queue
        """
        async with self._lock:
            removed = await self.storage.index.remove(self._dead_letter_queue, task_id)
            if not removed:
                return False

            task = await self.storage.tasks.get(task_id)
            if task is None:
                logger.warning(
                    f"Dropped dead letter entry {task_id} with no task record",
                    extra={"task_id": task_id},
                )
                return False

            if reset_retries:
                task.retry_count = 0
            task.status = TaskStatus.PENDING
            task.started_at = None
            task.completed_at = None
            task.worker_id = None
            if not await self.storage.tasks.put_if_status(task, TaskStatus.FAILED):
                logger.warning(
                    f"Dropped dead letter entry {task_id} for a task that is no longer failed",
                    extra={"task_id": task_id},
                )
                return False
            await self.storage.index.push(
                self._queue(task.task_type), task.id, task.priority.score
            )

        logger.info(
            f"Task {task_id} requeued from dead letter queue",
            extra={"task_id": task_id, "reset_retries": reset_retries},
        )
        await self.emit(
            EventType.TASK_REQUEUED,
            task_id=task_id,
            data={"task_type": task.task_type, "reset_retries": reset_retries},
        )
        return True

    async def remove_from_dead_letter(self, task_id: str) -> bool:
        """Drop a task from the dead letter queue, keeping its failed record."""
        async with self._lock:
            return await self.storage.index.remove(self._dead_letter_queue, task_id)

    # ------------------------------------------------------------------
    # Lease reclamation
    # ------------------------------------------------------------------

    async def reclaim_expired_leases(self) -> List[str]:
        """
        Fail processing tasks whose lease expired on a missing or stale worker.

        A task is reclaimed when it has been processing for at least
        VISIBILITY_TIMEOUT_MS and its worker is unregistered or has not sent a
        heartbeat for WORKER_STALE_AFTER_MS. Reclaimed tasks go through the
        normal retryable failure path.

        Returns:
            Ids of reclaimed tasks
        """
        visibility_ms = self.settings.VISIBILITY_TIMEOUT_MS
        stale_ms = self.settings.WORKER_STALE_AFTER_MS

        reclaimed: List[str] = []
        pending_events: List[_PendingEvent] = []

        async with self._lock:
            now = self.clock.now()
            workers = {
                worker.worker_id: worker
                for worker in await self.storage.workers.list_all()
            }

            for task in await self.storage.tasks.list_all():
                if task.status != TaskStatus.PROCESSING or task.started_at is None:
                    continue
                lease_age_ms = elapsed_ms(task.started_at, now)
                if lease_age_ms < visibility_ms:
                    continue
                worker = workers.get(task.worker_id) if task.worker_id else None
                if worker is not None and not worker.is_stale(now, stale_ms):
                    continue

                lease_worker_id = task.worker_id
                failure = await self._apply_failure(
                    task,
                    f"Lease expired after {lease_age_ms}ms on worker {lease_worker_id}",
                    True,
                    now,
                )
                if failure is None:
                    continue

                pending_events.append(
                    (
                        EventType.TASK_RECLAIMED,
                        task.id,
                        lease_worker_id,
                        {"lease_age_ms": lease_age_ms},
                    )
                )
                pending_events.append(failure)
                reclaimed.append(task.id)

        if reclaimed:
            logger.warning(
                f"Reclaimed {len(reclaimed)} expired leases",
                extra={"task_ids": reclaimed},
            )
        for pending_event in pending_events:
            await self.emit(*pending_event)
        return reclaimed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _queue(self, task_type: str) -> str:
        return queue_name(self.settings.queue_prefix, task_type)

    @property
    def _dead_letter_queue(self) -> str:
        return dead_letter_queue_name(self.settings.queue_prefix)

    async def _drop_index_entry(self, task: Task, previous: TaskStatus) -> None:
        """Drop the index entry of a task that was pending before its transition."""
        if previous == TaskStatus.PENDING:
            await self.storage.index.remove(self._queue(task.task_type), task.id)

    @staticmethod
    def _transition_warning(task_id: str, task: Optional[Task]) -> Optional[str]:
        if task is None:
            return f"Task {task_id} not found"
        if task.is_terminal:
            return f"Task {task_id} is already {task.status.value}"
        return None

    @staticmethod
    def _conflict_warning(task_id: str) -> str:
        return f"Task {task_id} changed state concurrently"

    async def _warn(self, task_id: str, message: str, operation: str) -> None:
        logger.warning(message, extra={"task_id": task_id, "operation": operation})
        await self.emit(
            EventType.WARNING,
            task_id=task_id,
            data={"message": message, "operation": operation},
        )

    async def emit(
        self,
        event_type: EventType,
        task_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.events.publish(
            QueueEvent(
                type=event_type,
                timestamp=self.clock.now(),
                task_id=task_id,
                worker_id=worker_id,
                data=data or {},
            )
        )

    async def _result_cleanup_loop(self) -> None:
        """Periodically evict expired results."""
        interval = self.settings.RESULT_CLEANUP_INTERVAL_MS / 1000
        while True:
            try:
                await asyncio.sleep(interval)
                purged = await self.purge_expired_results()
                if purged:
                    logger.debug(f"Result cleanup evicted {purged} entries")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Result cleanup failed: {e}")

    @staticmethod
    def _record_span_error(span, error: Exception) -> None:
        span.set_status(Status(StatusCode.ERROR, str(error)))
        span.record_exception(error)

    @staticmethod
    def _validate_task_type(task_type: Any) -> None:
        if not isinstance(task_type, str) or not task_type.strip():
            raise InvalidArgumentError(
                "task_type must be a non-empty string",
                field="task_type",
                value=task_type,
            )
        if task_type in RESERVED_TASK_TYPES:
            raise InvalidArgumentError(
                f"task_type '{task_type}' is reserved",
                field="task_type",
                value=task_type,
            )

    @staticmethod
    def _coerce_priority(priority: Union[TaskPriority, str]) -> TaskPriority:
        if isinstance(priority, TaskPriority):
            return priority
        try:
            return TaskPriority(str(priority).lower())
        except ValueError:
            raise InvalidArgumentError(
                f"priority must be one of: {[p.value for p in TaskPriority]}",
                field="priority",
                value=priority,
            ) from None

    @staticmethod
    def _coerce_int(field: str, value: Any, minimum: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise InvalidArgumentError(
                f"{field} must be an integer >= {minimum}", field=field, value=value
            )
        return value

    @staticmethod
    def _error_message(error: Union[str, BaseException]) -> str:
        if isinstance(error, BaseException):
            return str(error) or type(error).__name__
        return str(error)
