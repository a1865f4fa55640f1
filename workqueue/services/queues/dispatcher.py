"""
Task Dispatcher

Per-worker control loop: registers a worker, pulls tasks from the queue
service up to a concurrency ceiling, runs the handler for each one, reports
the outcome and keeps the worker's heartbeat fresh until shutdown.
"""

import asyncio
import inspect
import socket
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog
from opentelemetry.trace import Status, StatusCode

from ...core.clock import elapsed_ms
from ...core.config import Settings
from ...core.telemetry import get_tracer
from ...domain.queue.entities import Task
from ...domain.queue.events import EventType
from ...domain.queue.exceptions import HandlerError, InvalidArgumentError
from ...domain.queue.value_objects import generate_worker_id
from .queue_service import QueueService

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

TaskHandler = Callable[[Task], Union[Any, Awaitable[Any]]]

SHUTDOWN_ERROR = "Worker shutdown"


class Dispatcher:
    """
    Runs one worker against a queue service.

    The handler receives the claimed task and may be a plain function or a
    coroutine function. Plain functions run in a worker thread. The
    return value completes the task; an exception fails it as retryable. A plain
    function that outlives an enforced timeout keeps running in its thread,
    but the task is failed anyway.
    """

    def __init__(
        self,
        queue_service: QueueService,
        settings: Optional[Settings] = None,
        *,
        worker_id: Optional[str] = None,
        hostname: Optional[str] = None,
        container_id: Optional[str] = None,
        enforce_timeouts: bool = False,
    ):
        """
        Initialize dispatcher.

        Args:
            queue_service: Queue to pull tasks from
            settings: Loop timing settings (defaults to the queue's settings)
            worker_id: Worker id (generated when omitted)
            hostname: Hostname recorded in the registration
            container_id: Container id recorded in the registration
            enforce_timeouts: Cancel handlers that exceed the task's timeout_ms
        """
        self.queue_service = queue_service
        self.settings = settings or queue_service.settings
        self.worker_id = worker_id or generate_worker_id()
        self.hostname = hostname or socket.gethostname()
        self.container_id = container_id
        self.enforce_timeouts = enforce_timeouts

        self.task_types: List[str] = []
        self.max_concurrent = 1
        self._handler: Optional[TaskHandler] = None

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._started = False
        self._shutting_down = False
        self._shutdown_event = asyncio.Event()
        self._closed = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self._stats = {
            "tasks_processed": 0,
            "tasks_completed": 0,
            "tasks_failed": 0,
            "tasks_force_failed": 0,
            "loop_errors": 0,
            "peak_in_flight": 0,
            "start_time": None,
            "last_activity": None,
        }

    @property
    def is_running(self) -> bool:
        return self._started and not self._shutting_down

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def start(
        self,
        task_types: Sequence[str],
        handler: TaskHandler,
        *,
        max_concurrent: int = 1,
    ) -> None:
        """
        Register the worker and start the processing and heartbeat loops.

        Returns as soon as the loops are running.
        """
        if self._started:
            raise RuntimeError(f"Dispatcher {self.worker_id} already started")
        if not callable(handler):
            raise InvalidArgumentError(
                "handler must be callable", field="handler", value=handler
            )

        await self.queue_service.register_worker(
            task_types,
            max_concurrent=max_concurrent,
            hostname=self.hostname,
            container_id=self.container_id,
            worker_id=self.worker_id,
        )

        self.task_types = list(task_types)
        self.max_concurrent = max_concurrent
        self._handler = handler
        self._started = True
        self._stats["start_time"] = self.queue_service.clock.now()

        self._loop_task = asyncio.create_task(self._process_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        logger.info(
            "Dispatcher started",
            worker_id=self.worker_id,
            task_types=self.task_types,
            max_concurrent=max_concurrent,
        )

    async def shutdown(self, grace_period_ms: Optional[int] = None) -> None:
        """
        Stop dequeuing, wait for in-flight tasks, then force-fail the rest.

        Args:
            grace_period_ms: How long to wait for in-flight tasks
                (defaults to SHUTDOWN_GRACE_PERIOD_MS)
        """
        if self._shutting_down or not self._started:
            if self._started:
                await self.wait_closed()
            return

        self._shutting_down = True
        self._shutdown_event.set()
        grace_period_ms = (
            self.settings.SHUTDOWN_GRACE_PERIOD_MS
            if grace_period_ms is None
            else grace_period_ms
        )

        logger.info(
            "Dispatcher shutting down",
            worker_id=self.worker_id,
            in_flight=len(self._in_flight),
            grace_period_ms=grace_period_ms,
        )

        if self._loop_task:
            await self._loop_task

        force_failed = await self._drain_in_flight(grace_period_ms / 1000)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        try:
            await self.queue_service.unregister_worker(self.worker_id)
        except Exception as e:
            logger.error(
                "Failed to unregister worker", worker_id=self.worker_id, error=str(e)
            )

        await self.queue_service.emit(
            EventType.SHUTDOWN,
            worker_id=self.worker_id,
            data={"force_failed": force_failed},
        )
        self._closed.set()

        logger.info(
            "Dispatcher shutdown complete",
            worker_id=self.worker_id,
            tasks_processed=self._stats["tasks_processed"],
            force_failed=force_failed,
        )

    async def wait_closed(self) -> None:
        """Wait until shutdown has finished."""
        await self._closed.wait()

    def get_stats(self) -> Dict[str, Any]:
        """Get dispatcher statistics."""
        runtime = None
        start_time: Optional[datetime] = self._stats["start_time"]
        if start_time:
            runtime = elapsed_ms(start_time, self.queue_service.clock.now()) / 1000

        return {
            "worker_id": self.worker_id,
            "running": self.is_running,
            "current_tasks": len(self._in_flight),
            "max_concurrent": self.max_concurrent,
            "task_types": list(self.task_types),
            "stats": self._stats.copy(),
            "runtime_seconds": runtime,
        }

    async def _process_loop(self) -> None:
        """Main dispatch loop."""
        while not self._shutting_down:
            try:
                if len(self._in_flight) >= self.max_concurrent:
                    await self._sleep(self.settings.CONCURRENCY_WAIT_MS)
                    continue

                task = await self.queue_service.dequeue(
                    self.task_types, worker_id=self.worker_id
                )
                if task is None:
                    await self._sleep(self.settings.POLL_INTERVAL_MS)
                    continue

                self._spawn(task)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats["loop_errors"] += 1
                logger.error(
                    "Dispatcher loop error", worker_id=self.worker_id, error=str(e)
                )
                await self.queue_service.emit(
                    EventType.ERROR,
                    worker_id=self.worker_id,
                    data={"error": str(e), "error_type": type(e).__name__},
                )
                await self._sleep(self.settings.LOOP_ERROR_BACKOFF_MS)

    def _spawn(self, task: Task) -> None:
        handle = asyncio.create_task(self._process_task(task))
        self._in_flight[task.id] = handle
        self._stats["peak_in_flight"] = max(
            self._stats["peak_in_flight"], len(self._in_flight)
        )
        self._stats["last_activity"] = self.queue_service.clock.now()

    async def _process_task(self, task: Task) -> None:
        """Run the handler for one task and report the outcome."""
        with tracer.start_as_current_span("dispatcher.process_task") as span:
            span.set_attribute("worker.id", self.worker_id)
            span.set_attribute("task.id", task.id)
            span.set_attribute("task.type", task.task_type)

            try:
                result = await self._run_handler(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = HandlerError(task.id, e)
                span.set_status(Status(StatusCode.ERROR, error.message))
                span.record_exception(e)
                self._stats["tasks_failed"] += 1
                logger.error(
                    "Task handler failed",
                    worker_id=self.worker_id,
                    task_id=task.id,
                    error=error.message,
                    error_type=type(e).__name__,
                )
                await self._report_failure(task.id, error.message, retryable=True)
            else:
                self._stats["tasks_completed"] += 1
                await self._report_completion(task.id, result)
            finally:
                self._in_flight.pop(task.id, None)
                self._stats["tasks_processed"] += 1

    async def _run_handler(self, task: Task) -> Any:
        if inspect.iscoroutinefunction(self._handler):
            call = self._handler(task)
        else:
            # Plain functions run off the event loop
            call = asyncio.to_thread(self._handler, task)

        if not self.enforce_timeouts:
            outcome = await call
        else:
            try:
                outcome = await asyncio.wait_for(call, timeout=task.timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise TimeoutError(
                    f"Task {task.id} timed out after {task.timeout_ms}ms"
                ) from None

        if inspect.isawaitable(outcome):
            return await outcome
        return outcome

    async def _report_completion(self, task_id: str, result: Any) -> None:
        try:
            await self.queue_service.complete(task_id, result)
        except Exception as e:
            logger.error(
                "Failed to report task completion", task_id=task_id, error=str(e)
            )

    async def _report_failure(self, task_id: str, message: str, retryable: bool) -> None:
        try:
            await self.queue_service.fail(task_id, message, retryable=retryable)
        except Exception as e:
            logger.error("Failed to report task failure", task_id=task_id, error=str(e))

    async def _drain_in_flight(self, grace_period_seconds: float) -> int:
        """Wait for in-flight tasks, then force-fail and cancel stragglers."""
        if not self._in_flight:
            return 0

        await asyncio.wait(
            set(self._in_flight.values()), timeout=grace_period_seconds
        )

        stragglers = [
            (task_id, handle)
            for task_id, handle in list(self._in_flight.items())
            if not handle.done()
        ]
        for task_id, handle in stragglers:
            logger.warning(
                "Force-failing task at shutdown",
                worker_id=self.worker_id,
                task_id=task_id,
            )
            await self._report_failure(task_id, SHUTDOWN_ERROR, retryable=False)
            handle.cancel()

        if stragglers:
            await asyncio.gather(
                *(handle for _, handle in stragglers), return_exceptions=True
            )
        self._stats["tasks_force_failed"] += len(stragglers)
        return len(stragglers)

    async def _heartbeat_loop(self) -> None:
        """Refresh the worker registration until shutdown."""
        while not self._shutting_down:
            try:
                await self._sleep(self.settings.HEARTBEAT_INTERVAL_MS)
                if self._shutting_down:
                    break

                current_tasks = min(len(self._in_flight), self.max_concurrent)
                alive = await self.queue_service.heartbeat(
                    self.worker_id, current_tasks=current_tasks
                )
                if not alive:
                    logger.warning(
                        "Worker registration missing, re-registering",
                        worker_id=self.worker_id,
                    )
                    await self.queue_service.register_worker(
                        self.task_types,
                        max_concurrent=self.max_concurrent,
                        hostname=self.hostname,
                        container_id=self.container_id,
                        worker_id=self.worker_id,
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Heartbeat failed", worker_id=self.worker_id, error=str(e))

    async def _sleep(self, milliseconds: int) -> None:
        """Sleep that returns early once shutdown begins."""
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(), timeout=milliseconds / 1000
            )
        except asyncio.TimeoutError:
            pass
