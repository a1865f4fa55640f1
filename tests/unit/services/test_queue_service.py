"""
Queue Service Tests

Unit tests for task lifecycle, retry and dead-letter policy, workers and
statistics against the in-memory backend.
"""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from workqueue.domain.queue.events import EventType
from workqueue.domain.queue.exceptions import InvalidArgumentError, StorageError
from workqueue.domain.queue.repository_interfaces import QueueStorage
from workqueue.domain.queue.value_objects import TaskPriority, TaskStatus
from workqueue.infrastructure.memory.stores import (
    InMemoryPriorityIndex,
    InMemoryQueueStorage,
    InMemoryResultCache,
    InMemoryTaskStore,
    InMemoryWorkerRegistry,
)
from workqueue.services.queues.queue_service import QueueService


class TestEnqueue:
    """Test cases for enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_stores_pending_task(self, queue_service):
        """Test enqueue creates a pending task with defaults from settings."""
        task_id = await queue_service.enqueue("build", {"repo": "core"})

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.task_type == "build"
        assert task.priority == TaskPriority.NORMAL
        assert task.payload == {"repo": "core"}
        assert task.max_retries == queue_service.settings.MAX_RETRIES
        assert task.timeout_ms == queue_service.settings.DEFAULT_TIMEOUT_MS
        assert task.retry_count == 0
        assert task.started_at is None

    @pytest.mark.asyncio
    async def test_task_id_format(self, queue_service, clock):
        """Test task ids embed the creation time in epoch milliseconds."""
        task_id = await queue_service.enqueue("build")

        prefix, millis, suffix = task_id.split("-")
        assert prefix == "task"
        assert int(millis) == int(clock.now().timestamp() * 1000)
        assert len(suffix) == 8

    @pytest.mark.asyncio
    async def test_priority_accepts_strings(self, queue_service):
        """Test priority can be passed by name."""
        task_id = await queue_service.enqueue("build", priority="critical")

        task = await queue_service.get_task(task_id)
        assert task.priority == TaskPriority.CRITICAL

    @pytest.mark.asyncio
    async def test_enqueue_emits_event(self, queue_service, recorded_events):
        """Test enqueue publishes task_enqueued."""
        task_id = await queue_service.enqueue("build", priority=TaskPriority.HIGH)

        event = recorded_events[-1]
        assert event.type == EventType.TASK_ENQUEUED
        assert event.task_id == task_id
        assert event.data == {"task_type": "build", "priority": "high"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"task_type": ""},
            {"task_type": "   "},
            {"task_type": "dlq"},
            {"task_type": "build", "priority": "urgent"},
            {"task_type": "build", "max_retries": -1},
            {"task_type": "build", "timeout_ms": 0},
            {"task_type": "build", "payload": ["not", "a", "dict"]},
        ],
    )
    async def test_invalid_arguments_store_nothing(self, queue_service, kwargs):
        """Test invalid arguments raise synchronously and nothing is stored."""
        with pytest.raises(InvalidArgumentError):
            await queue_service.enqueue(**kwargs)

        assert await queue_service.storage.tasks.list_all() == []
        stats = await queue_service.get_stats()
        assert stats.pending == 0

    @pytest.mark.asyncio
    async def test_invalid_argument_is_value_error(self, queue_service):
        """Test InvalidArgumentError can be caught as ValueError."""
        with pytest.raises(ValueError):
            await queue_service.enqueue("build", max_retries=-5)

    @pytest.mark.asyncio
    async def test_enqueue_initializes_lazily(self, settings, clock):
        """Test enqueue initializes an uninitialized service."""
        service = QueueService(
            storage=InMemoryQueueStorage(), settings=settings, clock=clock
        )
        try:
            assert not service.is_initialized
            await service.enqueue("build")
            assert service.is_initialized
        finally:
            await service.close()


class TestDequeue:
    """Test cases for dequeue ordering and claiming."""

    @pytest.mark.asyncio
    async def test_priority_order(self, queue_service):
        """Test tasks are dequeued highest priority first."""
        low = await queue_service.enqueue("build", priority="low")
        critical = await queue_service.enqueue("build", priority="critical")
        normal = await queue_service.enqueue("build", priority="normal")

        order = [(await queue_service.dequeue(["build"])).id for _ in range(3)]

        assert order == [critical, normal, low]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, queue_service):
        """Test equal-priority tasks are dequeued in arrival order."""
        ids = [await queue_service.enqueue("build") for _ in range(3)]

        order = [(await queue_service.dequeue(["build"])).id for _ in range(3)]

        assert order == ids

    @pytest.mark.asyncio
    async def test_types_scanned_in_caller_order(self, queue_service):
        """Test the first type with a ready task wins regardless of priority."""
        low_a = await queue_service.enqueue("a", priority="low")
        critical_b = await queue_service.enqueue("b", priority="critical")

        first = await queue_service.dequeue(["a", "b"])
        second = await queue_service.dequeue(["a", "b"])

        assert first.id == low_a
        assert second.id == critical_b

    @pytest.mark.asyncio
    async def test_dequeue_claims_task(self, queue_service, clock):
        """Test dequeue marks the task processing for the worker."""
        task_id = await queue_service.enqueue("build")
        clock.advance(milliseconds=150)

        task = await queue_service.dequeue(["build"], worker_id="worker-1")

        assert task.id == task_id
        assert task.status == TaskStatus.PROCESSING
        assert task.worker_id == "worker-1"
        assert task.started_at == clock.now()
        stored = await queue_service.get_task(task_id)
        assert stored.status == TaskStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_dequeue_empty_returns_none(self, queue_service):
        """Test dequeue never blocks on an empty queue."""
        assert await queue_service.dequeue(["build"]) is None

    @pytest.mark.asyncio
    async def test_dequeue_accepts_single_type_string(self, queue_service):
        """Test a bare task type string is treated as a one-element list."""
        task_id = await queue_service.enqueue("build")

        task = await queue_service.dequeue("build")

        assert task.id == task_id

    @pytest.mark.asyncio
    async def test_dequeue_with_no_types_finds_nothing(self, queue_service):
        """Test an empty type list returns None and leaves tasks queued."""
        task_id = await queue_service.enqueue("build")

        assert await queue_service.dequeue([]) is None
        assert (await queue_service.get_task(task_id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_dequeues_claim_each_task_once(self, queue_service):
        """Test concurrent dequeues never deliver a task twice."""
        ids = {await queue_service.enqueue("build") for _ in range(5)}

        results = await asyncio.gather(
            *(queue_service.dequeue(["build"], f"worker-{i}") for i in range(10))
        )

        claimed = [task.id for task in results if task is not None]
        assert len(claimed) == 5
        assert set(claimed) == ids

    @pytest.mark.asyncio
    async def test_stale_index_entries_are_skipped(self, queue_service):
        """Test ids whose record is gone are discarded and the scan continues."""
        orphan = await queue_service.enqueue("build")
        live = await queue_service.enqueue("build")
        await queue_service.storage.tasks.delete(orphan)

        task = await queue_service.dequeue(["build"])

        assert task.id == live

    @pytest.mark.asyncio
    async def test_dequeue_emits_event(self, queue_service, recorded_events, clock):
        """Test dequeue publishes task_dequeued with the wait time."""
        task_id = await queue_service.enqueue("build")
        clock.advance(milliseconds=40)

        await queue_service.dequeue(["build"], worker_id="worker-1")

        event = recorded_events[-1]
        assert event.type == EventType.TASK_DEQUEUED
        assert event.task_id == task_id
        assert event.worker_id == "worker-1"
        assert event.data["wait_time_ms"] == 40


class TestComplete:
    """Test cases for completion."""

    @pytest.mark.asyncio
    async def test_complete_stores_result(self, queue_service, clock, recorded_events):
        """Test completion records the result and duration."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"], "worker-1")
        clock.advance(milliseconds=250)

        assert await queue_service.complete(task_id, {"artifact": "core.whl"})

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at == clock.now()
        assert task.result == {"artifact": "core.whl"}
        assert await queue_service.get_result(task_id) == {"artifact": "core.whl"}

        event = recorded_events[-1]
        assert event.type == EventType.TASK_COMPLETED
        assert event.data["duration_ms"] == 250
        assert event.worker_id == "worker-1"

    @pytest.mark.asyncio
    async def test_complete_unknown_task_warns(self, queue_service, recorded_events):
        """Test completing an unknown id is a no-op with a warning event."""
        assert await queue_service.complete("task-missing") is False

        event = recorded_events[-1]
        assert event.type == EventType.WARNING
        assert event.task_id == "task-missing"
        assert event.data["operation"] == "complete"

    @pytest.mark.asyncio
    async def test_duplicate_complete_is_ignored(self, queue_service, recorded_events):
        """Test a second completion does not change the stored task."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])
        await queue_service.complete(task_id, "first")

        assert await queue_service.complete(task_id, "second") is False

        task = await queue_service.get_task(task_id)
        assert task.result == "first"
        assert recorded_events[-1].type == EventType.WARNING
        stats = await queue_service.get_stats()
        assert stats.completed == 1

    @pytest.mark.asyncio
    async def test_complete_after_fail_is_ignored(self, queue_service):
        """Test a late completion of a failed task is ignored."""
        task_id = await queue_service.enqueue("build", max_retries=0)
        await queue_service.dequeue(["build"])
        await queue_service.fail(task_id, "boom")

        assert await queue_service.complete(task_id, "late") is False

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.result is None

    @pytest.mark.asyncio
    async def test_result_expires_after_ttl(self, settings, clock):
        """Test results disappear once the TTL has passed."""
        service = QueueService(
            storage=InMemoryQueueStorage(),
            settings=settings.model_copy(update={"RESULT_TTL_SECONDS": 60}),
            clock=clock,
        )
        try:
            task_id = await service.enqueue("build")
            await service.dequeue(["build"])
            await service.complete(task_id, {"ok": True})

            clock.advance(seconds=59)
            assert await service.get_result(task_id) == {"ok": True}

            clock.advance(seconds=1)
            assert await service.get_result(task_id) is None
            # The task record itself is unaffected
            task = await service.get_task(task_id)
            assert task.status == TaskStatus.COMPLETED
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_purge_expired_results(self, queue_service, clock):
        """Test the sweep evicts expired results."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])
        await queue_service.complete(task_id, 1)

        assert await queue_service.purge_expired_results() == 0
        clock.advance(seconds=queue_service.settings.RESULT_TTL_SECONDS)
        assert await queue_service.purge_expired_results() == 1


class TestFail:
    """Test cases for failure, retry and dead-lettering."""

    @pytest.mark.asyncio
    async def test_retryable_failure_reschedules_with_backoff(
        self, queue_service, clock, recorded_events
    ):
        """Test a retryable failure returns the task to pending after a delay."""
        task_id = await queue_service.enqueue("build", max_retries=2)
        await queue_service.dequeue(["build"], "worker-1")

        assert await queue_service.fail(task_id, "flaky network")

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert task.error == "flaky network"
        assert task.started_at is None
        assert task.worker_id is None

        event = recorded_events[-1]
        assert event.type == EventType.TASK_RETRYING
        assert event.data["retry_count"] == 1
        assert event.data["delay_ms"] == 2000

        # Not dequeue-eligible until the backoff has elapsed
        assert await queue_service.dequeue(["build"]) is None
        clock.advance(milliseconds=1999)
        assert await queue_service.dequeue(["build"]) is None
        clock.advance(milliseconds=1)
        retried = await queue_service.dequeue(["build"])
        assert retried.id == task_id
        assert retried.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, queue_service, recorded_events):
        """Test three failures with max_retries=2 end in failed and dead-lettered."""
        task_id = await queue_service.enqueue("build", max_retries=2)

        for _ in range(3):
            await queue_service.fail(task_id, "boom")

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 2
        assert task.completed_at is not None
        assert await queue_service.dead_letter_ids() == [task_id]

        retry_delays = [
            e.data["delay_ms"]
            for e in recorded_events
            if e.type == EventType.TASK_RETRYING
        ]
        assert retry_delays == [2000, 4000]
        assert recorded_events[-1].type == EventType.TASK_FAILED
        assert recorded_events[-1].data["dead_lettered"] is True

        # Failing a pending task never leaves duplicate index entries
        queue = f"{queue_service.settings.queue_prefix}:build"
        assert await queue_service.storage.index.size(queue) == 0

    @pytest.mark.asyncio
    async def test_non_retryable_failure(self, queue_service):
        """Test retryable=False fails immediately."""
        task_id = await queue_service.enqueue("build", max_retries=5)
        await queue_service.dequeue(["build"])

        await queue_service.fail(task_id, "invalid input", retryable=False)

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 0
        assert task.error == "invalid input"
        assert task_id in await queue_service.dead_letter_ids()

    @pytest.mark.asyncio
    async def test_fail_accepts_exceptions(self, queue_service):
        """Test exceptions are recorded by message."""
        task_id = await queue_service.enqueue("build", max_retries=0)

        await queue_service.fail(task_id, RuntimeError("disk full"))

        task = await queue_service.get_task(task_id)
        assert task.error == "disk full"

    @pytest.mark.asyncio
    async def test_dead_letter_disabled(self, settings, clock):
        """Test exhausted tasks are not dead-lettered when disabled."""
        service = QueueService(
            storage=InMemoryQueueStorage(),
            settings=settings.model_copy(update={"DEAD_LETTER_ENABLED": False}),
            clock=clock,
        )
        try:
            task_id = await service.enqueue("build", max_retries=0)
            await service.fail(task_id, "boom")

            task = await service.get_task(task_id)
            assert task.status == TaskStatus.FAILED
            assert await service.dead_letter_ids() == []
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_fail_terminal_task_is_ignored(self, queue_service, recorded_events):
        """Test failing a completed task changes nothing."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])
        await queue_service.complete(task_id, "done")

        assert await queue_service.fail(task_id, "late failure") is False

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.error is None
        assert recorded_events[-1].type == EventType.WARNING

    @pytest.mark.asyncio
    async def test_fail_unknown_task_is_ignored(self, queue_service, recorded_events):
        """Test failing an unknown id is a no-op with a warning event."""
        assert await queue_service.fail("task-missing", "boom") is False
        assert recorded_events[-1].type == EventType.WARNING


class TestCancel:
    """Test cases for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_pending_task(self, queue_service, recorded_events):
        """Test a cancelled task is never dequeued."""
        task_id = await queue_service.enqueue("build")

        assert await queue_service.cancel(task_id) is True

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.completed_at is not None
        assert await queue_service.dequeue(["build"]) is None
        assert recorded_events[-1].type == EventType.TASK_CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_processing_task_refused(self, queue_service):
        """Test only pending tasks can be cancelled."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])

        assert await queue_service.cancel(task_id) is False
        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, queue_service):
        """Test cancelling an unknown id returns False."""
        assert await queue_service.cancel("task-missing") is False

    @pytest.mark.asyncio
    async def test_cancel_task_waiting_for_retry(self, queue_service, clock):
        """Test a task in backoff can be cancelled and stays out of the queue."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])
        await queue_service.fail(task_id, "boom")

        assert await queue_service.cancel(task_id) is True

        clock.advance(seconds=60)
        assert await queue_service.dequeue(["build"]) is None


class TestTaskRecords:
    """Test cases for reads, deletion and cleanup."""

    @pytest.mark.asyncio
    async def test_get_task_returns_copy(self, queue_service):
        """Test mutating a returned task does not change stored state."""
        task_id = await queue_service.enqueue("build", {"n": 1})

        task = await queue_service.get_task(task_id)
        task.payload["n"] = 2
        task.status = TaskStatus.COMPLETED

        stored = await queue_service.get_task(task_id)
        assert stored.payload == {"n": 1}
        assert stored.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_unknown_task(self, queue_service):
        """Test unknown ids read as None."""
        assert await queue_service.get_task("task-missing") is None
        assert await queue_service.get_result("task-missing") is None

    @pytest.mark.asyncio
    async def test_delete_pending_task(self, queue_service):
        """Test deleting a pending task removes its index entry."""
        task_id = await queue_service.enqueue("build")

        assert await queue_service.delete_task(task_id) is True

        assert await queue_service.get_task(task_id) is None
        assert await queue_service.dequeue(["build"]) is None
        assert await queue_service.delete_task(task_id) is False

    @pytest.mark.asyncio
    async def test_delete_dead_lettered_task(self, queue_service):
        """Test deleting a failed task also drops its dead letter entry."""
        task_id = await queue_service.enqueue("build", max_retries=0)
        await queue_service.fail(task_id, "boom")

        await queue_service.delete_task(task_id)

        assert await queue_service.dead_letter_ids() == []

    @pytest.mark.asyncio
    async def test_cleanup_expired_tasks(self, queue_service, clock):
        """Test old terminal tasks are removed and live ones are kept."""
        done = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"])
        await queue_service.complete(done, "ok")
        cancelled = await queue_service.enqueue("build")
        await queue_service.cancel(cancelled)
        dead = await queue_service.enqueue("build", max_retries=0)
        await queue_service.fail(dead, "boom")

        clock.advance(seconds=3600)
        pending = await queue_service.enqueue("build")

        assert await queue_service.cleanup_expired_tasks(max_age_seconds=600) == 2

        assert await queue_service.get_task(done) is None
        assert await queue_service.get_task(cancelled) is None
        assert await queue_service.get_task(dead) is not None
        assert await queue_service.get_task(pending) is not None


class TestWorkers:
    """Test cases for worker registration and heartbeats."""

    @pytest.mark.asyncio
    async def test_register_worker(self, queue_service, recorded_events):
        """Test registering a worker stores its metadata."""
        worker_id = await queue_service.register_worker(
            ["build", "test"], max_concurrent=3, hostname="ci-1"
        )

        assert worker_id.startswith("worker-")
        workers = await queue_service.get_workers()
        assert len(workers) == 1
        assert workers[0].task_types == ["build", "test"]
        assert workers[0].max_concurrent == 3
        assert workers[0].current_tasks == 0
        assert workers[0].hostname == "ci-1"
        assert recorded_events[-1].type == EventType.WORKER_REGISTERED

    @pytest.mark.asyncio
    async def test_register_overwrites_by_id(self, queue_service):
        """Test re-registering the same id replaces the registration."""
        await queue_service.register_worker(["build"], worker_id="worker-a")
        await queue_service.register_worker(
            ["test"], worker_id="worker-a", max_concurrent=2
        )

        workers = await queue_service.get_workers()
        assert len(workers) == 1
        assert workers[0].task_types == ["test"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "task_types,max_concurrent",
        [([], 1), ("build", 1), ([""], 1), (["build"], 0)],
    )
    async def test_register_rejects_invalid_arguments(
        self, queue_service, task_types, max_concurrent
    ):
        """Test invalid registrations are rejected."""
        with pytest.raises(InvalidArgumentError):
            await queue_service.register_worker(
                task_types, max_concurrent=max_concurrent
            )
        assert await queue_service.get_workers() == []

    @pytest.mark.asyncio
    async def test_heartbeat_updates_registration(self, queue_service, clock):
        """Test heartbeats refresh the timestamp and in-flight count."""
        worker_id = await queue_service.register_worker(["build"], max_concurrent=2)
        clock.advance(seconds=10)

        assert await queue_service.heartbeat(worker_id, current_tasks=2) is True

        (worker,) = await queue_service.get_workers()
        assert worker.last_heartbeat == clock.now()
        assert worker.current_tasks == 2

    @pytest.mark.asyncio
    async def test_heartbeat_rejects_count_over_ceiling(self, queue_service):
        """Test current_tasks can never exceed max_concurrent."""
        worker_id = await queue_service.register_worker(["build"], max_concurrent=1)

        with pytest.raises(InvalidArgumentError):
            await queue_service.heartbeat(worker_id, current_tasks=2)

    @pytest.mark.asyncio
    async def test_heartbeat_unknown_worker(self, queue_service):
        """Test heartbeats from unknown workers report False."""
        assert await queue_service.heartbeat("worker-ghost") is False

    @pytest.mark.asyncio
    async def test_unregister_worker(self, queue_service, recorded_events):
        """Test unregistering removes the worker once."""
        worker_id = await queue_service.register_worker(["build"])

        assert await queue_service.unregister_worker(worker_id) is True
        assert recorded_events[-1].type == EventType.WORKER_UNREGISTERED
        assert await queue_service.unregister_worker(worker_id) is False
        assert await queue_service.get_workers() == []

    @pytest.mark.asyncio
    async def test_find_stale_workers(self, queue_service, clock):
        """Test workers with old heartbeats are reported as stale."""
        quiet = await queue_service.register_worker(["build"])
        clock.advance(seconds=60)
        busy = await queue_service.register_worker(["build"])
        clock.advance(seconds=40)

        stale = await queue_service.find_stale_workers(threshold_ms=90000)

        assert [w.worker_id for w in stale] == [quiet]
        assert busy not in [w.worker_id for w in stale]

    @pytest.mark.asyncio
    async def test_find_stale_workers_with_zero_threshold(self, queue_service):
        """Test a zero threshold is honored rather than replaced by the default."""
        worker_id = await queue_service.register_worker(["build"])

        stale = await queue_service.find_stale_workers(threshold_ms=0)

        assert [w.worker_id for w in stale] == [worker_id]


class TestStats:
    """Test cases for statistics."""

    @pytest.mark.asyncio
    async def test_stats_counts(self, queue_service, clock):
        """Test status counts, pending breakdowns and averages."""
        await queue_service.enqueue("build", priority="critical")
        await queue_service.enqueue("test", priority="low")
        done = await queue_service.enqueue("deploy", priority="high")
        cancelled = await queue_service.enqueue("build")
        failed = await queue_service.enqueue("build", max_retries=0)
        await queue_service.register_worker(["build"])

        await queue_service.cancel(cancelled)
        await queue_service.fail(failed, "boom")

        clock.advance(milliseconds=100)
        await queue_service.dequeue(["deploy"])
        clock.advance(milliseconds=300)
        await queue_service.complete(done, "ok")

        stats = await queue_service.get_stats()

        assert stats.pending == 2
        assert stats.processing == 0
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.cancelled == 1
        assert stats.dead_letter == 1
        assert stats.workers == 1
        assert stats.by_priority == {"critical": 1, "high": 0, "normal": 0, "low": 1}
        assert stats.by_worker_type == {"build": 1, "test": 1}
        assert stats.average_wait_time_ms == 100
        assert stats.average_processing_time_ms == 300

    @pytest.mark.asyncio
    async def test_stats_empty_queue(self, queue_service):
        """Test stats on an empty queue."""
        stats = await queue_service.get_stats()

        assert stats.pending == 0
        assert stats.by_priority == {"critical": 0, "high": 0, "normal": 0, "low": 0}
        assert stats.average_wait_time_ms == 0.0


class TestDeadLetterOperations:
    """Test cases for dead letter requeue and removal."""

    @pytest.mark.asyncio
    async def test_requeue_dead_letter(self, queue_service, recorded_events):
        """Test a dead-lettered task can be requeued with a fresh budget."""
        task_id = await queue_service.enqueue("build", max_retries=1)
        await queue_service.fail(task_id, "boom", retryable=False)

        assert await queue_service.requeue_dead_letter(task_id) is True

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 0
        assert task.completed_at is None
        assert await queue_service.dead_letter_ids() == []
        assert recorded_events[-1].type == EventType.TASK_REQUEUED

        dequeued = await queue_service.dequeue(["build"])
        assert dequeued.id == task_id

    @pytest.mark.asyncio
    async def test_requeue_keeps_retry_count(self, queue_service):
        """Test reset_retries=False preserves the retry count."""
        task_id = await queue_service.enqueue("build", max_retries=1)
        await queue_service.fail(task_id, "boom")
        await queue_service.fail(task_id, "boom")

        await queue_service.requeue_dead_letter(task_id, reset_retries=False)

        task = await queue_service.get_task(task_id)
        assert task.retry_count == 1

    @pytest.mark.asyncio
    async def test_requeue_task_not_on_dead_letter_queue(self, queue_service):
        """Test requeue of a task that is not dead-lettered returns False."""
        task_id = await queue_service.enqueue("build")

        assert await queue_service.requeue_dead_letter(task_id) is False

    @pytest.mark.asyncio
    async def test_remove_from_dead_letter(self, queue_service):
        """Test removal keeps the failed record."""
        task_id = await queue_service.enqueue("build", max_retries=0)
        await queue_service.fail(task_id, "boom")

        assert await queue_service.remove_from_dead_letter(task_id) is True
        assert await queue_service.remove_from_dead_letter(task_id) is False

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.FAILED


class TestLeaseReclamation:
    """Test cases for reclaiming expired leases."""

    @pytest.mark.asyncio
    async def test_reclaims_task_of_unregistered_worker(
        self, queue_service, clock, recorded_events
    ):
        """Test a long-running task without a live worker is retried."""
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"], worker_id="worker-gone")
        clock.advance(milliseconds=queue_service.settings.VISIBILITY_TIMEOUT_MS)

        assert await queue_service.reclaim_expired_leases() == [task_id]

        task = await queue_service.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert "Lease expired" in task.error
        types = [e.type for e in recorded_events[-2:]]
        assert types == [EventType.TASK_RECLAIMED, EventType.TASK_RETRYING]

    @pytest.mark.asyncio
    async def test_live_worker_keeps_lease(self, queue_service, clock):
        """Test tasks of a worker with a fresh heartbeat are not reclaimed."""
        worker_id = await queue_service.register_worker(["build"])
        await queue_service.enqueue("build")
        await queue_service.dequeue(["build"], worker_id=worker_id)
        clock.advance(milliseconds=queue_service.settings.VISIBILITY_TIMEOUT_MS * 2)
        await queue_service.heartbeat(worker_id)

        assert await queue_service.reclaim_expired_leases() == []

    @pytest.mark.asyncio
    async def test_stale_worker_loses_lease(self, queue_service, clock):
        """Test tasks of a silent worker are reclaimed."""
        worker_id = await queue_service.register_worker(["build"])
        task_id = await queue_service.enqueue("build")
        await queue_service.dequeue(["build"], worker_id=worker_id)
        clock.advance(milliseconds=queue_service.settings.WORKER_STALE_AFTER_MS)

        assert await queue_service.reclaim_expired_leases() == [task_id]

    @pytest.mark.asyncio
    async def test_recent_lease_is_kept(self, queue_service, clock):
        """Test leases younger than the visibility timeout are kept."""
        await queue_service.enqueue("build")
        await queue_service.dequeue(["build"], worker_id="worker-gone")
        clock.advance(milliseconds=queue_service.settings.VISIBILITY_TIMEOUT_MS - 1)

        assert await queue_service.reclaim_expired_leases() == []


class TestEvents:
    """Test cases for event delivery."""

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_operations(self, queue_service):
        """Test listener exceptions are isolated from queue operations."""

        def broken_listener(event):
            raise RuntimeError("listener bug")

        queue_service.subscribe(broken_listener)

        task_id = await queue_service.enqueue("build")
        assert (await queue_service.dequeue(["build"])).id == task_id

    @pytest.mark.asyncio
    async def test_async_listener_may_call_back_into_service(self, queue_service):
        """Test listeners run outside the service lock."""
        seen = []

        async def listener(event):
            if event.type == EventType.TASK_ENQUEUED:
                seen.append(await queue_service.get_stats())

        queue_service.subscribe(listener)
        await queue_service.enqueue("build")

        assert seen[0].pending == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, queue_service):
        """Test an unsubscribed listener receives nothing."""
        events = []
        unsubscribe = queue_service.subscribe(events.append)
        unsubscribe()

        await queue_service.enqueue("build")

        assert events == []


class PausingTaskStore(InMemoryTaskStore):
    """Task store that can hold one reader between its read and its write."""

    def __init__(self):
        super().__init__()
        self.pause_on: Optional[str] = None
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()

    async def get(self, task_id):
        task = await super().get(task_id)
        if task_id == self.pause_on:
            self.pause_on = None
            self.paused.set()
            await self.resume.wait()
        return task


class FlakyClaimTaskStore(InMemoryTaskStore):
    """Task store whose first conditional write fails."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def put_if_status(self, task, expected):
        if self.failures:
            self.failures -= 1
            raise StorageError("connection reset")
        return await super().put_if_status(task, expected)


def _storage(tasks):
    return QueueStorage(
        tasks=tasks,
        index=InMemoryPriorityIndex(),
        workers=InMemoryWorkerRegistry(),
        results=InMemoryResultCache(),
    )


@pytest_asyncio.fixture
async def shared_services(settings, clock):
    """Two queue services over one store, standing in for two processes."""
    storage = _storage(PausingTaskStore())
    services = [
        QueueService(storage=storage, settings=settings, clock=clock)
        for _ in range(2)
    ]
    for service in services:
        await service.initialize()
    yield services
    for service in services:
        await service.close()


class TestSharedStorageTransitions:
    """Test cases for services racing on the same task records."""

    @pytest.mark.asyncio
    async def test_cancel_loses_to_claim_by_other_service(self, shared_services):
        """Test a cancel that read a pending task does not cancel it once claimed."""
        first, second = shared_services
        store = first.storage.tasks
        task_id = await first.enqueue("build")

        store.pause_on = task_id
        cancelling = asyncio.create_task(first.cancel(task_id))
        await store.paused.wait()
        claimed = await second.dequeue(["build"], worker_id="worker-1")
        store.resume.set()

        assert await cancelling is False
        assert claimed.id == task_id
        task = await first.get_task(task_id)
        assert task.status == TaskStatus.PROCESSING
        assert task.worker_id == "worker-1"

    @pytest.mark.asyncio
    async def test_claim_loses_to_cancel_by_other_service(self, shared_services):
        """Test a dequeue that read a pending task skips it once cancelled."""
        first, second = shared_services
        store = first.storage.tasks
        task_id = await first.enqueue("build")

        store.pause_on = task_id
        dequeuing = asyncio.create_task(first.dequeue(["build"], "worker-1"))
        await store.paused.wait()
        cancelled = await second.cancel(task_id)
        store.resume.set()

        assert cancelled is True
        assert await dequeuing is None
        task = await first.get_task(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.worker_id is None

    @pytest.mark.asyncio
    async def test_failure_loses_to_completion_by_other_service(
        self, shared_services
    ):
        """Test a failure report is rejected once another service completed the task."""
        first, second = shared_services
        store = first.storage.tasks
        events = []
        first.subscribe(events.append)
        task_id = await first.enqueue("build")
        await first.dequeue(["build"], "worker-1")

        store.pause_on = task_id
        failing = asyncio.create_task(first.fail(task_id, "boom"))
        await store.paused.wait()
        completed = await second.complete(task_id, "ok")
        store.resume.set()

        assert completed is True
        assert await failing is False
        task = await first.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.retry_count == 0
        assert await first.get_result(task_id) == "ok"
        assert await first.storage.index.size(first._queue("build")) == 0
        assert events[-1].type == EventType.WARNING
        assert "changed state concurrently" in events[-1].data["message"]

    @pytest.mark.asyncio
    async def test_failed_claim_returns_task_to_queue(self, settings, clock):
        """Test a storage error while claiming leaves the task dequeue-eligible."""
        service = QueueService(
            storage=_storage(FlakyClaimTaskStore()), settings=settings, clock=clock
        )
        await service.initialize()
        try:
            await service.enqueue("build", priority="low")
            urgent = await service.enqueue("build", priority="high")

            with pytest.raises(StorageError):
                await service.dequeue(["build"])

            task = await service.dequeue(["build"])
        finally:
            await service.close()

        assert task.id == urgent
        assert task.status == TaskStatus.PROCESSING
