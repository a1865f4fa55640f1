"""
Dead Letter Queue

Inspection and manual intervention for tasks that failed permanently.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ...core.telemetry import get_tracer
from ...domain.queue.entities import Task
from ...domain.queue.exceptions import TaskNotFoundError
from .queue_service import QueueService

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class DeadLetterQueue:
    """
    Read and manage the dead letter queue of a queue service.

    Entries are task ids pushed by ``QueueService.fail`` once a task's retry
    budget is spent; the task records themselves stay in the task store.
    """

    def __init__(self, queue_service: QueueService):
        self.queue_service = queue_service

    async def _tasks(self) -> List[Task]:
        tasks = []
        for task_id in await self.queue_service.dead_letter_ids():
            task = await self.queue_service.get_task(task_id)
            if task is None:
                logger.warning(
                    f"Dead letter entry {task_id} has no task record",
                    extra={"task_id": task_id},
                )
                continue
            tasks.append(task)
        return tasks

    async def list_tasks(
        self,
        limit: int = 100,
        offset: int = 0,
        task_type: Optional[str] = None,
    ) -> List[Task]:
        """
        List dead-lettered tasks, oldest failure first.

        Args:
            limit: Maximum number of tasks to return
            offset: Offset for pagination, applied after filtering
            task_type: Filter by task type

        Returns:
            List of failed tasks
        """
        tasks = await self._tasks()
        if task_type:
            tasks = [task for task in tasks if task.task_type == task_type]
        return tasks[offset : offset + limit]

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get a dead-lettered task, or None if the id is not on the queue."""
        if task_id not in await self.queue_service.dead_letter_ids():
            return None
        return await self.queue_service.get_task(task_id)

    async def get_statistics(self) -> Dict[str, Any]:
        """
        Get dead letter queue statistics.

        Returns:
            Totals by task type and error, age buckets, and the oldest and
            newest failure times
        """
        with tracer.start_as_current_span("dead_letter.get_statistics"):
            tasks = await self._tasks()
            now = self.queue_service.clock.now()

            stats: Dict[str, Any] = {
                "total_tasks": len(tasks),
                "by_task_type": {},
                "by_error": {},
                "by_age": {"1h": 0, "24h": 0, "7d": 0, "older": 0},
                "oldest_failure": None,
                "newest_failure": None,
                "timestamp": now.isoformat(),
            }

            failed_times = []
            for task in tasks:
                stats["by_task_type"][task.task_type] = (
                    stats["by_task_type"].get(task.task_type, 0) + 1
                )
                error_key = self._error_category(task.error)
                stats["by_error"][error_key] = stats["by_error"].get(error_key, 0) + 1

                if task.completed_at is None:
                    continue
                failed_times.append(task.completed_at)

                age = now - task.completed_at
                if age <= timedelta(hours=1):
                    stats["by_age"]["1h"] += 1
                elif age <= timedelta(hours=24):
                    stats["by_age"]["24h"] += 1
                elif age <= timedelta(days=7):
                    stats["by_age"]["7d"] += 1
                else:
                    stats["by_age"]["older"] += 1

            if failed_times:
                stats["oldest_failure"] = min(failed_times).isoformat()
                stats["newest_failure"] = max(failed_times).isoformat()

            return stats

    async def retry_task(self, task_id: str, reset_retries: bool = True) -> bool:
        """
        Manually requeue a dead-lettered task.

        Args:
            task_id: Task id to requeue
            reset_retries: Give the task a fresh retry budget

        Returns:
            True if the task was requeued

        Raises:
            TaskNotFoundError: If no such task exists
        """
        task = await self.queue_service.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        requeued = await self.queue_service.requeue_dead_letter(
            task_id, reset_retries=reset_retries
        )
        if requeued:
            logger.info(
                f"Dead letter task {task_id} manually requeued",
                extra={"task_id": task_id, "task_type": task.task_type},
            )
        else:
            logger.warning(
                f"Task {task_id} is not on the dead letter queue",
                extra={"task_id": task_id, "status": task.status.value},
            )
        return requeued

    async def remove_task(self, task_id: str) -> bool:
        """Remove a task from the dead letter queue."""
        removed = await self.queue_service.remove_from_dead_letter(task_id)
        if removed:
            logger.info(
                f"Task {task_id} removed from dead letter queue",
                extra={"task_id": task_id},
            )
        return removed

    async def purge(self) -> int:
        """Remove every entry from the dead letter queue."""
        removed = 0
        for task_id in await self.queue_service.dead_letter_ids():
            if await self.queue_service.remove_from_dead_letter(task_id):
                removed += 1

        logger.info(f"Purged {removed} tasks from dead letter queue")
        return removed

    @staticmethod
    def _error_category(error: Optional[str]) -> str:
        """Group errors by the leading ``Type:`` prefix, when there is one."""
        if not error:
            return "unknown"
        head = error.split(":", 1)[0].strip()
        if head and " " not in head:
            return head
        return "other"
