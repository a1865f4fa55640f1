"""
Lease Reaper

Background sweep that returns tasks stuck in ``processing`` on a crashed or
silent worker to the queue. Off unless LEASE_REAPER_ENABLED is set.
"""

import asyncio
from typing import TYPE_CHECKING, List, Optional

import structlog

if TYPE_CHECKING:
    from .queue_service import QueueService

logger = structlog.get_logger(__name__)


class LeaseReaper:
    """Periodically calls ``QueueService.reclaim_expired_leases``."""

    def __init__(self, queue_service: "QueueService", interval_ms: int = 15000):
        self.queue_service = queue_service
        self.interval_ms = interval_ms
        self.total_reclaimed = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep."""
        if self._task is None:
            self._task = asyncio.create_task(self._reaper_loop())
            logger.info("Lease reaper started", interval_ms=self.interval_ms)

    async def stop(self) -> None:
        """Stop the background sweep."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Lease reaper stopped", total_reclaimed=self.total_reclaimed)

    async def sweep(self) -> List[str]:
        """Run one reclamation pass."""
        reclaimed = await self.queue_service.reclaim_expired_leases()
        if reclaimed:
            self.total_reclaimed += len(reclaimed)
            logger.warning(
                "Reclaimed expired task leases",
                count=len(reclaimed),
                task_ids=reclaimed,
            )
        return reclaimed

    async def _reaper_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_ms / 1000)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Lease reaper sweep failed", error=str(e))
