"""
Main pytest configuration for workqueue tests.

Fixtures for settings, clocks, queue services and event capture.
"""

import asyncio
import os
import time
from typing import Callable, List

import pytest
import pytest_asyncio

# Set test environment variables before importing workqueue modules
os.environ["WORKQUEUE_ENVIRONMENT"] = "test"
os.environ["WORKQUEUE_LOG_LEVEL"] = "DEBUG"

from workqueue.core.clock import ManualClock, SystemClock
from workqueue.core.config import Settings
from workqueue.domain.queue.events import QueueEvent
from workqueue.infrastructure.memory.stores import InMemoryQueueStorage
from workqueue.services.queues.queue_service import QueueService


@pytest.fixture
def settings():
    """Settings with short loop intervals for fast tests."""
    return Settings(
        ENVIRONMENT="test",
        QUEUE_PREFIX="test:queue",
        POLL_INTERVAL_MS=10,
        CONCURRENCY_WAIT_MS=5,
        HEARTBEAT_INTERVAL_MS=50,
        LOOP_ERROR_BACKOFF_MS=20,
        SHUTDOWN_GRACE_PERIOD_MS=1000,
        LEASE_REAPER_INTERVAL_MS=20,
    )


@pytest.fixture
def clock():
    """Manual clock starting at 2024-01-01T00:00:00Z."""
    return ManualClock()


@pytest_asyncio.fixture
async def queue_service(settings, clock):
    """Initialized in-memory queue service driven by a manual clock."""
    service = QueueService(
        storage=InMemoryQueueStorage(), settings=settings, clock=clock
    )
    await service.initialize()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def live_queue_service(settings):
    """Initialized in-memory queue service on the wall clock."""
    service = QueueService(
        storage=InMemoryQueueStorage(), settings=settings, clock=SystemClock()
    )
    await service.initialize()
    yield service
    await service.close()


@pytest.fixture
def recorded_events(queue_service) -> List[QueueEvent]:
    """Every event published by ``queue_service``."""
    events: List[QueueEvent] = []
    queue_service.subscribe(events.append)
    return events


async def _wait_until(
    predicate: Callable, timeout: float = 2.0, interval: float = 0.01
) -> None:
    deadline = time.monotonic() + timeout
    while True:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return
        if time.monotonic() >= deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Poll a sync or async predicate until it is truthy."""
    return _wait_until
