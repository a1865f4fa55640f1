"""
Storage backend selection.
"""

import logging
from typing import Optional

from redis.asyncio import Redis

from ..core.config import Settings, get_settings
from ..domain.queue.repository_interfaces import QueueStorage
from .memory.stores import InMemoryQueueStorage
from .redis.connection import create_redis_client
from .redis.stores import RedisQueueStorage

logger = logging.getLogger(__name__)


def create_storage(
    settings: Optional[Settings] = None, redis_client: Optional[Redis] = None
) -> QueueStorage:
    """Build the storage bundle named by STORAGE_BACKEND.

    A caller-supplied Redis client is left open on close; a client created
    here is owned and closed by the storage.
    """
    settings = settings or get_settings()

    if settings.STORAGE_BACKEND == "redis":
        owns_client = redis_client is None
        client = redis_client or create_redis_client(settings)
        logger.info(
            "Using Redis queue storage", extra={"prefix": settings.queue_prefix}
        )
        return RedisQueueStorage(client, settings.queue_prefix, owns_client=owns_client)

    return InMemoryQueueStorage()
