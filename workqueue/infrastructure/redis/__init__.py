"""
Redis queue storage.
"""

from .connection import check_connection, create_redis_client
from .exceptions import RedisConnectionException, RedisStoreException
from .stores import (
    RedisPriorityIndex,
    RedisQueueStorage,
    RedisResultCache,
    RedisTaskStore,
    RedisWorkerRegistry,
)

__all__ = [
    "check_connection",
    "create_redis_client",
    "RedisConnectionException",
    "RedisStoreException",
    "RedisTaskStore",
    "RedisPriorityIndex",
    "RedisWorkerRegistry",
    "RedisResultCache",
    "RedisQueueStorage",
]
