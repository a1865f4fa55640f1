"""
Redis Queue Stores

Redis implementations of the queue storage contracts.

Key layout (``<prefix>`` is the queue prefix):

- ``<prefix>:tasks``                    hash, task id -> task JSON; status
                                        transitions are WATCH/MULTI compare-and-set
- ``<prefix>:workers``                  hash, worker id -> registration JSON
- ``<prefix>:results:<task id>``        string, result JSON with absolute expiry
- ``<queue>``                           zset of ready ids
- ``<queue>:delayed``                   zset of delayed ids scored by ready time (ms)
- ``<queue>:delayed:priority``          hash, delayed id -> priority score
- ``<queue>:seq``                       FIFO sequence counter

Ready ids are scored ``(10 - priority) * 2^40 + seq`` so ``ZPOPMIN`` yields
the highest priority first and insertion order within a priority. Push and
pop run as Lua scripts, so a popped id is delivered to exactly one caller
across processes.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError, WatchError

from ...core.clock import to_epoch_ms
from ...domain.queue.entities import ResultEntry, Task, WorkerRegistration
from ...domain.queue.repository_interfaces import (
    PriorityIndex,
    QueueStorage,
    ResultCache,
    TaskStore,
    WorkerRegistry,
)
from ...domain.queue.value_objects import TaskStatus
from .exceptions import RedisStoreException

logger = logging.getLogger(__name__)


PUSH_SCRIPT = """
local ready_key = KEYS[1]
local seq_key = KEYS[2]
local delayed_key = KEYS[3]
local delayed_priority_key = KEYS[4]

local task_id = ARGV[1]
local score = tonumber(ARGV[2])
local ready_at = ARGV[3]

if ready_at ~= '' then
    redis.call('ZADD', delayed_key, tonumber(ready_at), task_id)
    redis.call('HSET', delayed_priority_key, task_id, score)
    return 0
end

local seq = redis.call('INCR', seq_key)
redis.call('ZADD', ready_key, (10 - score) * 1099511627776 + seq, task_id)
return 1
"""

POP_SCRIPT = """
local ready_key = KEYS[1]
local seq_key = KEYS[2]
local delayed_key = KEYS[3]
local delayed_priority_key = KEYS[4]

local now = tonumber(ARGV[1])

-- Promote due delayed entries in ready-time order
local due = redis.call('ZRANGEBYSCORE', delayed_key, '-inf', now)
for _, task_id in ipairs(due) do
    local score = tonumber(redis.call('HGET', delayed_priority_key, task_id) or 0)
    redis.call('ZREM', delayed_key, task_id)
    redis.call('HDEL', delayed_priority_key, task_id)
    local seq = redis.call('INCR', seq_key)
    redis.call('ZADD', ready_key, (10 - score) * 1099511627776 + seq, task_id)
end

local popped = redis.call('ZPOPMIN', ready_key, 1)
if #popped == 0 then
    return false
end
return popped[1]
"""


@contextmanager
def _redis_errors(operation: str, key: Optional[str] = None):
    """Re-raise Redis and decoding failures as RedisStoreException."""
    try:
        yield
    except RedisStoreException:
        raise
    except (RedisError, ValueError) as e:
        logger.exception(
            f"Redis {operation} failed",
            extra={"operation": operation, "key": key},
        )
        raise RedisStoreException(
            message=f"Redis {operation} failed: {e}",
            operation=operation,
            key=key,
            original_error=e,
        ) from e


class RedisTaskStore(TaskStore):
    """Task records in a single Redis hash."""

    def __init__(self, redis: Redis, prefix: str):
        self._redis = redis
        self._key = f"{prefix}:tasks"

    async def put(self, task: Task) -> None:
        with _redis_errors("task_put", self._key):
            await self._redis.hset(self._key, task.id, task.model_dump_json())

    async def put_if_status(self, task: Task, expected: TaskStatus) -> bool:
        with _redis_errors("task_compare_and_put", self._key):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(self._key)
                        raw = await pipe.hget(self._key, task.id)
                        if not raw or Task.model_validate_json(raw).status != expected:
                            return False

                        pipe.multi()
                        pipe.hset(self._key, task.id, task.model_dump_json())
                        await pipe.execute()
                        return True
                    except WatchError:
                        # Another writer touched the hash; re-check
                        logger.debug(
                            f"Task {task.id} write raced, retrying",
                            extra={"task_id": task.id},
                        )
                        continue

    async def get(self, task_id: str) -> Optional[Task]:
        with _redis_errors("task_get", self._key):
            raw = await self._redis.hget(self._key, task_id)
            return Task.model_validate_json(raw) if raw else None

    async def delete(self, task_id: str) -> bool:
        with _redis_errors("task_delete", self._key):
            return bool(await self._redis.hdel(self._key, task_id))

    async def list_all(self) -> List[Task]:
        with _redis_errors("task_list", self._key):
            values = await self._redis.hvals(self._key)
            return [Task.model_validate_json(raw) for raw in values]


class RedisPriorityIndex(PriorityIndex):
    """Sorted-set priority index driven by Lua scripts."""

    def __init__(self, redis: Redis):
        self._redis = redis
        self._lua_scripts: Dict[str, str] = {}

    async def load_scripts(self) -> None:
        """Load Lua scripts for atomic push and pop."""
        with _redis_errors("script_load"):
            self._lua_scripts["push"] = await self._redis.script_load(PUSH_SCRIPT)
            self._lua_scripts["pop"] = await self._redis.script_load(POP_SCRIPT)

    @staticmethod
    def _keys(queue: str) -> List[str]:
        return [
            queue,
            f"{queue}:seq",
            f"{queue}:delayed",
            f"{queue}:delayed:priority",
        ]

    async def _run_script(self, name: str, queue: str, *args):
        if name not in self._lua_scripts:
            await self.load_scripts()

        keys = self._keys(queue)
        try:
            return await self._redis.evalsha(
                self._lua_scripts[name], len(keys), *keys, *args
            )
        except NoScriptError:
            # Script cache was flushed on the server; reload once
            logger.warning(f"Lua script '{name}' missing on server, reloading")
            await self.load_scripts()
            return await self._redis.evalsha(
                self._lua_scripts[name], len(keys), *keys, *args
            )

    async def push(
        self,
        queue: str,
        task_id: str,
        score: int,
        ready_at: Optional[datetime] = None,
    ) -> None:
        ready_arg = str(to_epoch_ms(ready_at)) if ready_at is not None else ""
        with _redis_errors("index_push", queue):
            await self._run_script("push", queue, task_id, score, ready_arg)

    async def pop(self, queue: str, now: datetime) -> Optional[str]:
        with _redis_errors("index_pop", queue):
            task_id = await self._run_script("pop", queue, to_epoch_ms(now))
            return task_id or None

    async def remove(self, queue: str, task_id: str) -> bool:
        with _redis_errors("index_remove", queue):
            removed = await self._redis.zrem(queue, task_id)
            removed += await self._redis.zrem(f"{queue}:delayed", task_id)
            await self._redis.hdel(f"{queue}:delayed:priority", task_id)
            return removed > 0

    async def size(self, queue: str) -> int:
        with _redis_errors("index_size", queue):
            ready = await self._redis.zcard(queue)
            delayed = await self._redis.zcard(f"{queue}:delayed")
            return int(ready) + int(delayed)

    async def list_ids(self, queue: str) -> List[str]:
        with _redis_errors("index_list", queue):
            ready = await self._redis.zrange(queue, 0, -1)
            delayed = await self._redis.zrange(f"{queue}:delayed", 0, -1)
            return list(ready) + list(delayed)


class RedisWorkerRegistry(WorkerRegistry):
    """Worker registrations in a single Redis hash."""

    def __init__(self, redis: Redis, prefix: str):
        self._redis = redis
        self._key = f"{prefix}:workers"

    async def register(self, registration: WorkerRegistration) -> None:
        with _redis_errors("worker_register", self._key):
            await self._redis.hset(
                self._key, registration.worker_id, registration.model_dump_json()
            )

    async def get(self, worker_id: str) -> Optional[WorkerRegistration]:
        with _redis_errors("worker_get", self._key):
            raw = await self._redis.hget(self._key, worker_id)
            return WorkerRegistration.model_validate_json(raw) if raw else None

    async def heartbeat(
        self, worker_id: str, now: datetime, current_tasks: Optional[int] = None
    ) -> bool:
        registration = await self.get(worker_id)
        if registration is None:
            return False

        update = {"last_heartbeat": now}
        if current_tasks is not None:
            update["current_tasks"] = current_tasks
        await self.register(registration.model_copy(update=update))
        return True

    async def unregister(self, worker_id: str) -> bool:
        with _redis_errors("worker_unregister", self._key):
            return bool(await self._redis.hdel(self._key, worker_id))

    async def list_all(self) -> List[WorkerRegistration]:
        with _redis_errors("worker_list", self._key):
            values = await self._redis.hvals(self._key)
            return [WorkerRegistration.model_validate_json(raw) for raw in values]


class RedisResultCache(ResultCache):
    """Results as individual keys that Redis expires on its own."""

    def __init__(self, redis: Redis, prefix: str):
        self._redis = redis
        self._prefix = f"{prefix}:results"

    def _key(self, task_id: str) -> str:
        return f"{self._prefix}:{task_id}"

    async def set(self, entry: ResultEntry) -> None:
        key = self._key(entry.task_id)
        with _redis_errors("result_set", key):
            await self._redis.set(
                key, entry.model_dump_json(), pxat=to_epoch_ms(entry.expires_at)
            )

    async def get(self, task_id: str, now: datetime) -> Optional[ResultEntry]:
        key = self._key(task_id)
        with _redis_errors("result_get", key):
            raw = await self._redis.get(key)
            if not raw:
                return None
            entry = ResultEntry.model_validate_json(raw)
            if entry.is_expired(now):
                await self._redis.delete(key)
                return None
            return entry

    async def delete(self, task_id: str) -> bool:
        key = self._key(task_id)
        with _redis_errors("result_delete", key):
            return bool(await self._redis.delete(key))

    async def purge_expired(self, now: datetime) -> int:
        # Redis expires result keys itself
        return 0


class RedisQueueStorage(QueueStorage):
    """Storage bundle backed by a Redis server."""

    def __init__(self, redis: Redis, prefix: str, owns_client: bool = False):
        self._redis = redis
        self._owns_client = owns_client
        self._index = RedisPriorityIndex(redis)
        super().__init__(
            tasks=RedisTaskStore(redis, prefix),
            index=self._index,
            workers=RedisWorkerRegistry(redis, prefix),
            results=RedisResultCache(redis, prefix),
        )

    async def initialize(self) -> None:
        """Load Lua scripts."""
        try:
            await self._index.load_scripts()
            logger.info("Redis queue storage initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Redis queue storage: {e}")
            raise

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()
