"""
Redis Connection

Client construction and connectivity checks for the Redis storage backend.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...core.config import Settings, get_settings
from .exceptions import RedisConnectionException

logger = logging.getLogger(__name__)


def create_redis_client(settings: Optional[Settings] = None) -> Redis:
    """Create a pooled asyncio Redis client from settings."""
    settings = settings or get_settings()

    connection_kwargs = {
        "encoding": "utf-8",
        "decode_responses": True,
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
    }
    # Explicit password wins over one embedded in the URL
    if settings.REDIS_PASSWORD:
        connection_kwargs["password"] = settings.REDIS_PASSWORD

    return Redis.from_url(settings.REDIS_URL, **connection_kwargs)


async def check_connection(client: Redis, url: Optional[str] = None) -> None:
    """Ping Redis, raising RedisConnectionException when it is unreachable."""
    try:
        await client.ping()
    except RedisError as e:
        # Never log credentials embedded in the URL
        safe_url = _redact(url) if url else None
        logger.error(f"Redis connection check failed: {e}", extra={"url": safe_url})
        raise RedisConnectionException(url=safe_url, original_error=e) from e


def _redact(url: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
        return parsed._replace(netloc=netloc).geturl()
    return url
