"""
Redis Infrastructure Exceptions

Exceptions raised by the Redis storage backend. Every Redis failure is
re-raised as one of these with the original error chained.
"""

from typing import Optional

from ...domain.queue.exceptions import StorageError


class RedisStoreException(StorageError):
    """Raised when a Redis store operation fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_code: str = "REDIS_STORE_ERROR",
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code=error_code, details=details)
        # Preserve exception context for debugging (exception chaining)
        if original_error:
            self.__cause__ = original_error


class RedisConnectionException(RedisStoreException):
    """Raised when the Redis server cannot be reached."""

    def __init__(
        self,
        message: str = "Redis connection failed",
        url: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            operation="connect",
            key=url,
            original_error=original_error,
            error_code="REDIS_CONNECTION_ERROR",
        )
