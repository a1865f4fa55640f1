"""
Queue Exceptions

Domain-specific exceptions for queue operations.
"""

from typing import Any, Dict, Optional


class QueueException(Exception):
    """Base exception for queue errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class InvalidArgumentError(QueueException, ValueError):
    """Raised when a caller passes a bad task type, priority or option.

    Rejected synchronously; nothing reaches the store.
    """

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
            details["value"] = repr(value)

        super().__init__(
            message=message, error_code="INVALID_ARGUMENT", details=details
        )


class TaskNotFoundError(QueueException, KeyError):
    """Raised by explicit lookups for an unknown task id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(
            message=f"Task {task_id} not found",
            error_code="TASK_NOT_FOUND",
            details={"task_id": task_id},
        )

    def __str__(self) -> str:
        return self.message


class HandlerError(QueueException):
    """Wraps an exception raised by a task handler."""

    def __init__(self, task_id: str, original_error: BaseException):
        self.task_id = task_id
        self.original_error = original_error
        super().__init__(
            message=str(original_error) or type(original_error).__name__,
            error_code="HANDLER_ERROR",
            details={
                "task_id": task_id,
                "original_error_type": type(original_error).__name__,
            },
        )
        # Preserve exception context for debugging (exception chaining)
        self.__cause__ = original_error


class StorageError(QueueException):
    """Raised when a storage backend operation fails."""

    def __init__(
        self,
        message: str,
        error_code: str = "STORAGE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, error_code=error_code, details=details)
