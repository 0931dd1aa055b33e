"""
Offline Sync Engine - Error Taxonomy

Exceptions raised inside the engine, and the ``Result`` value used by the
persistence boundary so that the "log and fall back" decision is made once.

Transient failures (network, timeout, 5xx) and storage failures never escape
the public operations; they are caught at the service boundary and either
retried later or logged.
"""

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class NetworkError(SyncError):
    """Network-related error (connection refused, DNS, timeout)."""
    pass


class ServerError(SyncError):
    """The server answered with a 5xx status."""
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class ClientError(SyncError):
    """The server rejected the request with a 4xx status."""
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class StorageError(SyncError):
    """Durable storage is unavailable, full, or returned unreadable data."""
    pass


class IntegrityError(SyncError):
    """A stored record no longer matches its checksum."""
    def __init__(self, message: str, key: str):
        super().__init__(message)
        self.key = key


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a fallible internal operation."""
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Result[T]":
        return cls(error=error)

    @classmethod
    def capture(cls, func: Callable[[], T]) -> "Result[T]":
        """Run ``func`` and wrap its return value or its SyncError."""
        try:
            return cls(value=func())
        except SyncError as e:
            return cls(error=e)

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value
