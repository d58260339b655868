"""
Cache error taxonomy.

The tiers raise these; the cache service, manager, warmer and edge
middleware absorb them and report booleans or misses instead.
"""

from typing import Any, Dict, Optional


class CacheError(Exception):
    """Base exception for cache tier errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        if original_error is not None:
            self.details.setdefault("original_error", str(original_error))
            self.details.setdefault("original_error_type", type(original_error).__name__)
        super().__init__(self.message)
        if original_error is not None:
            self.__cause__ = original_error


class ConnectionUnavailable(CacheError):
    """The distributed tier is not configured or not reachable."""

    def __init__(
        self,
        message: str = "Distributed cache is unavailable",
        operation: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details = {"operation": operation} if operation else {}
        super().__init__(message, "CACHE_CONNECTION_UNAVAILABLE", details, original_error)


class SerializationError(CacheError):
    """A value could not be encoded, or a stored payload could not be decoded."""

    def __init__(
        self,
        message: str = "Cache payload could not be serialized",
        key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details = {"key": key} if key else {}
        super().__init__(message, "CACHE_SERIALIZATION_ERROR", details, original_error)


class OperationFailure(CacheError):
    """A single tier rejected or failed an operation."""

    def __init__(
        self,
        operation: str,
        key: Optional[str] = None,
        tier: str = "distributed",
        original_error: Optional[BaseException] = None,
    ):
        details = {"operation": operation, "tier": tier}
        if key:
            details["key"] = key
        super().__init__(
            f"Cache {operation} failed on {tier} tier", "CACHE_OPERATION_FAILED", details, original_error
        )
