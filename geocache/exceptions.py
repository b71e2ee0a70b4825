"""
Custom Exceptions for the Geospatial Story Cache.

Provides a small hierarchy of cache exceptions. Cache misses are not
exceptions: lookups return None so call sites handle the miss explicitly.
"""


class GeoCacheError(Exception):
    """
    Base exception for cache failures.

    Attributes:
        message: Human-readable error description
        details: Additional context about the failure
    """

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class CacheValidationError(GeoCacheError, ValueError):
    """
    Invalid input to a cache operation.

    Raised synchronously for out-of-range coordinates, non-positive search
    radius or non-positive TTL. Never retried.
    """


class CapacityConflict(GeoCacheError):
    """
    A region cannot accept another entry without eviction.

    Internal only: the region index resolves it by evicting the least
    valuable entries of the region.

    Attributes:
        region_name: Name of the full region
        capacity: Configured per-region cap
    """

    def __init__(self, region_name: str, capacity: int):
        super().__init__(
            f"Region '{region_name}' is at capacity",
            {"region": region_name, "capacity": capacity},
        )
        self.region_name = region_name
        self.capacity = capacity


class TransientStorageError(GeoCacheError, IOError):
    """
    The persistence collaborator failed after one retry.

    The in-memory cache keeps serving; only durability is lost.

    Attributes:
        operation: Storage operation that failed
    """

    def __init__(self, operation: str, cause: Exception = None):
        details = {"operation": operation}
        if cause is not None:
            details["cause"] = repr(cause)
        super().__init__(f"Snapshot storage operation '{operation}' failed", details)
        self.operation = operation
        self.cause = cause


class CacheLockTimeout(GeoCacheError, TimeoutError):
    """
    The cache lock could not be acquired within the configured timeout.

    Raised before any state is touched, so abandoning the call is safe.
    """

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Timed out acquiring cache lock for '{operation}'",
            {"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds
