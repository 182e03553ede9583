"""String enums shared across the gateway."""

from enum import StrEnum


class RateLimiterFailureMode(StrEnum):
    """What the rate limiter does when its counter store is unreachable."""

    OPEN = "open"
    CLOSED = "closed"


class UnauthenticatedReason(StrEnum):
    MISSING = "missing"
    UNKNOWN = "unknown"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    STORE_UNAVAILABLE = "store_unavailable"


class DeliveryState(StrEnum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
