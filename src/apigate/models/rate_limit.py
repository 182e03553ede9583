"""Result of a rate-limit check."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class RateDecision:
    """Outcome of ``RateLimiter.allow`` for one request.

    ``retry_after`` is whole seconds until the window resets and is only
    meaningful when ``allowed`` is False.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0
    degraded: bool = False
