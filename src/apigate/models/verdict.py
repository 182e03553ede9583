"""Authorization verdicts produced by the request authenticator."""

from dataclasses import dataclass
from datetime import datetime

from apigate.models.client import Client
from apigate.models.enums import UnauthenticatedReason


@dataclass(frozen=True)
class Admitted:
    client: Client
    limit: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class RateLimited:
    client_id: str
    limit: int
    retry_after: int
    reset_at: datetime


@dataclass(frozen=True)
class Unauthenticated:
    """Rejected credential.

    ``internal_error`` distinguishes a credential store outage from a bad
    key; ``reason`` is for logs only and must not reach the response body.
    """

    reason: UnauthenticatedReason
    internal_error: bool = False


Verdict = Admitted | RateLimited | Unauthenticated
