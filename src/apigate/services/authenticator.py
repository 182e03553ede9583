"""Request authentication: credential lookup followed by the rate-limit check."""

import logging
from datetime import datetime, timezone

from apigate.errors.exceptions import CredentialStoreError
from apigate.metrics import AUTH_VERDICTS_TOTAL
from apigate.models.enums import UnauthenticatedReason
from apigate.models.verdict import Admitted, RateLimited, Unauthenticated, Verdict
from apigate.services.credentials import CredentialStore, hash_api_key
from apigate.services.rate_limiter import RateLimiter
from apigate.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)


class RequestAuthenticator:
    """Turns a raw API key into a verdict for the request boundary.

    When ``usage_recorder`` is set, admitted requests are recorded here with
    ``pending_status``. The HTTP middleware passes no recorder and records
    after the response instead, so the stored status is the real one.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        limiter: RateLimiter,
        usage_recorder: UsageRecorder | None = None,
        pending_status: int = 200,
    ) -> None:
        self.credentials = credentials
        self.limiter = limiter
        self.usage_recorder = usage_recorder
        self.pending_status = pending_status

    async def authenticate(self, raw_key: str | None, endpoint: str, method: str) -> Verdict:
        verdict = await self._authenticate(raw_key)
        AUTH_VERDICTS_TOTAL.labels(verdict=type(verdict).__name__.lower()).inc()

        if isinstance(verdict, Admitted) and self.usage_recorder is not None:
            self.usage_recorder.record(
                verdict.client.client_id, endpoint, method, self.pending_status
            )
        return verdict

    async def _authenticate(self, raw_key: str | None) -> Verdict:
        if not raw_key:
            return Unauthenticated(UnauthenticatedReason.MISSING)

        try:
            client = await self.credentials.find_by_hashed_key(hash_api_key(raw_key))
        except CredentialStoreError as exc:
            logger.error("Credential store unavailable: %s", exc)
            return Unauthenticated(UnauthenticatedReason.STORE_UNAVAILABLE, internal_error=True)

        if client is None:
            return Unauthenticated(UnauthenticatedReason.UNKNOWN)
        if not client.is_active:
            logger.info("Rejected inactive client %s", client.client_id)
            return Unauthenticated(UnauthenticatedReason.INACTIVE)
        if client.is_expired(datetime.now(timezone.utc)):
            logger.info("Rejected expired client %s", client.client_id)
            return Unauthenticated(UnauthenticatedReason.EXPIRED)

        decision = await self.limiter.allow(client.client_id, client.rate_limit)
        if not decision.allowed:
            logger.info(
                "Rate limited client %s (limit=%d, retry_after=%ds)",
                client.client_id,
                decision.limit,
                decision.retry_after,
            )
            return RateLimited(
                client_id=client.client_id,
                limit=decision.limit,
                retry_after=decision.retry_after,
                reset_at=decision.reset_at,
            )

        return Admitted(
            client=client,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_at=decision.reset_at,
        )
