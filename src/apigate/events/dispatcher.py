"""Webhook delivery with bounded concurrency, retries and attempt logging.

``dispatch`` only enqueues; worker tasks fetch matching subscriptions, sign
the envelope and deliver to each subscription concurrently. Every attempt is
appended to the delivery log. A subscription that exhausts its attempts is
flagged for attention, never disabled.

Guarantees are at-least-once per subscription per event, with no ordering
across events. A retry after a timeout may duplicate a delivery the receiver
already accepted, so receivers dedupe on the ``X-Webhook-Id`` header.

An event whose subscriptions cannot be looked up is re-queued with backoff.
``stop`` drains the queue for a grace period; anything still unfinished is
logged by event id and counted as abandoned.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from apigate.events.registry import DeliveryLog, WebhookRegistry
from apigate.events.signer import (
    ATTEMPT_HEADER,
    EVENT_HEADER,
    EVENT_ID_HEADER,
    SIGNATURE_HEADER,
    build_envelope,
    canonical_body,
    sign_payload,
)
from apigate.metrics import (
    WEBHOOK_ATTEMPTS_TOTAL,
    WEBHOOK_EVENTS_ABANDONED_TOTAL,
    WEBHOOK_EXHAUSTED_TOTAL,
)
from apigate.models.enums import DeliveryState
from apigate.models.webhook import DeliveryAttempt, DeliveryResult, WebhookSubscription
from apigate.services.id_generator import generate_id

logger = logging.getLogger(__name__)

_USER_AGENT = "apigate-webhooks/1.0"


class InvalidTransitionError(RuntimeError):
    pass


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Delay before the attempt after ``attempt``: base doubling, capped."""
    return min(cap, base * (2 ** (attempt - 1)))


@dataclass
class Delivery:
    """Per-subscription delivery state machine.

    PENDING -> ATTEMPTING -> SUCCEEDED
                          -> RETRYING -> ATTEMPTING ...
                          -> EXHAUSTED
    """

    subscription_id: str
    event_id: str
    max_attempts: int
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_status: int | None = None
    last_error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (DeliveryState.SUCCEEDED, DeliveryState.EXHAUSTED)

    def begin_attempt(self) -> int:
        if self.state not in (DeliveryState.PENDING, DeliveryState.RETRYING):
            raise InvalidTransitionError(f"cannot attempt from {self.state}")
        self.state = DeliveryState.ATTEMPTING
        self.attempts += 1
        return self.attempts

    def succeed(self, status_code: int) -> DeliveryState:
        self._require_attempting()
        self.last_status = status_code
        self.last_error = None
        self.state = DeliveryState.SUCCEEDED
        return self.state

    def fail(self, status_code: int | None, error: str) -> DeliveryState:
        self._require_attempting()
        self.last_status = status_code
        self.last_error = error
        if self.attempts >= self.max_attempts:
            self.state = DeliveryState.EXHAUSTED
        else:
            self.state = DeliveryState.RETRYING
        return self.state

    def _require_attempting(self) -> None:
        if self.state is not DeliveryState.ATTEMPTING:
            raise InvalidTransitionError(f"no attempt in progress ({self.state})")


@dataclass
class _DispatchJob:
    event_id: str
    workspace_id: str
    event_type: str
    payload: dict[str, Any]
    timestamp: datetime
    # Times subscription lookup has failed for this event
    lookup_failures: int = 0


class WebhookDispatcher:
    """Fan-out of events to webhook subscribers."""

    def __init__(
        self,
        registry: WebhookRegistry,
        delivery_log: DeliveryLog,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        timeout: float = 10.0,
        max_in_flight: int = 10,
        workers: int = 4,
        queue_size: int = 10_000,
        shutdown_grace: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.delivery_log = delivery_log
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.shutdown_grace = shutdown_grace
        self._client = http_client
        self._owns_client = http_client is None
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._worker_count = workers
        self._queue: asyncio.Queue[_DispatchJob] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._in_progress: dict[int, str] = {}
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._workers:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._worker_count)
        ]
        logger.info("Webhook dispatcher started (workers=%d)", self._worker_count)

    async def join(self) -> None:
        """Wait until every enqueued event has been fully processed."""
        await self._queue.join()

    async def stop(self, grace: float | None = None) -> list[str]:
        """Drain the queue for up to ``grace`` seconds, then cancel the workers.

        Returns the ids of events that were still queued or mid-delivery when
        the workers were cancelled.
        """
        grace = self.shutdown_grace if grace is None else grace
        if self._workers and grace > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Webhook queue not drained after %.1fs", grace)

        abandoned = list(self._in_progress.values())
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._in_progress.clear()
        while not self._queue.empty():
            abandoned.append(self._queue.get_nowait().event_id)
            self._queue.task_done()
        abandoned = list(dict.fromkeys(abandoned))

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        if abandoned:
            WEBHOOK_EVENTS_ABANDONED_TOTAL.inc(len(abandoned))
            logger.error(
                "webhook_events_abandoned",
                extra={"count": len(abandoned), "event_ids": abandoned},
            )
        logger.info("Webhook dispatcher stopped (abandoned=%d)", len(abandoned))
        return abandoned

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch(self, workspace_id: str, event_type: str, payload: dict[str, Any]) -> str:
        """Enqueue an event for asynchronous delivery and return its event id.

        Only waits when the queue is full, which bounds memory instead of
        dropping events.
        """
        job = _DispatchJob(
            event_id=generate_id("evt_"),
            workspace_id=workspace_id,
            event_type=event_type,
            payload=payload,
            timestamp=datetime.now(timezone.utc),
        )
        await self._queue.put(job)
        logger.debug("Enqueued %s (%s) for workspace %s", job.event_id, event_type, workspace_id)
        return job.event_id

    async def deliver_event(
        self,
        workspace_id: str,
        event_type: str,
        payload: dict[str, Any],
        event_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> list[DeliveryResult]:
        """Deliver one event to every matching subscription and wait for the outcome."""
        event_id = event_id or generate_id("evt_")
        subscriptions = await self.registry.find_active_subscriptions(workspace_id, event_type)
        if not subscriptions:
            logger.debug("No subscribers for %s in workspace %s", event_type, workspace_id)
            return []

        envelope = build_envelope(event_type, payload, timestamp or datetime.now(timezone.utc))
        body = canonical_body(envelope)
        outcomes = await asyncio.gather(
            *(self._deliver(sub, event_id, event_type, body) for sub in subscriptions),
            return_exceptions=True,
        )

        results: list[DeliveryResult] = []
        for sub, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    "Webhook delivery of %s to %s aborted: %r",
                    event_id,
                    sub.subscription_id,
                    outcome,
                )
                outcome = DeliveryResult(
                    subscription_id=sub.subscription_id,
                    event_id=event_id,
                    succeeded=False,
                    attempts=0,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            results.append(outcome)
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._in_progress[index] = job.event_id
            try:
                await self.deliver_event(
                    job.workspace_id,
                    job.event_type,
                    job.payload,
                    event_id=job.event_id,
                    timestamp=job.timestamp,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Webhook worker %d failed to process event %s (%s)",
                    index,
                    job.event_id,
                    job.event_type,
                )
                await self._requeue(job)
            finally:
                self._in_progress.pop(index, None)
                self._queue.task_done()

    async def _requeue(self, job: _DispatchJob) -> None:
        """Put an event back after its subscriptions could not be resolved."""
        job.lookup_failures += 1
        if job.lookup_failures >= self.max_attempts:
            WEBHOOK_EVENTS_ABANDONED_TOTAL.inc()
            logger.error(
                "webhook_event_abandoned",
                extra={
                    "event_id": job.event_id,
                    "event_type": job.event_type,
                    "workspace_id": job.workspace_id,
                    "lookup_failures": job.lookup_failures,
                },
            )
            return
        await self._sleep(compute_backoff(job.lookup_failures, self.backoff_base, self.backoff_max))
        try:
            # Re-put before task_done so join() keeps waiting for this event
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            WEBHOOK_EVENTS_ABANDONED_TOTAL.inc()
            logger.error(
                "webhook_event_abandoned",
                extra={"event_id": job.event_id, "reason": "queue full on retry"},
            )

    async def _deliver(
        self,
        subscription: WebhookSubscription,
        event_id: str,
        event_type: str,
        body: bytes,
    ) -> DeliveryResult:
        delivery = Delivery(
            subscription_id=subscription.subscription_id,
            event_id=event_id,
            max_attempts=self.max_attempts,
        )
        signature = sign_payload(subscription.secret, body)

        while not delivery.terminal:
            attempt = delivery.begin_attempt()
            status_code, error = await self._attempt(
                subscription, body, signature, event_id, event_type, attempt
            )
            succeeded = error is None
            await self._append_attempt(
                DeliveryAttempt(
                    subscription_id=subscription.subscription_id,
                    event_id=event_id,
                    event_type=event_type,
                    attempt=attempt,
                    status_code=status_code,
                    error=error,
                    succeeded=succeeded,
                )
            )
            WEBHOOK_ATTEMPTS_TOTAL.labels(outcome="success" if succeeded else "failure").inc()

            if succeeded:
                delivery.succeed(status_code)
            elif delivery.fail(status_code, error) is DeliveryState.RETRYING:
                delay = compute_backoff(attempt, self.backoff_base, self.backoff_max)
                logger.info(
                    "Webhook %s to %s failed (attempt %d/%d: %s), retrying in %.1fs",
                    event_id,
                    subscription.subscription_id,
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                await self._sleep(delay)

        if delivery.state is DeliveryState.EXHAUSTED:
            await self._mark_exhausted(subscription, delivery, event_type)

        return DeliveryResult(
            subscription_id=subscription.subscription_id,
            event_id=event_id,
            succeeded=delivery.state is DeliveryState.SUCCEEDED,
            attempts=delivery.attempts,
            status_code=delivery.last_status,
            error=delivery.last_error,
        )

    async def _attempt(
        self,
        subscription: WebhookSubscription,
        body: bytes,
        signature: str,
        event_id: str,
        event_type: str,
        attempt: int,
    ) -> tuple[int | None, str | None]:
        """POST once. Returns (status_code, error); error is None on 2xx."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: event_type,
            EVENT_ID_HEADER: event_id,
            ATTEMPT_HEADER: str(attempt),
        }
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

        async with self._semaphore:
            try:
                # httpx timeouts are per phase; wait_for bounds the whole exchange
                response = await asyncio.wait_for(
                    self._client.post(
                        subscription.url, content=body, headers=headers, timeout=self.timeout
                    ),
                    timeout=self.timeout,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
                return None, f"timeout: {type(exc).__name__}"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                return None, f"{type(exc).__name__}: {exc}"
            except Exception as exc:
                logger.warning(
                    "Unexpected error delivering %s to %s: %r",
                    event_id,
                    subscription.subscription_id,
                    exc,
                )
                return None, f"{type(exc).__name__}: {exc}"

        if 200 <= response.status_code < 300:
            return response.status_code, None
        return response.status_code, f"HTTP {response.status_code}"

    async def _append_attempt(self, attempt: DeliveryAttempt) -> None:
        try:
            await self.delivery_log.append(attempt)
        except Exception as exc:
            logger.warning(
                "Failed to log delivery attempt %d for %s: %s",
                attempt.attempt,
                attempt.subscription_id,
                exc,
            )

    async def _mark_exhausted(
        self, subscription: WebhookSubscription, delivery: Delivery, event_type: str
    ) -> None:
        WEBHOOK_EXHAUSTED_TOTAL.inc()
        reason = (
            f"{event_type} {delivery.event_id} failed after {delivery.attempts} attempts: "
            f"{delivery.last_error}"
        )
        logger.error(
            "webhook_delivery_exhausted",
            extra={
                "subscription_id": subscription.subscription_id,
                "event_id": delivery.event_id,
                "event_type": event_type,
                "attempts": delivery.attempts,
                "last_status": delivery.last_status,
                "last_error": delivery.last_error,
            },
        )
        try:
            await self.registry.mark_needs_attention(subscription.subscription_id, reason)
        except Exception as exc:
            logger.warning(
                "Failed to flag subscription %s for attention: %s",
                subscription.subscription_id,
                exc,
            )
