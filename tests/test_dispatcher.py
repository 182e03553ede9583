"""Tests for webhook delivery, retries and the delivery state machine."""

import asyncio
import json

import httpx
import pytest

from apigate.events.dispatcher import (
    Delivery,
    InvalidTransitionError,
    WebhookDispatcher,
    compute_backoff,
)
from apigate.events.registry import InMemoryDeliveryLog, InMemoryWebhookRegistry
from apigate.events.signer import verify_signature
from apigate.models.enums import DeliveryState
from apigate.models.webhook import WebhookSubscription


def _sub(sub_id: str, **overrides) -> WebhookSubscription:
    fields = {
        "subscription_id": sub_id,
        "workspace_id": "ws1",
        "url": f"https://{sub_id}.example.com/hook",
        "secret": f"secret-{sub_id}",
        "event_types": ["task.created"],
    }
    fields.update(overrides)
    return WebhookSubscription(**fields)


class Receiver:
    """Fake subscriber endpoints keyed by host; each host replays a script of responses."""

    def __init__(self, scripts: dict[str, list] | None = None, default: int = 200) -> None:
        self.scripts = scripts or {}
        self.default = default
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self.scripts.get(request.url.host, [])
        outcome = script.pop(0) if script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.requests]


@pytest.fixture
def registry():
    return InMemoryWebhookRegistry()


@pytest.fixture
def log():
    return InMemoryDeliveryLog()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_dispatcher(registry, log, sleeps):
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(receiver: Receiver, **kwargs) -> WebhookDispatcher:
        kwargs.setdefault("max_attempts", 5)
        return WebhookDispatcher(
            registry,
            log,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(receiver)),
            backoff_base=1.0,
            backoff_max=8.0,
            sleep=fake_sleep,
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# State machine and backoff
# ---------------------------------------------------------------------------


def test_backoff_doubles_and_caps():
    assert [compute_backoff(n, 1.0, 8.0) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]


def test_delivery_state_machine_success_path():
    d = Delivery(subscription_id="a", event_id="evt_1", max_attempts=3)
    assert d.state is DeliveryState.PENDING
    assert d.begin_attempt() == 1
    assert d.state is DeliveryState.ATTEMPTING
    assert d.fail(500, "HTTP 500") is DeliveryState.RETRYING
    assert d.begin_attempt() == 2
    assert d.succeed(200) is DeliveryState.SUCCEEDED
    assert d.terminal
    assert d.last_error is None


def test_delivery_state_machine_exhausts():
    d = Delivery(subscription_id="a", event_id="evt_1", max_attempts=2)
    d.begin_attempt()
    d.fail(None, "timeout")
    d.begin_attempt()
    assert d.fail(503, "HTTP 503") is DeliveryState.EXHAUSTED
    with pytest.raises(InvalidTransitionError):
        d.begin_attempt()


def test_delivery_rejects_outcome_without_attempt():
    d = Delivery(subscription_id="a", event_id="evt_1", max_attempts=2)
    with pytest.raises(InvalidTransitionError):
        d.succeed(200)


def test_max_attempts_must_be_positive(registry, log):
    with pytest.raises(ValueError):
        WebhookDispatcher(registry, log, max_attempts=0)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def test_delivers_only_to_active_matching_subscriptions(make_dispatcher, registry, log):
    registry.register(_sub("one"))
    registry.register(_sub("two"))
    registry.register(_sub("off", active=False))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver)

    results = await dispatcher.deliver_event("ws1", "task.created", {"task_id": "t1"})

    assert sorted(receiver.hosts()) == ["one.example.com", "two.example.com"]
    assert len(log.attempts) == 2
    assert all(r.succeeded and r.attempts == 1 for r in results)


async def test_request_carries_signed_body_and_headers(make_dispatcher, registry):
    registry.register(_sub("one"))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver)

    [result] = await dispatcher.deliver_event("ws1", "task.created", {"task_id": "t1"})

    request = receiver.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Webhook-Event"] == "task.created"
    assert request.headers["X-Webhook-Id"] == result.event_id
    assert request.headers["X-Webhook-Attempt"] == "1"
    assert request.headers["Content-Type"] == "application/json"
    assert verify_signature("secret-one", request.content, request.headers["X-Webhook-Signature"])
    body = json.loads(request.content)
    assert body["event"] == "task.created"
    assert body["data"] == {"task_id": "t1"}
    assert "timestamp" in body


async def test_fails_twice_then_succeeds(make_dispatcher, registry, log, sleeps):
    registry.register(_sub("flaky"))
    receiver = Receiver({"flaky.example.com": [500, httpx.ConnectError("refused"), 200]})
    dispatcher = make_dispatcher(receiver)

    [result] = await dispatcher.deliver_event("ws1", "task.created", {})

    assert result.succeeded
    assert result.attempts == 3
    attempts = log.for_subscription("flaky")
    assert [a.attempt for a in attempts] == [1, 2, 3]
    assert [a.succeeded for a in attempts] == [False, False, True]
    assert attempts[0].status_code == 500
    assert attempts[1].status_code is None
    assert "ConnectError" in attempts[1].error
    assert sleeps == [1.0, 2.0]
    assert [r.headers["X-Webhook-Attempt"] for r in receiver.requests] == ["1", "2", "3"]
    assert not registry.get("flaky").needs_attention


async def test_always_failing_endpoint_exhausts_and_is_flagged(make_dispatcher, registry, log):
    registry.register(_sub("dead"))
    receiver = Receiver(default=503)
    dispatcher = make_dispatcher(receiver, max_attempts=4)

    [result] = await dispatcher.deliver_event("ws1", "task.created", {})

    assert not result.succeeded
    assert result.attempts == 4
    assert len(log.for_subscription("dead")) == 4
    assert len(receiver.requests) == 4
    flagged = registry.get("dead")
    assert flagged.needs_attention
    assert flagged.active
    assert "HTTP 503" in flagged.attention_reason


async def test_timeout_counts_as_failed_attempt(make_dispatcher, registry, log):
    registry.register(_sub("slow"))
    receiver = Receiver({"slow.example.com": [httpx.ReadTimeout("timed out"), 204]})
    dispatcher = make_dispatcher(receiver)

    [result] = await dispatcher.deliver_event("ws1", "task.created", {})

    assert result.succeeded
    assert result.status_code == 204
    assert log.attempts[0].error.startswith("timeout")


async def test_one_failing_subscriber_does_not_affect_others(make_dispatcher, registry, log):
    registry.register(_sub("good"))
    registry.register(_sub("bad"))
    receiver = Receiver({"bad.example.com": [500] * 10})
    dispatcher = make_dispatcher(receiver, max_attempts=2)

    results = {r.subscription_id: r for r in await dispatcher.deliver_event("ws1", "task.created", {})}

    assert results["good"].succeeded
    assert not results["bad"].succeeded
    assert len(log.for_subscription("good")) == 1
    assert len(log.for_subscription("bad")) == 2


async def test_no_subscribers_makes_no_requests(make_dispatcher, log):
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver)
    assert await dispatcher.deliver_event("ws1", "task.created", {}) == []
    assert receiver.requests == []
    assert log.attempts == []


async def test_delivery_log_failure_does_not_stop_delivery(make_dispatcher, registry):
    class BrokenLog:
        async def append(self, attempt) -> None:
            raise RuntimeError("log down")

    registry.register(_sub("one"))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver)
    dispatcher.delivery_log = BrokenLog()

    [result] = await dispatcher.deliver_event("ws1", "task.created", {})
    assert result.succeeded


async def test_in_flight_requests_are_bounded(registry, log):
    for i in range(6):
        registry.register(_sub(f"s{i}"))
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(
        registry,
        log,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_in_flight=2,
    )
    results = await dispatcher.deliver_event("ws1", "task.created", {})

    assert len(results) == 6
    assert peak == 2


# ---------------------------------------------------------------------------
# Queue hand-off
# ---------------------------------------------------------------------------


async def test_dispatch_enqueues_and_workers_deliver(make_dispatcher, registry, log):
    registry.register(_sub("one"))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver, workers=2)

    event_id = await dispatcher.dispatch("ws1", "task.created", {"task_id": "t1"})
    assert dispatcher.pending == 1
    assert receiver.requests == []

    dispatcher.start()
    try:
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    assert event_id.startswith("evt_")
    assert [a.event_id for a in log.attempts] == [event_id]


async def test_registry_outage_requeues_event_with_backoff(make_dispatcher, log, sleeps):
    class FlakyRegistry(InMemoryWebhookRegistry):
        calls = 0

        async def find_active_subscriptions(self, workspace_id, event_type):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("db down")
            return await super().find_active_subscriptions(workspace_id, event_type)

    registry = FlakyRegistry()
    registry.register(_sub("one"))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver, workers=1)
    dispatcher.registry = registry

    dispatcher.start()
    try:
        await dispatcher.dispatch("ws1", "task.created", {"n": 1})
        await dispatcher.dispatch("ws1", "task.created", {"n": 2})
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    delivered = sorted(json.loads(r.content)["data"]["n"] for r in receiver.requests)
    assert delivered == [1, 2]
    assert sleeps == [1.0]


async def test_event_is_abandoned_after_repeated_lookup_failures(make_dispatcher, log):
    class DownRegistry(InMemoryWebhookRegistry):
        async def find_active_subscriptions(self, workspace_id, event_type):
            raise RuntimeError("db down")

    receiver = Receiver()
    dispatcher = make_dispatcher(receiver, workers=1, max_attempts=3)
    dispatcher.registry = DownRegistry()

    dispatcher.start()
    try:
        await dispatcher.dispatch("ws1", "task.created", {})
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    assert dispatcher.pending == 0
    assert receiver.requests == []


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


async def test_unparseable_url_is_a_failed_attempt(make_dispatcher, registry, log):
    registry.register(_sub("bad", url="http://[::1/hook"))
    registry.register(_sub("good"))
    receiver = Receiver()
    dispatcher = make_dispatcher(receiver, max_attempts=2)

    results = {r.subscription_id: r for r in await dispatcher.deliver_event("ws1", "task.created", {})}

    assert results["good"].succeeded
    assert not results["bad"].succeeded
    assert results["bad"].attempts == 2
    bad_attempts = log.for_subscription("bad")
    assert [a.attempt for a in bad_attempts] == [1, 2]
    assert all(a.status_code is None and a.error for a in bad_attempts)
    assert registry.get("bad").needs_attention


async def test_hung_subscriber_is_cut_off_at_timeout(registry, log):
    registry.register(_sub("slow"))

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(30)
        return httpx.Response(200)

    async def no_sleep(delay: float) -> None:
        pass

    dispatcher = WebhookDispatcher(
        registry,
        log,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_attempts=2,
        timeout=0.05,
        sleep=no_sleep,
    )

    [result] = await asyncio.wait_for(
        dispatcher.deliver_event("ws1", "task.created", {}), timeout=5
    )

    assert not result.succeeded
    assert [a.error.startswith("timeout") for a in log.attempts] == [True, True]


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


async def test_stop_drains_queued_events_within_grace(registry, log):
    registry.register(_sub("one"))

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.05)
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(
        registry,
        log,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        workers=1,
    )
    dispatcher.start()
    event_ids = [await dispatcher.dispatch("ws1", "task.created", {"n": n}) for n in range(3)]
    await asyncio.sleep(0.01)

    abandoned = await dispatcher.stop(grace=5)

    assert abandoned == []
    assert sorted(a.event_id for a in log.attempts) == sorted(event_ids)


async def test_stop_reports_unfinished_events_after_grace(registry, log):
    registry.register(_sub("one"))
    entered = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await asyncio.sleep(30)
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(
        registry,
        log,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        workers=1,
        timeout=60,
    )
    dispatcher.start()
    first = await dispatcher.dispatch("ws1", "task.created", {"n": 1})
    second = await dispatcher.dispatch("ws1", "task.created", {"n": 2})
    await asyncio.wait_for(entered.wait(), timeout=5)

    abandoned = await dispatcher.stop(grace=0.05)

    assert abandoned == [first, second]
    assert dispatcher.pending == 0
