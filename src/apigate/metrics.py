"""Prometheus counters for gateway side channels."""

from prometheus_client import Counter

AUTH_VERDICTS_TOTAL = Counter(
    "apigate_auth_verdicts_total",
    "Authentication verdicts produced at the request boundary",
    ["verdict"],
)

RATE_LIMITER_STORE_ERRORS_TOTAL = Counter(
    "apigate_rate_limiter_store_errors_total",
    "Counter store failures resolved by the configured failure mode",
    ["failure_mode"],
)

USAGE_RECORDS_DROPPED_TOTAL = Counter(
    "apigate_usage_records_dropped_total",
    "Usage records dropped because the recorder buffer was full",
)

USAGE_SINK_ERRORS_TOTAL = Counter(
    "apigate_usage_sink_errors_total",
    "Usage record batches that failed to persist",
)

WEBHOOK_ATTEMPTS_TOTAL = Counter(
    "apigate_webhook_attempts_total",
    "Webhook delivery attempts",
    ["outcome"],
)

WEBHOOK_EXHAUSTED_TOTAL = Counter(
    "apigate_webhook_exhausted_total",
    "Webhook deliveries that exhausted every retry",
)

WEBHOOK_EVENTS_ABANDONED_TOTAL = Counter(
    "apigate_webhook_events_abandoned_total",
    "Events given up before every subscription was attempted (lookup failures, shutdown)",
)
