from __future__ import annotations

from prometheus_client import Counter

subscriptions_created_total = Counter(
    "subscriptions_created_total",
    "Subscriptions created against the payment processor, by local status.",
    ["status"],
)
payment_retries_total = Counter(
    "subscription_payment_retries_total",
    "Retried pending payments, by resulting payment status.",
    ["outcome"],
)
stripe_errors_total = Counter(
    "stripe_errors_total",
    "Stripe calls that raised, by action and retryability.",
    ["action", "retryable"],
)
billing_sync_failures_total = Counter(
    "billing_sync_failures_total",
    "Best-effort billing detail pushes to Stripe that failed.",
)
webhook_events_total = Counter(
    "stripe_webhook_events_total",
    "Stripe webhook events received, by type and handling result.",
    ["event_type", "result"],
)
subscriptions_cancelled_total = Counter(
    "subscriptions_cancelled_total",
    "User cancellations of live subscriptions, by mode.",
    ["mode"],
)
