"""
Operational metrics for the credit ledger and billing reconciliation.

Counters are labelled by outcome so dashboards can separate duplicates and
drift from genuine failures.
"""

from prometheus_client import Counter, Histogram

API_ERRORS_TOTAL = Counter(
    "creditline_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)

# --- Ledger ---
LEDGER_MUTATIONS_TOTAL = Counter(
    "creditline_ledger_mutations_total",
    "Ledger balance mutations by transaction type and outcome",
    ["transaction_type", "outcome"],
)

# --- Webhooks ---
WEBHOOK_EVENTS_TOTAL = Counter(
    "creditline_webhook_events_total",
    "Gateway webhook events by provider, normalized type and outcome",
    ["provider", "event_type", "outcome"],
)

WEBHOOK_PROCESSING_SECONDS = Histogram(
    "creditline_webhook_processing_seconds",
    "Time spent processing a single gateway webhook event",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

# --- Seasonal campaigns ---
CAMPAIGN_ALLOCATIONS_TOTAL = Counter(
    "creditline_campaign_allocations_total",
    "Seasonal campaign tenant allocations by status",
    ["status"],
)

CREDITS_EXPIRED_TOTAL = Counter(
    "creditline_credits_expired_total",
    "Unused seasonal credits clawed back by the expiry sweep",
)
