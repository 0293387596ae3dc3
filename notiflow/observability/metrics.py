"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Event metrics
EVENTS_RECEIVED = Counter(
    "notiflow_events_received_total",
    "Total number of domain events received",
    ["event_type"],
)

EVENTS_PROCESSED = Counter(
    "notiflow_events_processed_total",
    "Total number of domain events processed",
    ["event_type", "status"],
)

# Notification metrics
NOTIFICATIONS_CREATED = Counter(
    "notiflow_notifications_created_total",
    "Total notifications persisted",
    ["type", "category"],
)

CHANNEL_DELIVERIES = Counter(
    "notiflow_channel_deliveries_total",
    "Channel delivery attempts by outcome",
    ["channel", "status"],
)

CHANNEL_LATENCY = Histogram(
    "notiflow_channel_latency_seconds",
    "Channel send latency in seconds",
    ["channel"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RATE_LIMITED = Counter(
    "notiflow_rate_limited_total",
    "Sends refused by a throttle window",
    ["channel", "window"],
)

SUPPRESSED = Counter(
    "notiflow_suppressed_total",
    "Sends skipped by user preferences",
    ["channel"],
)

# Sweep metrics
BATCHES_PROCESSED = Counter(
    "notiflow_batches_processed_total",
    "Batches handled by the batch sweep",
    ["outcome"],
)

SCHEDULES_PROCESSED = Counter(
    "notiflow_schedules_processed_total",
    "Scheduled notification runs",
    ["outcome"],
)

DIGESTS_SENT = Counter(
    "notiflow_digests_sent_total",
    "Digest emails by frequency and outcome",
    ["frequency", "status"],
)

PENDING_SCHEDULES = Gauge(
    "notiflow_pending_schedules",
    "Schedules due at the last sweep",
)
