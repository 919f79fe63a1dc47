"""Prometheus metrics for notesync.

All metric objects are defined here so they can be imported from any module.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Optimistic sync metrics
# ---------------------------------------------------------------------------

SYNC_OPERATIONS = Counter(
    "notesync_sync_operations_total",
    "Total optimistic mutations by outcome",
    ["kind", "status"],  # status: confirmed, rolled_back, stale
)

SYNC_DURATION = Histogram(
    "notesync_sync_duration_seconds",
    "Time from local mutation to adapter confirmation or failure",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

STALE_CALLBACKS = Counter(
    "notesync_stale_callbacks_total",
    "Adapter callbacks discarded because a newer mutation was applied",
    ["kind"],
)

PENDING_OPERATIONS = Gauge(
    "notesync_pending_operations",
    "Number of optimistic mutations awaiting confirmation",
)

# ---------------------------------------------------------------------------
# Gesture metrics
# ---------------------------------------------------------------------------

GESTURES = Counter(
    "notesync_gestures_total",
    "Finished reorder gestures",
    ["modality", "outcome"],  # committed, cancelled
)

# ---------------------------------------------------------------------------
# Local cache metrics
# ---------------------------------------------------------------------------

STORAGE_ERRORS = Counter(
    "notesync_storage_errors_total",
    "Local cache read/write failures (degraded, never fatal)",
    ["operation"],  # read, write
)

# ---------------------------------------------------------------------------
# Record service HTTP metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS = Counter(
    "notesync_http_requests_total",
    "Total HTTP requests served by the record service",
    ["method", "endpoint", "status_code"],
)

HTTP_DURATION = Histogram(
    "notesync_http_request_duration_seconds",
    "Record service request duration in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)
