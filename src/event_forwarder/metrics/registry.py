"""
Prometheus metrics for the forwarder.
Registered in the global REGISTRY on import.
"""

from prometheus_client import Counter, Gauge, Histogram


EVENTS_SENT_TOTAL = Counter(
    "forwarder_events_sent_total",
    "Events handed to the sink",
    ["stream", "status"],  # stream: main|session, status: success|failure|skipped|dry_run
)

EVENT_SEND_LATENCY = Histogram(
    "forwarder_event_send_latency_seconds",
    "Sink delivery latency in seconds",
    ["stream"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

MAIN_STREAM_RECONNECTS_TOTAL = Counter(
    "forwarder_main_stream_reconnects_total",
    "Main stream reopened after an error",
    ["reason"],
)

SESSION_RETRIES_TOTAL = Counter(
    "forwarder_session_retries_total",
    "Session replay retries after connectivity failures",
)

SESSIONS_FINISHED_TOTAL = Counter(
    "forwarder_sessions_finished_total",
    "Session replay tasks by outcome",
    ["outcome"],  # completed|abandoned|failed
)

SESSIONS_ACTIVE = Gauge(
    "forwarder_sessions_active",
    "Session replay tasks currently holding a slot",
)

SESSION_QUEUE_DEPTH = Gauge(
    "forwarder_session_queue_depth",
    "Sessions waiting for a replay slot",
)


class MetricsRegistry:
    """Centralized access to forwarder metrics."""

    events_sent_total = EVENTS_SENT_TOTAL
    event_send_latency = EVENT_SEND_LATENCY
    main_stream_reconnects_total = MAIN_STREAM_RECONNECTS_TOTAL
    session_retries_total = SESSION_RETRIES_TOTAL
    sessions_finished_total = SESSIONS_FINISHED_TOTAL
    sessions_active = SESSIONS_ACTIVE
    session_queue_depth = SESSION_QUEUE_DEPTH


# Singleton instance
metrics_registry = MetricsRegistry()
