"""Prometheus metrics definitions for the stockstream client.

All metric objects are centralized here as module-level singletons.
Import what you need from anywhere in the codebase:

    from stockstream.common.metrics import WS_STATE, WS_MESSAGES_RECEIVED_TOTAL
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# ─── Connection Metrics ───

WS_STATE = Gauge(
    "stockstream_ws_state",
    "1 for the current connection state, 0 for all others",
    labelnames=["state"],
)

WS_TRANSITIONS_TOTAL = Counter(
    "stockstream_ws_transitions_total",
    "Connection state transitions",
    labelnames=["from_state", "to_state"],
)

WS_RECONNECT_ATTEMPTS_TOTAL = Counter(
    "stockstream_ws_reconnect_attempts_total",
    "Automatic reconnect attempts started",
)

WS_MESSAGES_RECEIVED_TOTAL = Counter(
    "stockstream_ws_messages_received_total",
    "Inbound push messages by event name",
    labelnames=["event"],
)

# ─── Update Bus Metrics ───

TICK_BATCHES_TOTAL = Counter(
    "stockstream_tick_batches_total",
    "Tick batches published on the update bus",
)

SNAPSHOT_SYMBOLS = Gauge(
    "stockstream_snapshot_symbols",
    "Symbols currently held in the tick snapshot",
)

# ─── Notification Metrics ───

NOTIFICATIONS_TOTAL = Counter(
    "stockstream_notifications_total",
    "Notification attempts by outcome",
    labelnames=["outcome"],
)

# ─── REST Metrics ───

API_REQUESTS_TOTAL = Counter(
    "stockstream_api_requests_total",
    "REST requests by method and status code",
    labelnames=["method", "status_code"],
)
