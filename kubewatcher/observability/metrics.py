"""Prometheus metrics for kubewatcher.

All counters are module-level singletons registered on the default
registry.  The ``filter`` label is the session label (``Kind/namespace`` or
``Kind/namespace/name``).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# ---------------------------------------------------------------------------
# Watch session engine
# ---------------------------------------------------------------------------

events_received_total = Counter(
    "kubewatcher_events_received_total",
    "Raw watch events received (including bookmarks).",
    ["filter"],
)

events_processed_total = Counter(
    "kubewatcher_events_processed_total",
    "Watch events turned into change notifications.",
    ["filter"],
)

events_skipped_total = Counter(
    "kubewatcher_events_skipped_total",
    "Watch events suppressed before notification.",
    ["filter", "reason"],
)

watch_errors_total = Counter(
    "kubewatcher_watch_errors_total",
    "Watch open or stream failures.",
    ["filter"],
)

watch_reconnects_total = Counter(
    "kubewatcher_watch_reconnects_total",
    "Watch reconnects by cause.",
    ["filter", "reason"],
)

hard_resets_total = Counter(
    "kubewatcher_hard_resets_total",
    "Checkpoint resets followed by a full snapshot reload.",
    ["filter", "reason"],
)

snapshot_loads_total = Counter(
    "kubewatcher_snapshot_loads_total",
    "Snapshot load attempts by outcome.",
    ["filter", "outcome"],
)

active_sessions = Gauge(
    "kubewatcher_active_sessions",
    "Watch sessions currently registered.",
)

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

notifications_total = Counter(
    "kubewatcher_notifications_total",
    "Notification deliveries by channel and outcome.",
    ["channel", "success"],
)
