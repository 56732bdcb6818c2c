"""Collector package for kubewatcher.

The watch session engine: turns Kubernetes list/watch streams into
deduplicated change events, one resumable session per resource filter.

Submodules
----------
source      -- ResourceSource protocol and the kubernetes_asyncio adapter.
backoff     -- Exponential and linear back-off policies.
snapshot    -- SnapshotLoader: paginated baseline listing with bounded retry.
dedup       -- DedupWindow: sliding-window suppression of repeated deliveries.
classifier  -- EventClassifier: snapshot echo / catch-up suppression, bookmarks.
health      -- HealthGovernor: heartbeat watchdog and state janitors.
gate        -- AdmissionGate: bounds concurrent snapshot loads at startup.
session     -- WatchSession: the per-filter reconnect state machine.
registry    -- SessionRegistry: lock-guarded diagnostics view.
engine      -- WatchEngine: spawns and shuts down all sessions.
"""

from kubewatcher.collector.engine import WatchEngine
from kubewatcher.collector.registry import SessionRegistry
from kubewatcher.collector.session import WatchSession

__all__ = ["SessionRegistry", "WatchEngine", "WatchSession"]
