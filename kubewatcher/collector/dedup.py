"""Sliding-window deduplication of watch events.

The dedup key is the 6-tuple
``(event_type, kind, namespace, name, resource_version, generation)``.
``generation`` advances on every hard reset, so deliveries replayed after
a full resync are never confused with those of the previous checkpoint.
State is held in-process and owned by a single session.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

_DEFAULT_WINDOW = timedelta(hours=1)

DedupKey = tuple[str, str, str, str, str, int]


def dedup_key(
    event_type: str,
    kind: str,
    namespace: str,
    name: str,
    resource_version: str,
    generation: int,
) -> DedupKey:
    return (event_type, kind, namespace, name, resource_version, generation)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class DedupWindow:
    """Suppresses identical events observed within ``window``."""

    def __init__(
        self,
        window: timedelta = _DEFAULT_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._window = window
        self._clock = clock
        # key -> first observed timestamp (UTC)
        self._seen: dict[DedupKey, datetime] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    @property
    def window(self) -> timedelta:
        return self._window

    def check_and_record(self, key: DedupKey) -> bool:
        """Return True if *key* is new (and record it), False if it is a duplicate."""
        now = self._clock()
        observed = self._seen.get(key)
        if observed is not None and (now - observed) < self._window:
            return False
        self._seen[key] = now
        return True

    def evict_expired(self) -> int:
        """Drop entries older than the window; return how many were removed."""
        cutoff = self._clock() - self._window
        expired = [key for key, observed in self._seen.items() if observed < cutoff]
        for key in expired:
            del self._seen[key]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()
