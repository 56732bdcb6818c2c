"""Snapshot loader: paginated baseline listing with bounded retry.

A session must not open its first watch until a snapshot has been loaded;
the last object version seen during the listing becomes the checkpoint the
watch resumes from, so no change can slip between listing and watching.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubewatcher.collector.backoff import ExponentialBackoff
from kubewatcher.collector.source import ResourceSource
from kubewatcher.models.resources import ResourceFilter, SnapshotEntry, object_key
from kubewatcher.observability.logging import get_logger
from kubewatcher.observability.metrics import snapshot_loads_total

_DEFAULT_PAGE_SIZE: int = 500
_DEFAULT_PAGE_TIMEOUT_S: float = 30.0


class SnapshotLoadError(Exception):
    """Raised when the snapshot retry budget is exhausted."""

    def __init__(self, resource_filter: ResourceFilter, attempts: int, cause: BaseException) -> None:
        super().__init__(f"snapshot of {resource_filter.label} failed after {attempts} attempts: {cause}")
        self.resource_filter = resource_filter
        self.attempts = attempts
        self.cause = cause


@dataclass
class Snapshot:
    """Result of a successful listing."""

    resource_version: str = ""
    entries: dict[str, SnapshotEntry] = field(default_factory=dict)
    pages: int = 0


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SnapshotLoader:
    """Lists every object matching a filter, page by page.

    Any page failure restarts the whole load after an exponential back-off
    delay.  Each page fetch has its own timeout, independent of the retry
    budget.
    """

    def __init__(
        self,
        source: ResourceSource,
        page_size: int = _DEFAULT_PAGE_SIZE,
        page_timeout_s: float = _DEFAULT_PAGE_TIMEOUT_S,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._page_size = page_size
        self._page_timeout_s = page_timeout_s
        self._backoff = backoff or ExponentialBackoff()
        self._clock = clock
        self._sleep = sleep

    async def load(self, resource_filter: ResourceFilter) -> Snapshot:
        """Return a complete snapshot or raise :class:`SnapshotLoadError`."""
        log = get_logger("collector.snapshot").bind(filter=resource_filter.label)
        attempt = 0
        while True:
            try:
                snapshot = await self._load_once(resource_filter)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                snapshot_loads_total.labels(filter=resource_filter.label, outcome="error").inc()
                if self._backoff.exhausted(attempt):
                    log.error("snapshot_retries_exhausted", attempts=attempt + 1, error=str(exc))
                    raise SnapshotLoadError(resource_filter, attempt + 1, exc) from exc
                delay = self._backoff.delay(attempt)
                log.warning(
                    "snapshot_load_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    delay_s=round(delay, 2),
                )
                attempt += 1
                await self._sleep(delay)
                continue

            snapshot_loads_total.labels(filter=resource_filter.label, outcome="success").inc()
            log.info(
                "snapshot_loaded",
                objects=len(snapshot.entries),
                pages=snapshot.pages,
                resource_version=snapshot.resource_version,
            )
            return snapshot

    async def _load_once(self, resource_filter: ResourceFilter) -> Snapshot:
        snapshot = Snapshot()
        continue_token = ""
        while True:
            async with asyncio.timeout(self._page_timeout_s):
                page = await self._source.list_page(resource_filter, self._page_size, continue_token)
            snapshot.pages += 1

            now = self._clock()
            for item in page.items:
                metadata = item.get("metadata") if isinstance(item, dict) else None
                if not isinstance(metadata, dict) or not metadata.get("name"):
                    continue
                version = str(metadata.get("resourceVersion", ""))
                key = object_key(str(metadata.get("namespace", "")), str(metadata["name"]))
                snapshot.entries[key] = SnapshotEntry(version=version, last_seen=now)
                if version:
                    snapshot.resource_version = version

            if not page.continue_token:
                # An empty listing still has a list-level version to watch from.
                if not snapshot.resource_version:
                    snapshot.resource_version = page.resource_version
                return snapshot
            continue_token = page.continue_token
