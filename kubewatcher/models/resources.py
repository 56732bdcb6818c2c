"""Resource filter and checkpoint data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


def object_key(namespace: str, name: str) -> str:
    """Return the snapshot key ``namespace/name`` for an object."""
    return f"{namespace}/{name}"


@dataclass(frozen=True)
class ResourceFilter:
    """One configured watch target.

    ``namespace=""`` watches every namespace; ``resource_name=""`` watches
    every object of ``kind`` in the namespace.
    """

    kind: str
    namespace: str = ""
    resource_name: str = ""

    @property
    def label(self) -> str:
        """Stable identifier used for logs, metrics, and the session registry."""
        ns = self.namespace or "*"
        if self.resource_name:
            return f"{self.kind}/{ns}/{self.resource_name}"
        return f"{self.kind}/{ns}"

    @property
    def field_selector(self) -> str:
        """Server-side field selector, or "" when the filter is not name-scoped."""
        if self.resource_name:
            return f"metadata.name={self.resource_name}"
        return ""

    def matches_name(self, name: str) -> bool:
        return not self.resource_name or name == self.resource_name


@dataclass
class SnapshotEntry:
    """Last tracked version of one object and when it was last observed."""

    version: str
    last_seen: datetime


@dataclass
class Checkpoint:
    """Resume point for a watch plus the baseline of already-known objects.

    Every key in ``snapshot`` was observed either in the initial listing or in
    a later ADDED/MODIFIED event.  Entries are evicted after a TTL by the
    health governor's janitor.
    """

    resource_version: str = ""
    snapshot: dict[str, SnapshotEntry] = field(default_factory=dict)

    def upsert(self, key: str, version: str, seen_at: datetime) -> SnapshotEntry | None:
        """Record *key* at *version*; return the previous entry, if any."""
        previous = self.snapshot.get(key)
        self.snapshot[key] = SnapshotEntry(version=version, last_seen=seen_at)
        return previous

    def clear(self) -> None:
        self.resource_version = ""
        self.snapshot.clear()
