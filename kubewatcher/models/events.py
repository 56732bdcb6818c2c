"""Change event data structures and enumerations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import uuid4


class ChangeType(StrEnum):
    """Kind of change reported to the notification sink."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ChangeEvent:
    """Canonical change notification.

    Produced by the event classifier, consumed by the notification sink.
    Immutable: no component may mutate a ChangeEvent after creation.
    """

    type: ChangeType
    kind: str
    name: str
    namespace: str
    observed_at: datetime
    resource_version: str
    actor: str = "unknown"
    cluster_name: str = ""
    event_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def resource(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"
