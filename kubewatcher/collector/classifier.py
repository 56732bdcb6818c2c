"""Event classifier and deduplicator.

Turns raw watch events into canonical :class:`ChangeEvent` instances.

The snapshot listing and the watch are not transactionally consistent:
objects captured by the listing are often replayed by the watch as ADDED,
and MODIFIED/DELETED events for changes that predate the watch arrive in
its first seconds.  The classifier suppresses both using the session's
snapshot map and a catch-up grace period measured from watch start, then
drops repeated deliveries through the session's :class:`DedupWindow`.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubewatcher.collector.dedup import DedupWindow, dedup_key
from kubewatcher.collector.source import STALE_REASONS, is_stale_message
from kubewatcher.models.events import ChangeEvent, ChangeType
from kubewatcher.models.resources import ResourceFilter, object_key
from kubewatcher.models.session import SessionState
from kubewatcher.observability.logging import get_logger
from kubewatcher.observability.metrics import (
    events_processed_total,
    events_received_total,
    events_skipped_total,
)

_DEFAULT_CATCH_UP_GRACE = timedelta(seconds=30)

_ANNOTATION_CHANGE_CAUSE = "kubernetes.io/change-cause"
_ANNOTATION_LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"
_LABEL_CREATED_BY = "app.kubernetes.io/created-by"


class StreamFailure(Exception):
    """An out-of-band failure Status arrived on the watch stream.

    The stream must be torn down and reopened; ``stale`` tells the
    reconnector whether the checkpoint itself was rejected.
    """

    def __init__(self, message: str, code: int | None = None, reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason
        self.stale = code == 410 or reason in STALE_REASONS or is_stale_message(message)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def extract_actor(metadata: dict[str, Any]) -> str:
    """Best-effort attribution of who changed an object.

    Precedence: ``app.kubernetes.io/created-by`` label, then the
    ``kubernetes.io/change-cause`` annotation, then "kubectl" when the
    last-applied annotation mentions it, then the most recent managedFields
    manager.  Returns "unknown" when nothing is available.
    """
    labels = metadata.get("labels")
    if isinstance(labels, dict) and labels.get(_LABEL_CREATED_BY):
        return str(labels[_LABEL_CREATED_BY])

    annotations = metadata.get("annotations")
    if isinstance(annotations, dict):
        if annotations.get(_ANNOTATION_CHANGE_CAUSE):
            return str(annotations[_ANNOTATION_CHANGE_CAUSE])
        if "kubectl" in str(annotations.get(_ANNOTATION_LAST_APPLIED, "")):
            return "kubectl"

    managed = metadata.get("managedFields")
    if isinstance(managed, list):
        for entry in reversed(managed):
            if isinstance(entry, dict) and entry.get("manager"):
                return str(entry["manager"])
    return "unknown"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a Kubernetes RFC 3339 timestamp (or pass through a datetime)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class EventClassifier:
    """Classifies one session's raw watch events, in delivery order.

    Mutates the session's checkpoint (resource version and snapshot map)
    as a side effect of every object event and bookmark.
    """

    def __init__(
        self,
        resource_filter: ResourceFilter,
        state: SessionState,
        dedup: DedupWindow,
        cluster_name: str = "",
        catch_up_grace: timedelta = _DEFAULT_CATCH_UP_GRACE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._filter = resource_filter
        self._state = state
        self._dedup = dedup
        self._cluster_name = cluster_name
        self._grace = catch_up_grace
        self._clock = clock
        self._label = resource_filter.label
        self._log = get_logger("collector.classifier").bind(filter=self._label)

    def classify(self, raw_event: Any) -> ChangeEvent | None:
        """Return a ChangeEvent to notify, or None if the event is suppressed.

        Raises:
            StreamFailure: the event is a failure Status; reconnect.
        """
        now = self._clock()
        state = self._state
        state.mark_traffic(now)
        state.events_received += 1
        events_received_total.labels(filter=self._label).inc()

        if not isinstance(raw_event, dict):
            return self._skip("malformed")

        event_type = str(raw_event.get("type", ""))
        obj = raw_event.get("object")

        if event_type == "ERROR" or (isinstance(obj, dict) and obj.get("kind") == "Status"):
            return self._handle_status(event_type, obj)

        if not isinstance(obj, dict):
            return self._skip("malformed")
        metadata = obj.get("metadata")
        if not isinstance(metadata, dict):
            return self._skip("malformed")

        if event_type == "BOOKMARK":
            rv = str(metadata.get("resourceVersion", "") or "")
            if rv:
                state.checkpoint.resource_version = rv
            return None

        name = str(metadata.get("name", "") or "")
        if not name:
            return self._skip("malformed")
        namespace = str(metadata.get("namespace", "") or "")
        version = str(metadata.get("resourceVersion", "") or "")

        if not self._filter.matches_name(name):
            return self._skip("name_mismatch")

        if version:
            state.checkpoint.resource_version = version

        key = object_key(namespace, name)
        elapsed = now - state.watch_started_at if state.watch_started_at else timedelta(0)
        in_catch_up = elapsed < self._grace

        if event_type == ChangeType.ADDED:
            previous = state.checkpoint.upsert(key, version, now)
            if previous is not None:
                return self._skip("snapshot_echo", key)
            if not self._is_new(metadata, elapsed):
                return self._skip("pre_existing", key)
        elif event_type == ChangeType.MODIFIED:
            previous = state.checkpoint.upsert(key, version, now)
            if in_catch_up:
                return self._skip("catch_up", key)
            if previous is not None and previous.version == version:
                return self._skip("unchanged_version", key)
        elif event_type == ChangeType.DELETED:
            state.checkpoint.snapshot.pop(key, None)
            if in_catch_up:
                return self._skip("catch_up", key)
        else:
            return self._skip("unknown_type")

        if not self._dedup.check_and_record(
            dedup_key(event_type, self._filter.kind, namespace, name, version, state.generation)
        ):
            return self._skip("duplicate", key)

        change = ChangeEvent(
            type=ChangeType(event_type),
            kind=self._filter.kind,
            name=name,
            namespace=namespace,
            observed_at=now,
            resource_version=version,
            actor=extract_actor(metadata),
            cluster_name=self._cluster_name,
        )
        state.events_processed += 1
        events_processed_total.labels(filter=self._label).inc()
        self._log.info(
            "change_detected",
            type=change.type.value,
            resource=change.resource,
            actor=change.actor,
            resource_version=version,
        )
        return change

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_new(self, metadata: dict[str, Any], elapsed: timedelta) -> bool:
        """Decide whether an ADDED object absent from the snapshot is genuinely new."""
        created = parse_timestamp(metadata.get("creationTimestamp"))
        started = self._state.watch_started_at
        if created is not None and started is not None:
            return created >= started - self._grace
        return elapsed > self._grace

    def _handle_status(self, event_type: str, obj: Any) -> None:
        status = obj if isinstance(obj, dict) else {}
        if event_type == "ERROR" or status.get("status") == "Failure":
            code = status.get("code")
            raise StreamFailure(
                str(status.get("message", "") or "watch stream reported failure"),
                code=code if isinstance(code, int) else None,
                reason=str(status.get("reason", "") or ""),
            )
        self._log.debug("status_event_ignored", status=status.get("status", ""))
        return None

    def _skip(self, reason: str, key: str = "") -> None:
        self._state.events_skipped += 1
        events_skipped_total.labels(filter=self._label, reason=reason).inc()
        self._log.debug("event_skipped", reason=reason, key=key)
        return None
