"""Core data structures for kubewatcher."""

from kubewatcher.models.config import AppConfig, WatcherConfig
from kubewatcher.models.events import ChangeEvent, ChangeType
from kubewatcher.models.resources import (
    Checkpoint,
    ResourceFilter,
    SnapshotEntry,
    object_key,
)
from kubewatcher.models.session import SessionPhase, SessionState, SessionStateView

__all__ = [
    "AppConfig",
    "ChangeEvent",
    "ChangeType",
    "Checkpoint",
    "ResourceFilter",
    "SessionPhase",
    "SessionState",
    "SessionStateView",
    "SnapshotEntry",
    "WatcherConfig",
    "object_key",
]
