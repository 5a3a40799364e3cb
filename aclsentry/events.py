"""
events.py — Shared event schema for aclsentry.

Defines the canonical WatchEvent dataclass that the monitoring layer emits
and the watch loop consumes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(str, Enum):
    """Notification kinds the watch loop understands."""

    CREATED = "created"
    MODIFIED = "modified"
    MOVED = "moved"


@dataclass(frozen=True)
class WatchEvent:
    """Represents a single file-system notification captured by the monitor.

    Attributes:
        path:         Absolute path of the affected entry (destination path
                      for moves).
        kind:         One of the :class:`EventKind` values.
        observed_at:  Unix epoch time when the notification was received.
        is_directory: Whether the event source reported a directory.
    """

    path: str
    kind: EventKind
    observed_at: float
    is_directory: bool = False
