"""
monitor.py — File-system event source for aclsentry.

Uses the ``watchdog`` library to watch directory trees and converts raw
events into ``WatchEvent`` objects that are handed to a callback (the
watch loop's ``submit``).

Public API
----------
EventSource(roots, recursive)
    ``start(callback)`` schedules every root and starts the observer
    thread; ``stop()`` halts it.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Iterable

from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from aclsentry.events import EventKind, WatchEvent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Mapping watchdog event types → EventKind
# ---------------------------------------------------------------------------
_EVENT_MAP = {
    FileCreatedEvent: EventKind.CREATED,
    DirCreatedEvent: EventKind.CREATED,
    FileModifiedEvent: EventKind.MODIFIED,
    DirModifiedEvent: EventKind.MODIFIED,
    FileMovedEvent: EventKind.MOVED,
    DirMovedEvent: EventKind.MOVED,
}


class StartupError(RuntimeError):
    """The event source could not be started (missing root, registration failure)."""


def translate(event: FileSystemEvent, now: float | None = None) -> WatchEvent | None:
    """Convert a watchdog event into a :class:`WatchEvent`, or ``None`` if irrelevant."""
    kind = _EVENT_MAP.get(type(event))
    if kind is None:
        return None

    # For moved/renamed events, use the destination path
    path = getattr(event, "dest_path", None) or event.src_path
    if isinstance(path, bytes):
        path = os.fsdecode(path)

    return WatchEvent(
        path=path,
        kind=kind,
        observed_at=time.time() if now is None else now,
        is_directory=event.is_directory,
    )


class _WatchHandler(FileSystemEventHandler):
    """Translates watchdog events into WatchEvent callbacks."""

    def __init__(self, callback: Callable[[WatchEvent], None]) -> None:
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        watch_event = translate(event)
        if watch_event is None:
            return
        try:
            self._callback(watch_event)
        except Exception:
            logger.exception("Callback raised an exception for event: %s", watch_event)


class EventSource:
    """Owns a watchdog observer scheduled on one or more roots.

    Parameters:
        roots:     Directories to watch.  Every root must exist.
        recursive: Watch subdirectories recursively (default ``True``).
    """

    def __init__(self, roots: Iterable[str], recursive: bool = True) -> None:
        self.roots = [os.path.abspath(r) for r in roots]
        self.recursive = recursive
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self, callback: Callable[[WatchEvent], None]) -> None:
        """Start watching.  Does not block; raises :class:`StartupError` on failure."""
        if not self.roots:
            raise StartupError("No directories to watch.")
        for root in self.roots:
            if not os.path.isdir(root):
                raise StartupError(f"Watched root does not exist or is not a directory: {root}")

        handler = _WatchHandler(callback)
        observer = Observer()
        try:
            for root in self.roots:
                observer.schedule(handler, root, recursive=self.recursive)
                logger.info("Watching: %s (recursive=%s)", root, self.recursive)
            observer.daemon = True
            observer.start()
        except OSError as exc:
            raise StartupError(f"Cannot register for notifications: {exc}") from exc

        self._observer = observer
        logger.info("Monitor started.")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the observer thread."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None
            logger.info("Monitor stopped.")
