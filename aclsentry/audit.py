"""
audit.py — Rotating audit log for aclsentry.

Every mutation and every failure is appended to a plain UTF-8 text file,
one record per line::

    2024-05-01 13:37:00 - Updated permissions for: /watch/a/b/new.txt

Before each append the active file's size is checked; once it reaches
``max_bytes`` it is renamed to ``<stem>_<YYYYMMDD_HHMMSS><suffix>`` and a
fresh file is started at the original path.  Rotation and append happen
in one critical section guarded by a thread lock and an exclusive
``flock`` on a ``.lock`` sidecar, so neither concurrent threads nor
several daemon processes can interleave or lose records.

Logging failures never propagate: the record goes to the console
fallback sink instead and :meth:`AuditLog.record` returns ``False``.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, TextIO

from aclsentry.console import ConsoleSink, Severity, fallback_sink

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
ARCHIVE_STAMP_FORMAT = "%Y%m%d_%H%M%S"
_LOCK_SUFFIX = ".lock"


def format_record(when: datetime, message: str) -> str:
    return f"{when.strftime(TIMESTAMP_FORMAT)} - {message}"


def archive_path_for(path: Path, when: datetime) -> Path:
    """Return a free archive name for *path* stamped with *when*."""
    stamp = when.strftime(ARCHIVE_STAMP_FORMAT)
    candidate = path.with_name(f"{path.stem}_{stamp}{path.suffix}")
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem}_{stamp}-{counter}{path.suffix}")
        counter += 1
    return candidate


class AuditLog:
    """Append-only, size-bounded, rotating record of actions and failures.

    Parameters:
        path:      Active log file.  Parent directories are created.
        max_bytes: Rotation ceiling in bytes (default 50 MiB).
        console:   Optional sink every record is mirrored to.
        fallback:  Sink used when the file cannot be written.
        clock:     Returns the current local time; injectable for tests.
    """

    def __init__(
        self,
        path: str | Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        console: ConsoleSink | None = None,
        fallback: ConsoleSink | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.path = Path(path).absolute()
        self.max_bytes = max_bytes
        self.console = console
        self.fallback = fallback or fallback_sink()
        self._clock = clock
        self._lock = threading.Lock()
        self._handle: TextIO | None = None
        self._closed = False
        self._archive_pattern = re.compile(
            rf"{re.escape(self.path.stem)}_\d{{8}}_\d{{6}}(-\d+)?{re.escape(self.path.suffix)}"
        )

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + _LOCK_SUFFIX)

    def owns(self, path: str) -> bool:
        """Return ``True`` if *path* is the active log, its lock, or one of its archives."""
        candidate = Path(os.path.abspath(path))
        if candidate.parent != self.path.parent:
            return False
        if candidate in (self.path, self.lock_path):
            return True
        return self._archive_pattern.fullmatch(candidate.name) is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, message: str, severity: Severity = Severity.INFO) -> bool:
        """Append a timestamped record.  Returns ``False`` if it went to the fallback."""
        line = format_record(self._clock(), message)
        try:
            with self._lock:
                try:
                    if self._closed:
                        raise ValueError("audit log is closed")
                    with self._cross_process_lock():
                        handle = self._active_handle()
                        handle.write(line + "\n")
                        handle.flush()
                except (OSError, ValueError):
                    self._drop_handle()
                    raise
        except (OSError, ValueError) as exc:
            self.fallback.emit(f"Logging error: {exc}", Severity.ERROR)
            self.fallback.emit(line, severity)
            return False

        # Only records that reached the file are mirrored.
        if self.console is not None:
            self.console.emit(line, severity)
        return True

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._drop_handle()

    def __enter__(self) -> "AuditLog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals (called with self._lock held)
    # ------------------------------------------------------------------

    @contextmanager
    def _cross_process_lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a+", encoding="utf-8") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def _active_handle(self) -> TextIO:
        """Return a handle on the active file, reopening and rotating as needed."""
        if self._handle is not None and self._stale():
            self._drop_handle()
        if self._handle is None:
            self._handle = self.path.open("a", encoding="utf-8")

        if os.fstat(self._handle.fileno()).st_size >= self.max_bytes:
            self._rotate()
        return self._handle  # type: ignore[return-value]

    def _stale(self) -> bool:
        """True if another writer rotated or removed the file under us."""
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return True
        current = os.fstat(self._handle.fileno())  # type: ignore[union-attr]
        return (on_disk.st_dev, on_disk.st_ino) != (current.st_dev, current.st_ino)

    def _rotate(self) -> None:
        self._drop_handle()
        archive = archive_path_for(self.path, self._clock())
        os.replace(self.path, archive)
        self._handle = self.path.open("a", encoding="utf-8")
        logger.info("Audit log rotated: %s", archive)

    def _drop_handle(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:
                logger.debug("Closing audit log handle failed", exc_info=True)
            self._handle = None
