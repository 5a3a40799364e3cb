"""
readiness.py — Readiness gate for freshly created filesystem entries.

A creating process usually keeps the file locked (or at least open for
writing) until it is done.  The gate probes the path with an exclusive,
non-blocking lock on a read-only handle and retries at a fixed interval
until the probe succeeds or the attempt budget is spent.  The handle is
closed right away: the probe never holds the file.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from aclsentry.holders import ProcessInfo, find_open_handles

logger = logging.getLogger(__name__)


class ProbeResult(str, Enum):
    READY = "ready"
    BUSY = "busy"
    VANISHED = "vanished"


class ReadinessState(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed out"
    VANISHED = "vanished"


@dataclass(frozen=True)
class ReadinessResult:
    state: ReadinessState
    attempts: int
    holders: tuple[ProcessInfo, ...] = field(default_factory=tuple)

    @property
    def ready(self) -> bool:
        return self.state is ReadinessState.READY


def probe_exclusive(path: str) -> ProbeResult:
    """Try to open *path* read-only and lock it exclusively without blocking."""
    if os.path.isdir(path):
        return ProbeResult.READY
    try:
        fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
    except FileNotFoundError:
        return ProbeResult.VANISHED
    except OSError as exc:
        logger.debug("Probe open failed for %s: %s", path, exc)
        return ProbeResult.BUSY
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        if exc.errno not in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
            logger.debug("Probe lock failed for %s: %s", path, exc)
        return ProbeResult.BUSY
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return ProbeResult.READY
    finally:
        os.close(fd)


class ReadinessGate:
    """Blocks until a path is safe to touch, or gives up.

    Parameters:
        retries:             Maximum number of probe attempts (default 10).
        interval:            Seconds to sleep between attempts (default 0.5).
        detect_open_writers: Also treat the path as busy while another
                             process has it open for writing (via psutil).
        probe:               Probe callable; defaults to :func:`probe_exclusive`.
        sleep:               Sleep callable; injectable for tests.
    """

    def __init__(
        self,
        retries: int = 10,
        interval: float = 0.5,
        detect_open_writers: bool = True,
        probe: Callable[[str], ProbeResult] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        holder_scan: Callable[[str], list[ProcessInfo]] = find_open_handles,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.retries = retries
        self.interval = interval
        self.detect_open_writers = detect_open_writers
        self._probe = probe or probe_exclusive
        self._sleep = sleep
        self._holder_scan = holder_scan

    def wait_until_ready(self, path: str) -> ReadinessResult:
        """Probe *path* until it is ready, vanished, or the budget is spent."""
        for attempt in range(1, self.retries + 1):
            result = self._attempt(path)
            if result is ProbeResult.READY:
                logger.debug("%s ready after %d attempt(s)", path, attempt)
                return ReadinessResult(ReadinessState.READY, attempt)
            if result is ProbeResult.VANISHED:
                return ReadinessResult(ReadinessState.VANISHED, attempt)
            if attempt < self.retries:
                self._sleep(self.interval)

        holders = tuple(self._scan(path))
        return ReadinessResult(ReadinessState.TIMED_OUT, self.retries, holders)

    def _attempt(self, path: str) -> ProbeResult:
        result = self._probe(path)
        if result is ProbeResult.READY and self.detect_open_writers and not os.path.isdir(path):
            if self._scan(path):
                return ProbeResult.BUSY
        return result

    def _scan(self, path: str) -> list[ProcessInfo]:
        try:
            return self._holder_scan(path)
        except Exception:  # noqa: BLE001
            logger.exception("Open-handle scan failed for %s", path)
            return []
