"""
holders.py — Open-handle inspection for aclsentry.

Lightweight wrappers around ``psutil`` for finding the processes that
still hold a path open.  The readiness gate uses them to tell whether the
creator of a file is still writing to it, and to name the culprit in the
audit log when a file never becomes ready.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

# psutil reports these modes for read-only handles.
_READ_ONLY_MODES = {"r"}


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot of a process holding a path open."""

    pid: int
    name: str = ""
    username: str = ""
    mode: str = ""

    def describe(self) -> str:
        owner = f" ({self.username})" if self.username else ""
        return f"pid={self.pid} {self.name}{owner} mode={self.mode or '?'}"


def find_open_handles(path: str, writers_only: bool = True) -> list[ProcessInfo]:
    """Return the processes (other than this one) that have *path* open.

    With *writers_only* only handles opened for writing or appending are
    reported.  Processes that vanish or deny inspection mid-scan are
    skipped; the result is best effort.
    """
    target = os.path.realpath(path)
    my_pid = os.getpid()
    found: list[ProcessInfo] = []

    for proc in psutil.process_iter(["pid", "name", "username"]):
        if proc.pid == my_pid:
            continue
        try:
            open_files = proc.open_files()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        for handle in open_files:
            if handle.path != target:
                continue
            mode = getattr(handle, "mode", "")
            if writers_only and mode in _READ_ONLY_MODES:
                continue
            found.append(
                ProcessInfo(
                    pid=proc.pid,
                    name=proc.info.get("name") or "",
                    username=proc.info.get("username") or "",
                    mode=mode,
                )
            )
            break

    logger.debug("Open-handle scan for %s: %d holder(s)", path, len(found))
    return found
