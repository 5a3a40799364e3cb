"""Console sink for aclsentry.

Mirrors audit records to the terminal and serves as the fallback sink
when the audit log itself cannot be written.  Uses colorama for
cross-platform ANSI colours.
"""

from __future__ import annotations

import sys
import threading
from enum import Enum
from typing import TextIO

from colorama import Fore, Style
from colorama import init as colorama_init

colorama_init()


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_COLOURS = {
    Severity.INFO: "",
    Severity.WARNING: Fore.YELLOW,
    Severity.ERROR: Fore.RED,
}


class ConsoleSink:
    """Writes lines to a stream, coloured by severity."""

    def __init__(
        self,
        stream: TextIO | None = None,
        colour: bool | None = None,
        stderr: bool = False,
    ) -> None:
        self._stream = stream
        self._stderr = stderr
        self._colour = colour
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        if self._stream is not None:
            return self._stream
        return sys.stderr if self._stderr else sys.stdout

    def emit(self, line: str, severity: Severity = Severity.INFO) -> None:
        stream = self.stream
        colour = self._colour if self._colour is not None else stream.isatty()
        prefix = _COLOURS[severity] if colour else ""
        suffix = Style.RESET_ALL if prefix else ""
        try:
            with self._lock:
                stream.write(f"{prefix}{line}{suffix}\n")
                stream.flush()
        except (OSError, ValueError):
            # Nowhere left to report to.
            pass


def fallback_sink() -> ConsoleSink:
    """Sink used when the audit log fails: stderr, coloured when interactive."""
    return ConsoleSink(stderr=True)
