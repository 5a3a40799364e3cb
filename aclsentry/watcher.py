"""
watcher.py — The watch loop orchestrating permission enforcement.

Pipeline per event:
  1. Receive a WatchEvent from the event source.
  2. Deduplicate (drop bursts / repeats for the same path).
  3. Wait until the entry is ready (not still being written).
  4. Normalise ownership and rules of the entry.
  5. Propagate the directory policy to ancestors or descendants.
  6. Record the outcome in the audit log.

``submit`` runs on the notification thread and only filters and
deduplicates; the rest runs on a thread pool, one task per event, so a
readiness wait on one path never delays unrelated paths.  Every terminal
state, including abandonment, reaches the audit log.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from aclsentry.audit import AuditLog
from aclsentry.console import Severity
from aclsentry.dedup import EventDeduplicator
from aclsentry.enforcer import Enforcer
from aclsentry.events import EventKind, WatchEvent
from aclsentry.policy import ObjectKind
from aclsentry.propagator import PropagationDirection, Propagator
from aclsentry.readiness import ReadinessGate, ReadinessState
from aclsentry.store import kind_of

logger = logging.getLogger(__name__)


class EventState(str, Enum):
    IDLE = "idle"
    RECEIVED = "received"
    DEDUPLICATED = "deduplicated"
    AWAITING_READY = "awaiting ready"
    MUTATING = "mutating"
    PROPAGATING = "propagating"
    LOGGED = "logged"
    REJECTED = "rejected"
    ABANDONED = "abandoned"


@dataclass
class EventOutcome:
    """Terminal state of one event plus the states it went through."""

    path: str
    state: EventState = EventState.IDLE
    transitions: list[EventState] = field(default_factory=list)
    detail: str = ""

    def advance(self, state: EventState, detail: str = "") -> "EventOutcome":
        self.state = state
        self.transitions.append(state)
        if detail:
            self.detail = detail
        return self


class WatchLoop:
    """Receives events and drives them through the enforcement pipeline.

    Parameters:
        deduplicator:  Owned claim set; at most one normalisation per path.
        gate:          Readiness gate.
        enforcer:      Normalises a single path.
        propagator:    Directory walks after a successful normalisation.
        audit:         Audit log.
        direction:     Propagation direction.
        reprocess_on:  Extra event kinds treated like creations.
        workers:       Thread pool size.
    """

    def __init__(
        self,
        deduplicator: EventDeduplicator,
        gate: ReadinessGate,
        enforcer: Enforcer,
        propagator: Propagator,
        audit: AuditLog,
        direction: PropagationDirection = PropagationDirection.ANCESTORS,
        reprocess_on: Iterable[EventKind] = (),
        workers: int = 4,
    ) -> None:
        self.deduplicator = deduplicator
        self.gate = gate
        self.enforcer = enforcer
        self.propagator = propagator
        self.audit = audit
        self.direction = direction
        self.accepted_kinds = {EventKind.CREATED, *reprocess_on}
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="aclsentry")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._stopping = False

    # ------------------------------------------------------------------
    # Notification thread
    # ------------------------------------------------------------------

    def submit(self, event: WatchEvent) -> Future | None:
        """Filter, deduplicate and queue *event*.  Returns the task, or ``None`` if dropped."""
        if self._stopping or not self._admit(event):
            return None
        try:
            future = self._executor.submit(self._run, event)
        except RuntimeError:
            # Executor already shut down.
            self.deduplicator.forget(event.path)
            return None
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _admit(self, event: WatchEvent) -> bool:
        if event.kind not in self.accepted_kinds:
            return False
        if self.audit.owns(event.path):
            return False
        if not self.deduplicator.should_process(event.path):
            logger.debug("Duplicate notification ignored: %s", event.path)
            return False
        return True

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------

    def handle(self, event: WatchEvent) -> EventOutcome:
        """Admit and process *event* synchronously (no thread pool)."""
        if not self._admit(event):
            outcome = EventOutcome(event.path)
            outcome.advance(EventState.RECEIVED)
            return outcome.advance(EventState.REJECTED, "duplicate or ignored")
        return self._run(event)

    def _run(self, event: WatchEvent) -> EventOutcome:
        try:
            return self.process_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while processing %s", event.path)
            self.audit.record(f"Error processing item {event.path}: {exc}", Severity.ERROR)
            return EventOutcome(event.path).advance(EventState.ABANDONED, str(exc))
        finally:
            self.deduplicator.release(event.path)

    def process_event(self, event: WatchEvent) -> EventOutcome:
        """Run an already admitted *event* through readiness, mutation and propagation."""
        path = event.path
        outcome = EventOutcome(path)
        outcome.advance(EventState.RECEIVED)
        outcome.advance(EventState.DEDUPLICATED)
        self.audit.record(f"Item {event.kind.value}: {path}")

        outcome.advance(EventState.AWAITING_READY)
        readiness = self.gate.wait_until_ready(path)
        if readiness.state is ReadinessState.VANISHED:
            self.audit.record(f"Item vanished before it became ready: {path}", Severity.WARNING)
            return outcome.advance(EventState.ABANDONED, "vanished")
        if readiness.state is ReadinessState.TIMED_OUT:
            holders = ", ".join(h.describe() for h in readiness.holders) or "unknown holder"
            self.audit.record(
                f"File {path} did not become ready in time "
                f"({readiness.attempts} attempts, held by {holders})",
                Severity.WARNING,
            )
            return outcome.advance(EventState.ABANDONED, "timed out")

        kind = kind_of(path)
        if kind is None:
            self.audit.record(f"Item vanished before it could be normalised: {path}", Severity.WARNING)
            return outcome.advance(EventState.ABANDONED, "vanished")

        outcome.advance(EventState.MUTATING)
        step = self.enforcer.normalize(path, kind)
        if not step.ok:
            return outcome.advance(EventState.ABANDONED, step.detail or "store failure")

        label = "directory" if kind is ObjectKind.DIRECTORY else "file"
        outcome.advance(EventState.PROPAGATING)
        result = self.propagator.propagate(path, kind, self.direction)

        if result.partial:
            self.audit.record(
                f"Ownership and ACLs set for new {label}: {path} "
                f"(propagation partial: {len(result.failed)} failed)",
                Severity.WARNING,
            )
            return outcome.advance(EventState.LOGGED, "partial")

        self.audit.record(
            f"Ownership and ACLs set for new {label}: {path} "
            f"({len(result.applied)} related directories normalised)"
        )
        return outcome.advance(EventState.LOGGED)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def stop(self, wait: bool = True) -> None:
        """Stop accepting events; with *wait*, let queued and in-flight work finish."""
        self._stopping = True
        if wait and self.pending:
            logger.info("Waiting for %d pending normalisation(s) …", self.pending)
        self._executor.shutdown(wait=wait)


def describe_roots(roots: Iterable[str]) -> str:
    return ", ".join(os.path.abspath(r) for r in roots)
