"""
propagator.py — Re-applies the directory policy around a normalised entry.

Two walks are available:

* upward, from a leaf to every ancestor directory strictly below the
  watched root it lives in;
* downward, depth-first over a directory and all of its subdirectories.

Both walks continue past individual failures: one inaccessible directory
never keeps its siblings from being normalised.  The overall result is
reported as partial instead of raised.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from aclsentry.audit import AuditLog
from aclsentry.console import Severity
from aclsentry.enforcer import Enforcer
from aclsentry.policy import ObjectKind

logger = logging.getLogger(__name__)


class PropagationDirection(str, Enum):
    ANCESTORS = "ancestors"
    DESCENDANTS = "descendants"
    NONE = "none"


@dataclass
class PropagationResult:
    applied: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed)


class Propagator:
    """Walks ancestor or descendant directories and normalises each.

    Parameters:
        enforcer:       Applies the directory policy to a single path.
        audit:          Receives walk failures and partial-result summaries.
        roots:          Watched roots; the upward walk stops below them.
        ancestor_depth: Maximum number of ancestors to visit (``None`` = all).
    """

    def __init__(
        self,
        enforcer: Enforcer,
        audit: AuditLog,
        roots: Iterable[str] = (),
        ancestor_depth: int | None = None,
    ) -> None:
        self.enforcer = enforcer
        self.audit = audit
        self.roots = sorted((os.path.abspath(r) for r in roots), key=len, reverse=True)
        self.ancestor_depth = ancestor_depth

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def propagate(self, path: str, kind: ObjectKind, direction: PropagationDirection) -> PropagationResult:
        """Run the walk configured by *direction* for a freshly normalised *path*."""
        if direction is PropagationDirection.ANCESTORS:
            return self.apply_to_ancestors(path)
        if direction is PropagationDirection.DESCENDANTS:
            if kind is ObjectKind.DIRECTORY:
                return self.apply_recursively_to_subtree(path, include_self=False)
            return self.apply_recursively_to_subtree(os.path.dirname(os.path.abspath(path)))
        return PropagationResult()

    def apply_to_ancestors(self, leaf_path: str) -> PropagationResult:
        """Apply the directory policy to each ancestor of *leaf_path* below its root."""
        result = PropagationResult()
        for directory in self.ancestors(leaf_path):
            self._apply(directory, result)
        self._summarise(leaf_path, "ancestors", result)
        return result

    def apply_recursively_to_subtree(self, dir_path: str, include_self: bool = True) -> PropagationResult:
        """Apply the directory policy to *dir_path* and every directory below it."""
        result = PropagationResult()
        root = os.path.abspath(dir_path)
        if include_self:
            self._apply(root, result)
        self._walk(root, result)
        self._summarise(root, "subtree", result)
        return result

    def ancestors(self, leaf_path: str) -> list[str]:
        """Ancestors of *leaf_path*, nearest first, strictly below its watched root.

        Without a matching root only the immediate parent is returned.
        """
        leaf = os.path.abspath(leaf_path)
        root = self._root_of(leaf)
        parent = os.path.dirname(leaf)
        chain: list[str] = []

        if root is None:
            if parent and parent != leaf:
                chain.append(parent)
        else:
            prefix = root.rstrip(os.sep) + os.sep
            current = parent
            while current != root and current.startswith(prefix):
                chain.append(current)
                current = os.path.dirname(current)

        if self.ancestor_depth is not None:
            chain = chain[: self.ancestor_depth]
        return chain

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _root_of(self, path: str) -> str | None:
        for root in self.roots:
            if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
                return root
        return None

    def _walk(self, directory: str, result: PropagationResult) -> None:
        try:
            with os.scandir(directory) as entries:
                children = sorted(
                    entry.path for entry in entries if entry.is_dir(follow_symlinks=False)
                )
        except OSError as exc:
            result.failed.append((directory, str(exc)))
            self.audit.record(f"Error listing directory {directory}: {exc}", Severity.ERROR)
            return

        for child in children:
            # Descend even when the child itself failed; its children may not.
            self._apply(child, result)
            self._walk(child, result)

    def _apply(self, directory: str, result: PropagationResult) -> None:
        step = self.enforcer.normalize(directory, ObjectKind.DIRECTORY)
        if step.ok:
            result.applied.append(directory)
        else:
            result.failed.append((directory, step.detail or (step.failure.value if step.failure else "")))

    def _summarise(self, origin: str, walk: str, result: PropagationResult) -> None:
        if result.partial:
            self.audit.record(
                f"Propagation to {walk} of {origin} partially failed: "
                f"{len(result.applied)} applied, {len(result.failed)} failed",
                Severity.WARNING,
            )
        else:
            logger.debug("Propagation to %s of %s: %d applied", walk, origin, len(result.applied))
