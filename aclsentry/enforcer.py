"""
enforcer.py — Applies the policy to one filesystem object.

Fetches the current owner and rules from the permission store, asks the
policy engine for the target state, and writes back whatever changed.
Every mutation and every store failure is recorded in the audit log; the
caller gets a :class:`StepResult` and never an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from aclsentry.audit import AuditLog
from aclsentry.console import Severity
from aclsentry.policy import ObjectKind, PolicyEngine, same_principal
from aclsentry.store import FailureKind, PermissionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepResult:
    """Outcome of normalising a single path."""

    path: str
    ok: bool
    changed: bool = False
    failure: FailureKind | None = None
    detail: str = ""


class Enforcer:
    """Normalises ownership and rules of single paths.

    Parameters:
        store:  Permission store (source of truth, read fresh every time).
        engine: Pure policy engine.
        audit:  Audit log receiving one record per mutation or failure.
    """

    def __init__(self, store: PermissionStore, engine: PolicyEngine, audit: AuditLog) -> None:
        self.store = store
        self.engine = engine
        self.audit = audit

    def normalize(self, path: str, kind: ObjectKind) -> StepResult:
        label = "directory" if kind is ObjectKind.DIRECTORY else "file"

        fetched = self.store.get_rules(path, kind)
        if not fetched.ok or fetched.value is None:
            return self._failed(path, f"Error reading permissions of {label} {path}", fetched)
        rule_set = fetched.value

        owner = self.store.get_owner(path, like=self.engine.settings.target_owner)
        if owner.ok and owner.value:
            rule_set = replace(rule_set, owner=owner.value)

        outcome = self.engine.apply(rule_set, kind)
        if not outcome.changed:
            logger.debug("%s already conforms: %s", label.capitalize(), path)
            return StepResult(path, ok=True, changed=False)

        if outcome.owner and not same_principal(outcome.owner, rule_set.owner):
            result = self.store.set_owner(path, outcome.owner)
            if not result.ok:
                return self._failed(path, f"Error taking ownership of {label} {path}", result)
            self.audit.record(f"Ownership taken for: {path} by {outcome.owner}")

        if outcome.rule_set.rules != rule_set.rules or outcome.rule_set.protected != rule_set.protected:
            result = self.store.set_rules(path, outcome.rule_set, kind)
            if not result.ok:
                return self._failed(path, f"Error setting ACLs for {label} {path}", result)

        rule_changes = [c for c in outcome.changes if not c.startswith("owner ")]
        if rule_changes:
            self.audit.record(f"Updated permissions for {label}: {path} ({'; '.join(rule_changes)})")
        return StepResult(path, ok=True, changed=True)

    def _failed(self, path: str, message: str, result) -> StepResult:  # noqa: ANN001
        self.audit.record(f"{message}: {result.describe()}", Severity.ERROR)
        return StepResult(path, ok=False, failure=result.failure, detail=result.detail)
