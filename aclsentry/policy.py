"""
policy.py — Access-control policy engine for aclsentry.

A pure transformation from the current rule set of a filesystem object to
the rule set (and owner) the organisation wants it to have.  The engine
never talks to the permission store; it is fed hand-built or freshly
fetched ``RuleSet`` values and returns a ``PolicyOutcome``.

Three modes are supported:

additive
    Keep existing rules, grant Read to the broad principal and
    FullControl to the administrators principal.
subtractive
    Strip every Allow rule carrying Write or Modify from principals that
    are not on the allow-list.
rebuild
    Allow-listed principals get FullControl, everybody else is downgraded
    to Read.
"""

from __future__ import annotations

import enum
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Callable


# ---------------------------------------------------------------------------
# Rights / effects / kinds
# ---------------------------------------------------------------------------

class Rights(enum.Flag):
    """Discretionary access rights.  ``MODIFY`` and ``FULL_CONTROL`` are composites."""

    READ = 1
    WRITE = 2
    EXECUTE = 4
    DELETE = 8
    CHANGE_PERMISSIONS = 16
    TAKE_OWNERSHIP = 32
    MODIFY = READ | WRITE | EXECUTE | DELETE
    FULL_CONTROL = MODIFY | CHANGE_PERMISSIONS | TAKE_OWNERSHIP


_SIMPLE_RIGHTS = (
    Rights.READ,
    Rights.WRITE,
    Rights.EXECUTE,
    Rights.DELETE,
    Rights.CHANGE_PERMISSIONS,
    Rights.TAKE_OWNERSHIP,
)

NO_RIGHTS = Rights(0)

# Rights a downgraded principal may keep.
_READ_ONLY = Rights.READ | Rights.EXECUTE


class Effect(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


class ObjectKind(str, enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


class PolicyMode(str, enum.Enum):
    ADDITIVE = "additive"
    SUBTRACTIVE = "subtractive"
    REBUILD = "rebuild"


class BroadAccess(str, enum.Enum):
    """What the broad ("everyone"/"authenticated users") principal ends up with."""

    READ = "read"
    REMOVE = "remove"


def format_rights(rights: Rights) -> str:
    """Render *rights* the way the audit log shows them (e.g. ``Modify``)."""
    if rights == Rights.FULL_CONTROL:
        return "FullControl"
    if rights == Rights.MODIFY:
        return "Modify"
    if not rights:
        return "None"
    names = [
        member.name.title().replace("_", "")  # type: ignore[union-attr]
        for member in _SIMPLE_RIGHTS
        if member in rights
    ]
    return "|".join(names)


def normalize_principal(name: str) -> str:
    """Return the comparison key for a principal name.

    Account providers disagree on casing (``NT-AUTORITÄT\\SYSTEM`` vs
    ``nt-autorität\\system``), so names are NFKC-normalised and casefolded.
    """
    return unicodedata.normalize("NFKC", name).strip().casefold()


def same_principal(left: str | None, right: str | None) -> bool:
    if left is None or right is None:
        return left is right
    return normalize_principal(left) == normalize_principal(right)


# ---------------------------------------------------------------------------
# Rules and rule sets
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class PermissionRule:
    """A single (principal, rights, effect) access-control entry.

    Equality and hashing use the normalised principal, so two rules that
    only differ in principal casing are the same rule.
    """

    principal: str
    rights: Rights
    effect: Effect = Effect.ALLOW

    @property
    def key(self) -> tuple[str, int, Effect]:
        return (normalize_principal(self.principal), self.rights.value, self.effect)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PermissionRule):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def describe(self) -> str:
        return f"{self.principal}:{format_rights(self.rights)}:{self.effect.value}"


@dataclass(frozen=True)
class RuleSet:
    """Ordered rules of one object plus its protection flag and owner."""

    rules: tuple[PermissionRule, ...] = ()
    protected: bool = False
    owner: str | None = None

    def __contains__(self, rule: object) -> bool:
        return rule in self.rules

    def with_rule(self, rule: PermissionRule) -> "RuleSet":
        if rule in self.rules:
            return self
        return replace(self, rules=self.rules + (rule,))

    def without(self, rule: PermissionRule) -> "RuleSet":
        return replace(self, rules=tuple(r for r in self.rules if r != rule))

    def for_principal(self, principal: str) -> list[PermissionRule]:
        return [r for r in self.rules if same_principal(r.principal, principal)]


# ---------------------------------------------------------------------------
# Settings / outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicySettings:
    """Configuration driving the policy engine.

    Attributes:
        mode:            Policy applied to files (and directories unless
                         ``directory_mode`` is given).
        directory_mode:  Optional override for directories.
        admin_principal: Trust group receiving FullControl / ownership.
        broad_principal: The "everyone" / "authenticated users" principal.
        allow_list:      Principals whose write access is never stripped.
        broad_access:    Whether the broad principal keeps Read or is removed.
        take_ownership:  Hand ownership to ``owner_principal``.
        owner_principal: New owner; defaults to ``admin_principal``.
    """

    mode: PolicyMode = PolicyMode.SUBTRACTIVE
    directory_mode: PolicyMode | None = None
    admin_principal: str = "group:root"
    broad_principal: str = "everyone@"
    allow_list: tuple[str, ...] = ("user:root", "group:root")
    broad_access: BroadAccess = BroadAccess.READ
    take_ownership: bool = True
    owner_principal: str | None = None
    _allowed_keys: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_allowed_keys",
            frozenset(normalize_principal(p) for p in self.allow_list),
        )

    @property
    def target_owner(self) -> str:
        return self.owner_principal or self.admin_principal

    def mode_for(self, kind: ObjectKind) -> PolicyMode:
        if kind is ObjectKind.DIRECTORY and self.directory_mode is not None:
            return self.directory_mode
        return self.mode

    def is_allowed(self, principal: str) -> bool:
        return normalize_principal(principal) in self._allowed_keys

    def is_broad(self, principal: str) -> bool:
        return same_principal(principal, self.broad_principal)


@dataclass(frozen=True)
class PolicyOutcome:
    """Result of applying the policy: the target rules, owner and a change log."""

    rule_set: RuleSet
    owner: str | None
    changes: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.changes)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class PolicyEngine:
    """Stateless policy transformation.

    Parameters:
        settings: :class:`PolicySettings`; defaults to subtractive mode.
    """

    def __init__(self, settings: PolicySettings | None = None) -> None:
        self.settings = settings or PolicySettings()
        self._modes: dict[PolicyMode, Callable[[RuleSet, list[str]], RuleSet]] = {
            PolicyMode.ADDITIVE: self._additive,
            PolicyMode.SUBTRACTIVE: self._subtractive,
            PolicyMode.REBUILD: self._rebuild,
        }

    def apply(self, rule_set: RuleSet, kind: ObjectKind) -> PolicyOutcome:
        """Return the rule set and owner *rule_set* should have.

        Applying the engine to its own output yields the same rule set.
        """
        changes: list[str] = []
        current = rule_set

        if not current.protected:
            current = replace(current, protected=True)
            changes.append("blocked inherited rules")

        current = self._modes[self.settings.mode_for(kind)](current, changes)

        owner = current.owner
        target = self.settings.target_owner
        if self.settings.take_ownership and not same_principal(owner, target):
            changes.append(f"owner {owner or '<unknown>'} -> {target}")
            owner = target
            current = replace(current, owner=owner)

        return PolicyOutcome(rule_set=current, owner=owner, changes=tuple(changes))

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _additive(self, rules: RuleSet, changes: list[str]) -> RuleSet:
        s = self.settings
        if s.broad_access is BroadAccess.READ:
            rules = _grant(rules, PermissionRule(s.broad_principal, Rights.READ), changes)
        else:
            rules = self._revoke_broad(rules, changes)
        return _grant(rules, PermissionRule(s.admin_principal, Rights.FULL_CONTROL), changes)

    def _subtractive(self, rules: RuleSet, changes: list[str]) -> RuleSet:
        s = self.settings
        if s.broad_access is BroadAccess.REMOVE:
            rules = self._revoke_broad(rules, changes)

        for rule in rules.rules:
            if rule.effect is not Effect.ALLOW or s.is_allowed(rule.principal):
                continue
            if Rights.WRITE in rule.rights or Rights.MODIFY in rule.rights:
                rules = rules.without(rule)
                changes.append(f"removed {rule.describe()}")
        return rules

    def _rebuild(self, rules: RuleSet, changes: list[str]) -> RuleSet:
        s = self.settings
        if s.broad_access is BroadAccess.REMOVE:
            rules = self._revoke_broad(rules, changes)

        rebuilt: list[PermissionRule] = []
        for rule in rules.rules:
            target = rule
            if rule.effect is Effect.ALLOW:
                if s.is_allowed(rule.principal):
                    target = PermissionRule(rule.principal, Rights.FULL_CONTROL)
                elif rule.rights not in _READ_ONLY:
                    target = PermissionRule(rule.principal, Rights.READ)
            if target in rebuilt:
                changes.append(f"merged {rule.describe()}")
                continue
            if target.rights != rule.rights:
                changes.append(f"replaced {rule.describe()} with {target.describe()}")
            rebuilt.append(target)
        return replace(rules, rules=tuple(rebuilt))

    def _revoke_broad(self, rules: RuleSet, changes: list[str]) -> RuleSet:
        for rule in rules.for_principal(self.settings.broad_principal):
            rules = rules.without(rule)
            changes.append(f"removed {rule.describe()}")
        return rules


def _grant(rules: RuleSet, rule: PermissionRule, changes: list[str]) -> RuleSet:
    """Add *rule* unless an existing rule of the same principal already covers it."""
    for existing in rules.for_principal(rule.principal):
        if existing.effect is rule.effect and rule.rights in existing.rights:
            return rules
    changes.append(f"granted {rule.describe()}")
    return rules.with_rule(rule)
