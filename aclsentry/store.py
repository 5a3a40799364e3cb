"""
store.py — Permission store adapters for aclsentry.

The store is the source of truth for ownership and access rules.  Every
operation returns a :class:`StoreResult` instead of raising, so the watch
loop can treat a vanished path or an access-denied error as an explicit
transition.

Implementations
---------------
PosixAclStore
    POSIX.1e ACLs through ``getfacl`` / ``setfacl`` and ``os.chown``.
MemoryPermissionStore
    Dictionary-backed store used by tests and the ``memory`` backend.
DryRunStore
    Reads through another store and only records the writes it would make.
"""

from __future__ import annotations

import abc
import grp
import logging
import os
import pwd
import shutil
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from aclsentry.policy import (
    NO_RIGHTS,
    Effect,
    ObjectKind,
    PermissionRule,
    Rights,
    RuleSet,
    normalize_principal,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, Enum):
    NOT_FOUND = "not found"
    ACCESS_DENIED = "access denied"
    KIND_MISMATCH = "kind mismatch"
    UNSUPPORTED = "unsupported"
    ERROR = "error"


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a store operation.

    ``value`` is only meaningful when ``ok`` is true; otherwise ``failure``
    and ``detail`` describe what went wrong.
    """

    ok: bool
    value: T | None = None
    failure: FailureKind | None = None
    detail: str = ""

    @classmethod
    def success(cls, value: T | None = None) -> "StoreResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def fail(cls, failure: FailureKind, detail: str = "") -> "StoreResult[T]":
        return cls(ok=False, failure=failure, detail=detail)

    def describe(self) -> str:
        if self.ok:
            return "ok"
        reason = self.failure.value if self.failure else "failed"
        return f"{reason}: {self.detail}" if self.detail else reason


def failure_from_os_error(exc: OSError) -> StoreResult:
    """Map an ``OSError`` to the matching failed :class:`StoreResult`."""
    if isinstance(exc, FileNotFoundError):
        return StoreResult.fail(FailureKind.NOT_FOUND, str(exc))
    if isinstance(exc, PermissionError):
        return StoreResult.fail(FailureKind.ACCESS_DENIED, str(exc))
    if isinstance(exc, (IsADirectoryError, NotADirectoryError)):
        return StoreResult.fail(FailureKind.KIND_MISMATCH, str(exc))
    return StoreResult.fail(FailureKind.ERROR, str(exc))


def kind_of(path: str) -> ObjectKind | None:
    """Return the object kind of *path* on disk, or ``None`` if it is gone."""
    if os.path.isdir(path):
        return ObjectKind.DIRECTORY
    if os.path.lexists(path):
        return ObjectKind.FILE
    return None


def check_kind(path: str, kind: ObjectKind) -> StoreResult[None]:
    actual = kind_of(path)
    if actual is None:
        return StoreResult.fail(FailureKind.NOT_FOUND, f"{path} does not exist")
    if actual is not kind:
        return StoreResult.fail(
            FailureKind.KIND_MISMATCH, f"{path} is a {actual.value}, not a {kind.value}"
        )
    return StoreResult.success()


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class PermissionStore(abc.ABC):
    """Get/set access rules and ownership of filesystem objects."""

    @abc.abstractmethod
    def get_rules(self, path: str, kind: ObjectKind) -> StoreResult[RuleSet]:
        """Fetch the current rules of *path* (never cached)."""

    @abc.abstractmethod
    def set_rules(self, path: str, rule_set: RuleSet, kind: ObjectKind) -> StoreResult[None]:
        """Replace the rules of *path* with *rule_set*."""

    @abc.abstractmethod
    def get_owner(self, path: str, like: str | None = None) -> StoreResult[str]:
        """Return the owning principal of *path*.

        *like* is the principal the caller is about to compare against;
        stores with several kinds of owner report the matching kind.
        """

    @abc.abstractmethod
    def set_owner(self, path: str, principal: str) -> StoreResult[None]:
        """Hand ownership of *path* to *principal*."""


# ---------------------------------------------------------------------------
# POSIX ACLs
# ---------------------------------------------------------------------------

# Base ACL entries and the principal names they are exposed under.
_BASE_TAGS = {"user": "owner@", "group": "group@", "other": "everyone@"}
_BASE_PRINCIPALS = {normalize_principal(v): k for k, v in _BASE_TAGS.items()}


def rights_from_perms(perms: str) -> Rights:
    """Translate an ``rwx`` permission triple into rights.

    ``---`` yields no rights: POSIX ACLs have no deny entries, an empty
    entry only means the principal was granted nothing.
    """
    rights = NO_RIGHTS
    if "r" in perms:
        rights |= Rights.READ
    if "w" in perms:
        rights |= Rights.WRITE | Rights.DELETE
    if "x" in perms:
        rights |= Rights.EXECUTE
    if rights == Rights.MODIFY:
        rights = Rights.FULL_CONTROL
    return rights


def perms_from_rights(rights: Rights, effect: Effect, kind: ObjectKind) -> str:
    """Translate rights back into an ``rwx`` triple.

    Read on a directory also grants traversal (``x``).
    """
    if effect is Effect.DENY:
        return "---"
    read = Rights.READ in rights
    write = Rights.WRITE in rights or Rights.DELETE in rights
    execute = Rights.EXECUTE in rights or (read and kind is ObjectKind.DIRECTORY)
    return ("r" if read else "-") + ("w" if write else "-") + ("x" if execute else "-")


def parse_getfacl(text: str) -> list[PermissionRule]:
    """Parse ``getfacl -c`` output into Allow rules.

    ``mask`` and ``default:`` entries are skipped: setfacl recomputes the
    mask and default entries describe inheritance, not access.  Entries
    granting nothing (``---``) produce no rule; :func:`format_acl_spec`
    writes missing base entries back as ``---``.
    """
    rules: list[PermissionRule] = []
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("default:"):
            continue
        parts = line.split(":")
        if len(parts) != 3:
            logger.debug("Skipping unparsable ACL line: %r", raw)
            continue
        tag, qualifier, perms = parts
        if tag == "mask":
            continue
        if tag not in _BASE_TAGS:
            logger.debug("Skipping unknown ACL tag: %r", raw)
            continue
        rights = rights_from_perms(perms)
        if not rights:
            continue
        principal = f"{tag}:{qualifier}" if qualifier else _BASE_TAGS[tag]
        rules.append(PermissionRule(principal, rights))
    return rules


def format_acl_spec(rule_set: RuleSet, kind: ObjectKind) -> str:
    """Render *rule_set* as a ``setfacl --set`` specification.

    The three base entries are mandatory; missing ones are written as
    ``---``.  Several rules for the same entry are merged.
    """
    entries: dict[str, str] = {}
    denied: set[str] = set()
    for rule in rule_set.rules:
        key = normalize_principal(rule.principal)
        if key in _BASE_PRINCIPALS:
            entry = f"{_BASE_PRINCIPALS[key]}:"
        elif ":" in rule.principal:
            tag, name = rule.principal.split(":", 1)
            if tag not in ("user", "group") or not name:
                raise ValueError(f"Unsupported principal for POSIX ACLs: {rule.principal}")
            entry = f"{tag}:{name}"
        else:
            raise ValueError(f"Unsupported principal for POSIX ACLs: {rule.principal}")
        perms = perms_from_rights(rule.rights, rule.effect, kind)
        if rule.effect is Effect.DENY:
            # A deny wins over any allow collected for the same entry.
            denied.add(entry)
            entries[entry] = perms
        elif entry not in denied:
            entries[entry] = _merge_perms(entries.get(entry, "---"), perms)
    for tag in _BASE_TAGS:
        entries.setdefault(f"{tag}:", "---")
    return ",".join(f"{entry}:{perms}" for entry, perms in entries.items())


def _merge_perms(left: str, right: str) -> str:
    return "".join(l if l != "-" else r for l, r in zip(left, right))


class PosixAclStore(PermissionStore):
    """Store backed by POSIX ACLs (``acl`` package tools) and ``os.chown``.

    Access ACLs are never inherited after creation, so every object is
    reported as protected and the flag is ignored on write.
    """

    def __init__(self, getfacl: str = "getfacl", setfacl: str = "setfacl", timeout: float = 10.0) -> None:
        self.getfacl = getfacl
        self.setfacl = setfacl
        self.timeout = timeout

    @classmethod
    def available(cls) -> bool:
        return shutil.which("getfacl") is not None and shutil.which("setfacl") is not None

    def get_rules(self, path: str, kind: ObjectKind) -> StoreResult[RuleSet]:
        checked = check_kind(path, kind)
        if not checked.ok:
            return StoreResult.fail(checked.failure, checked.detail)  # type: ignore[arg-type]
        result = self._run([self.getfacl, "-c", "-p", "--", path])
        if not result.ok:
            return StoreResult.fail(result.failure, result.detail)  # type: ignore[arg-type]
        owner = self.get_owner(path)
        return StoreResult.success(
            RuleSet(
                rules=tuple(parse_getfacl(result.value or "")),
                protected=True,
                owner=owner.value if owner.ok else None,
            )
        )

    def set_rules(self, path: str, rule_set: RuleSet, kind: ObjectKind) -> StoreResult[None]:
        checked = check_kind(path, kind)
        if not checked.ok:
            return checked
        try:
            spec = format_acl_spec(rule_set, kind)
        except ValueError as exc:
            return StoreResult.fail(FailureKind.UNSUPPORTED, str(exc))
        result = self._run([self.setfacl, "--set", spec, "--", path])
        if not result.ok:
            return StoreResult.fail(result.failure, result.detail)  # type: ignore[arg-type]
        return StoreResult.success()

    def get_owner(self, path: str, like: str | None = None) -> StoreResult[str]:
        """Report the owning user, or the owning group when *like* is a ``group:`` principal.

        Numeric names in *like* get a numeric answer so the two compare equal.
        """
        try:
            st = os.lstat(path)
        except OSError as exc:
            return failure_from_os_error(exc)
        tag, _, name = (like or "").partition(":")
        if tag == "group":
            return StoreResult.success(
                f"group:{_name_of(st.st_gid, grp.getgrgid, 'gr_name', numeric=name.isdigit())}"
            )
        return StoreResult.success(
            f"user:{_name_of(st.st_uid, pwd.getpwuid, 'pw_name', numeric=name.isdigit())}"
        )

    def set_owner(self, path: str, principal: str) -> StoreResult[None]:
        """Change the owning user (``user:NAME``) or owning group (``group:NAME``)."""
        tag, _, name = principal.partition(":")
        try:
            if tag == "user" and name:
                os.chown(path, _lookup_id(name, pwd.getpwnam, "pw_uid"), -1, follow_symlinks=False)
            elif tag == "group" and name:
                os.chown(path, -1, _lookup_id(name, grp.getgrnam, "gr_gid"), follow_symlinks=False)
            else:
                return StoreResult.fail(FailureKind.UNSUPPORTED, f"cannot own by {principal}")
        except KeyError:
            return StoreResult.fail(FailureKind.ERROR, f"unknown principal {principal}")
        except OSError as exc:
            return failure_from_os_error(exc)
        return StoreResult.success()

    def _run(self, argv: list[str]) -> StoreResult[str]:
        try:
            proc = subprocess.run(
                argv, capture_output=True, text=True, timeout=self.timeout, check=False
            )
        except FileNotFoundError as exc:
            return StoreResult.fail(FailureKind.UNSUPPORTED, f"{argv[0]} not installed: {exc}")
        except subprocess.TimeoutExpired:
            return StoreResult.fail(FailureKind.ERROR, f"{argv[0]} timed out")
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            lowered = stderr.lower()
            if "no such file" in lowered:
                failure = FailureKind.NOT_FOUND
            elif "permission denied" in lowered or "not permitted" in lowered:
                failure = FailureKind.ACCESS_DENIED
            elif "not supported" in lowered:
                failure = FailureKind.UNSUPPORTED
            else:
                failure = FailureKind.ERROR
            return StoreResult.fail(failure, stderr or f"{argv[0]} exited {proc.returncode}")
        return StoreResult.success(proc.stdout)


def _lookup_id(name: str, lookup, attr: str) -> int:  # noqa: ANN001
    if name.isdigit():
        return int(name)
    return getattr(lookup(name), attr)


def _name_of(ident: int, lookup, attr: str, numeric: bool = False) -> str:  # noqa: ANN001
    if numeric:
        return str(ident)
    try:
        return getattr(lookup(ident), attr)
    except KeyError:
        return str(ident)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryPermissionStore(PermissionStore):
    """Dictionary-backed store.

    Parameters:
        default_rules: Rule set handed out for paths that exist on disk but
                       were never seeded.  ``None`` means such paths are
                       reported as not found.
        deny:          Paths for which every operation fails with
                       ``ACCESS_DENIED``.
    """

    def __init__(
        self,
        default_rules: RuleSet | None = None,
        deny: set[str] | None = None,
    ) -> None:
        self.default_rules = default_rules
        self.deny = {os.path.abspath(p) for p in (deny or set())}
        self._entries: dict[str, tuple[RuleSet, ObjectKind]] = {}
        self._lock = threading.Lock()
        self.writes: list[tuple[str, str]] = []

    def seed(self, path: str, rule_set: RuleSet, kind: ObjectKind) -> None:
        with self._lock:
            self._entries[os.path.abspath(path)] = (rule_set, kind)

    def snapshot(self, path: str) -> RuleSet | None:
        with self._lock:
            entry = self._entries.get(os.path.abspath(path))
        return entry[0] if entry else None

    def get_rules(self, path: str, kind: ObjectKind) -> StoreResult[RuleSet]:
        entry = self._lookup(path, kind)
        if not entry.ok:
            return StoreResult.fail(entry.failure, entry.detail)  # type: ignore[arg-type]
        return StoreResult.success(entry.value[0])  # type: ignore[index]

    def set_rules(self, path: str, rule_set: RuleSet, kind: ObjectKind) -> StoreResult[None]:
        entry = self._lookup(path, kind)
        if not entry.ok:
            return StoreResult.fail(entry.failure, entry.detail)  # type: ignore[arg-type]
        key = os.path.abspath(path)
        with self._lock:
            current = self._entries[key][0]
            self._entries[key] = (RuleSet(rule_set.rules, rule_set.protected, current.owner), kind)
            self.writes.append(("rules", key))
        return StoreResult.success()

    def get_owner(self, path: str, like: str | None = None) -> StoreResult[str]:
        entry = self._lookup(path, None)
        if not entry.ok:
            return StoreResult.fail(entry.failure, entry.detail)  # type: ignore[arg-type]
        owner = entry.value[0].owner  # type: ignore[index]
        return StoreResult.success(owner or "")

    def set_owner(self, path: str, principal: str) -> StoreResult[None]:
        entry = self._lookup(path, None)
        if not entry.ok:
            return StoreResult.fail(entry.failure, entry.detail)  # type: ignore[arg-type]
        key = os.path.abspath(path)
        with self._lock:
            rules, kind = self._entries[key]
            self._entries[key] = (RuleSet(rules.rules, rules.protected, principal), kind)
            self.writes.append(("owner", key))
        return StoreResult.success()

    def _lookup(self, path: str, kind: ObjectKind | None) -> StoreResult[tuple[RuleSet, ObjectKind]]:
        key = os.path.abspath(path)
        if key in self.deny:
            return StoreResult.fail(FailureKind.ACCESS_DENIED, f"access to {path} denied")
        with self._lock:
            entry = self._entries.get(key)
            if entry is None and self.default_rules is not None:
                actual = kind_of(key)
                if actual is not None:
                    entry = (self.default_rules, actual)
                    self._entries[key] = entry
        if entry is None:
            return StoreResult.fail(FailureKind.NOT_FOUND, f"{path} is unknown")
        if kind is not None and entry[1] is not kind:
            return StoreResult.fail(
                FailureKind.KIND_MISMATCH, f"{path} is a {entry[1].value}, not a {kind.value}"
            )
        return StoreResult.success(entry)


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class DryRunStore(PermissionStore):
    """Reads from *inner*; writes are recorded in ``planned`` but not applied."""

    def __init__(self, inner: PermissionStore) -> None:
        self.inner = inner
        self.planned: list[str] = []
        self._lock = threading.Lock()

    def get_rules(self, path: str, kind: ObjectKind) -> StoreResult[RuleSet]:
        return self.inner.get_rules(path, kind)

    def get_owner(self, path: str, like: str | None = None) -> StoreResult[str]:
        return self.inner.get_owner(path, like)

    def set_rules(self, path: str, rule_set: RuleSet, kind: ObjectKind) -> StoreResult[None]:
        plan = ", ".join(rule.describe() for rule in rule_set.rules) or "<empty>"
        self._plan(f"set rules on {path}: {plan}")
        return StoreResult.success()

    def set_owner(self, path: str, principal: str) -> StoreResult[None]:
        self._plan(f"set owner of {path} to {principal}")
        return StoreResult.success()

    def _plan(self, message: str) -> None:
        logger.info("[dry-run] %s", message)
        with self._lock:
            self.planned.append(message)
