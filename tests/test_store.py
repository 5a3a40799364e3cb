from __future__ import annotations

import os

import pytest

from aclsentry.enforcer import Enforcer
from aclsentry.policy import (
    Effect,
    ObjectKind,
    PermissionRule,
    PolicyEngine,
    PolicyMode,
    PolicySettings,
    Rights,
    RuleSet,
)
from aclsentry.store import (
    DryRunStore,
    FailureKind,
    MemoryPermissionStore,
    PosixAclStore,
    StoreResult,
    check_kind,
    format_acl_spec,
    kind_of,
    parse_getfacl,
    perms_from_rights,
    rights_from_perms,
)

GETFACL_OUTPUT = """\
user::rw-
user:alice:rwx\t\t#effective:r-x
group::r--
group:staff:---
mask::r-x
other::r--
default:user::rwx
default:other::r-x
"""


# ---------------------------------------------------------------------------
# POSIX translation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "perms, rights",
    [
        ("r--", Rights.READ),
        ("r-x", Rights.READ | Rights.EXECUTE),
        ("rw-", Rights.READ | Rights.WRITE | Rights.DELETE),
        ("rwx", Rights.FULL_CONTROL),
        ("---", Rights(0)),
    ],
)
def test_rights_from_perms(perms, rights):
    assert rights_from_perms(perms) == rights


def test_perms_from_rights_grants_traversal_with_read_on_directories():
    assert perms_from_rights(Rights.READ, Effect.ALLOW, ObjectKind.FILE) == "r--"
    assert perms_from_rights(Rights.READ, Effect.ALLOW, ObjectKind.DIRECTORY) == "r-x"
    assert perms_from_rights(Rights.MODIFY, Effect.ALLOW, ObjectKind.FILE) == "rwx"
    assert perms_from_rights(Rights.WRITE, Effect.DENY, ObjectKind.FILE) == "---"


def test_parse_getfacl_skips_mask_defaults_and_comments():
    rules = parse_getfacl(GETFACL_OUTPUT)

    assert rules == [
        PermissionRule("owner@", Rights.READ | Rights.WRITE | Rights.DELETE),
        PermissionRule("user:alice", Rights.FULL_CONTROL),
        PermissionRule("group@", Rights.READ),
        PermissionRule("everyone@", Rights.READ),
    ]


def test_format_acl_spec_fills_missing_base_entries():
    rule_set = RuleSet(
        rules=(
            PermissionRule("owner@", Rights.FULL_CONTROL, Effect.DENY),
            PermissionRule("user:alice", Rights.READ),
            PermissionRule("Everyone@", Rights.READ),
        )
    )

    spec = format_acl_spec(rule_set, ObjectKind.DIRECTORY)

    assert spec == "user::---,user:alice:r-x,other::r-x,group::---"


def test_format_acl_spec_merges_rules_and_lets_deny_win():
    rule_set = RuleSet(
        rules=(
            PermissionRule("user:bob", Rights.READ),
            PermissionRule("user:bob", Rights.WRITE),
            PermissionRule("group:staff", Rights.READ),
            PermissionRule("group:staff", Rights.WRITE, Effect.DENY),
            PermissionRule("group:staff", Rights.EXECUTE),
        )
    )

    spec = format_acl_spec(rule_set, ObjectKind.FILE)

    assert spec.split(",") == [
        "user:bob:rw-",
        "group:staff:---",
        "user::---",
        "group::---",
        "other::---",
    ]


@pytest.mark.parametrize("principal", ["DOMAIN\\Bob", "role:auditors", "user:"])
def test_format_acl_spec_rejects_foreign_principals(principal):
    with pytest.raises(ValueError, match="Unsupported principal"):
        format_acl_spec(RuleSet(rules=(PermissionRule(principal, Rights.READ),)), ObjectKind.FILE)


def test_parsed_acl_formats_back_to_equivalent_entries():
    rules = RuleSet(rules=tuple(parse_getfacl(GETFACL_OUTPUT)))

    assert format_acl_spec(rules, ObjectKind.FILE) == (
        "user::rw-,user:alice:rwx,group::r--,other::r--"
    )


# ---------------------------------------------------------------------------
# Kind checks
# ---------------------------------------------------------------------------

def test_kind_checks(tmp_path):
    file_path = tmp_path / "f.txt"
    file_path.write_text("x")

    assert kind_of(str(tmp_path)) is ObjectKind.DIRECTORY
    assert kind_of(str(file_path)) is ObjectKind.FILE
    assert kind_of(str(tmp_path / "missing")) is None
    assert check_kind(str(file_path), ObjectKind.DIRECTORY).failure is FailureKind.KIND_MISMATCH
    assert check_kind(str(tmp_path / "missing"), ObjectKind.FILE).failure is FailureKind.NOT_FOUND


# ---------------------------------------------------------------------------
# PosixAclStore (no ACL tools required)
# ---------------------------------------------------------------------------

def test_posix_store_reports_missing_tools_as_unsupported(tmp_path):
    file_path = tmp_path / "f.txt"
    file_path.write_text("x")
    store = PosixAclStore(getfacl="aclsentry-no-such-getfacl")

    result = store.get_rules(str(file_path), ObjectKind.FILE)

    assert not result.ok
    assert result.failure is FailureKind.UNSUPPORTED


def test_posix_store_rejects_unmappable_rules_without_running_setfacl(tmp_path):
    file_path = tmp_path / "f.txt"
    file_path.write_text("x")
    store = PosixAclStore(setfacl="aclsentry-no-such-setfacl")

    result = store.set_rules(
        str(file_path), RuleSet(rules=(PermissionRule("DOMAIN\\Bob", Rights.READ),)), ObjectKind.FILE
    )

    assert result.failure is FailureKind.UNSUPPORTED
    assert "DOMAIN\\Bob" in result.detail


def test_posix_store_checks_kind_and_existence(tmp_path):
    store = PosixAclStore()

    assert store.get_rules(str(tmp_path / "missing"), ObjectKind.FILE).failure is FailureKind.NOT_FOUND
    assert store.set_rules(str(tmp_path), RuleSet(), ObjectKind.FILE).failure is FailureKind.KIND_MISMATCH
    assert store.get_owner(str(tmp_path / "missing")).failure is FailureKind.NOT_FOUND


def test_posix_store_owner_is_a_user_principal(tmp_path):
    assert PosixAclStore().get_owner(str(tmp_path)).value.startswith("user:")


def test_posix_store_reports_owning_group_for_group_principals(tmp_path):
    st = os.stat(tmp_path)
    store = PosixAclStore()

    assert store.get_owner(str(tmp_path), like=f"group:{st.st_gid}").value == f"group:{st.st_gid}"
    assert store.get_owner(str(tmp_path), like=f"user:{st.st_uid}").value == f"user:{st.st_uid}"


def test_posix_store_refuses_foreign_owner_principal(tmp_path):
    result = PosixAclStore().set_owner(str(tmp_path), "everyone@")

    assert result.failure is FailureKind.UNSUPPORTED


class ScriptedAclStore(PosixAclStore):
    """PosixAclStore whose getfacl/setfacl calls read and write an in-memory ACL."""

    def __init__(self, acl: str) -> None:
        super().__init__()
        self.acl = acl
        self.setfacl_calls: list[str] = []

    def _run(self, argv: list[str]) -> StoreResult[str]:
        if argv[0] == self.getfacl:
            return StoreResult.success(self.acl)
        spec = argv[argv.index("--set") + 1]
        self.setfacl_calls.append(spec)
        self.acl = "\n".join(spec.split(","))
        return StoreResult.success("")


def test_additive_mode_converges_on_empty_posix_entries(tmp_path, audit):
    path = tmp_path / "f.txt"
    path.write_text("x")
    store = ScriptedAclStore("user::rw-\ngroup::---\nother::---\n")
    settings = PolicySettings(mode=PolicyMode.ADDITIVE, take_ownership=False)
    enforcer = Enforcer(store, PolicyEngine(settings), audit)

    changed = [enforcer.normalize(str(path), ObjectKind.FILE).changed for _ in range(3)]

    assert changed == [True, False, False]
    assert len(store.setfacl_calls) == 1
    entries = store.acl.splitlines()
    assert "other::r--" in entries
    assert "group:root:rwx" in entries
    assert "user::rw-" in entries


def test_group_owner_target_converges(tmp_path, audit, read_records):
    path = tmp_path / "f.txt"
    path.write_text("x")
    gid = os.stat(path).st_gid
    store = ScriptedAclStore("user::r--\ngroup::r--\nother::r--\n")
    settings = PolicySettings(admin_principal=f"group:{gid}", owner_principal=None, take_ownership=True)
    enforcer = Enforcer(store, PolicyEngine(settings), audit)

    results = [enforcer.normalize(str(path), ObjectKind.FILE) for _ in range(3)]

    assert [r.ok for r in results] == [True, True, True]
    assert [r.changed for r in results] == [False, False, False]
    assert store.setfacl_calls == []
    assert not any("Ownership taken" in line for line in read_records())


# ---------------------------------------------------------------------------
# MemoryPermissionStore
# ---------------------------------------------------------------------------

def test_memory_store_round_trips_rules_and_keeps_owner(tmp_path, creator_rules):
    store = MemoryPermissionStore()
    path = str(tmp_path / "f.txt")
    store.seed(path, creator_rules, ObjectKind.FILE)

    store.set_rules(path, RuleSet(rules=creator_rules.rules[:1], protected=True), ObjectKind.FILE)

    snapshot = store.snapshot(path)
    assert snapshot.rules == creator_rules.rules[:1]
    assert snapshot.protected is True
    assert snapshot.owner == "user:alice"
    assert store.writes == [("rules", path)]


def test_memory_store_failures(tmp_path, creator_rules):
    denied = str(tmp_path / "denied")
    store = MemoryPermissionStore(deny={denied})
    store.seed(str(tmp_path / "f.txt"), creator_rules, ObjectKind.FILE)

    assert store.get_rules(str(tmp_path / "unknown"), ObjectKind.FILE).failure is FailureKind.NOT_FOUND
    assert store.get_rules(denied, ObjectKind.FILE).failure is FailureKind.ACCESS_DENIED
    assert store.set_owner(denied, "user:root").failure is FailureKind.ACCESS_DENIED
    assert (
        store.get_rules(str(tmp_path / "f.txt"), ObjectKind.DIRECTORY).failure
        is FailureKind.KIND_MISMATCH
    )


def test_memory_store_hands_out_default_rules_for_paths_on_disk(tmp_path, creator_rules):
    (tmp_path / "sub").mkdir()
    store = MemoryPermissionStore(default_rules=creator_rules)

    result = store.get_rules(str(tmp_path / "sub"), ObjectKind.DIRECTORY)

    assert result.ok
    assert result.value == creator_rules
    assert store.get_owner(str(tmp_path / "sub")).value == "user:alice"
    assert store.get_rules(str(tmp_path / "nope"), ObjectKind.FILE).failure is FailureKind.NOT_FOUND


# ---------------------------------------------------------------------------
# DryRunStore
# ---------------------------------------------------------------------------

def test_dry_run_store_records_but_does_not_apply(tmp_path, creator_rules):
    inner = MemoryPermissionStore()
    path = str(tmp_path / "f.txt")
    inner.seed(path, creator_rules, ObjectKind.FILE)
    store = DryRunStore(inner)

    assert store.set_rules(path, RuleSet(), ObjectKind.FILE).ok
    assert store.set_owner(path, "user:root").ok

    assert inner.snapshot(path) == creator_rules
    assert inner.writes == []
    assert store.planned == [f"set rules on {path}: <empty>", f"set owner of {path} to user:root"]
    assert store.get_rules(path, ObjectKind.FILE).value == creator_rules
