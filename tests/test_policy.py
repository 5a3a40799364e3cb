from __future__ import annotations

import pytest

from aclsentry.policy import (
    BroadAccess,
    Effect,
    ObjectKind,
    PermissionRule,
    PolicyEngine,
    PolicyMode,
    PolicySettings,
    Rights,
    RuleSet,
    format_rights,
)

SYSTEM = PermissionRule("SYSTEM", Rights.FULL_CONTROL)
ALICE_MODIFY = PermissionRule("Alice", Rights.MODIFY)
EVERYONE_READ = PermissionRule("Everyone", Rights.READ)


def _engine(**overrides) -> PolicyEngine:
    values = dict(
        allow_list=("SYSTEM",),
        admin_principal="Administrators",
        broad_principal="Everyone",
        take_ownership=False,
    )
    values.update(overrides)
    return PolicyEngine(PolicySettings(**values))


def _mixed_rules() -> RuleSet:
    return RuleSet(
        rules=(
            SYSTEM,
            ALICE_MODIFY,
            EVERYONE_READ,
            PermissionRule("Bob", Rights.READ | Rights.EXECUTE),
            PermissionRule("Carol", Rights.WRITE, Effect.DENY),
        ),
        owner="Alice",
    )


# ---------------------------------------------------------------------------
# Subtractive
# ---------------------------------------------------------------------------

def test_subtractive_removes_write_from_non_allow_listed_principals():
    rules = RuleSet(rules=(SYSTEM, ALICE_MODIFY, EVERYONE_READ))

    outcome = _engine(mode=PolicyMode.SUBTRACTIVE).apply(rules, ObjectKind.FILE)

    assert outcome.rule_set.rules == (SYSTEM, EVERYONE_READ)
    assert outcome.rule_set.protected is True
    assert any("Alice" in change for change in outcome.changes)


def test_subtractive_matches_allow_list_case_insensitively():
    rules = RuleSet(
        rules=(
            PermissionRule("NT-AUTORITÄT\\SYSTEM", Rights.FULL_CONTROL),
            PermissionRule("DOMAIN\\Alice", Rights.WRITE),
        )
    )
    engine = _engine(mode=PolicyMode.SUBTRACTIVE, allow_list=("nt-autorität\\system",))

    outcome = engine.apply(rules, ObjectKind.FILE)

    assert [r.principal for r in outcome.rule_set.rules] == ["NT-AUTORITÄT\\SYSTEM"]


def test_subtractive_keeps_deny_rules_and_read_only_rules():
    outcome = _engine(mode=PolicyMode.SUBTRACTIVE).apply(_mixed_rules(), ObjectKind.FILE)

    principals = [r.principal for r in outcome.rule_set.rules]
    assert principals == ["SYSTEM", "Everyone", "Bob", "Carol"]


def test_subtractive_can_remove_broad_principal_entirely():
    engine = _engine(mode=PolicyMode.SUBTRACTIVE, broad_access=BroadAccess.REMOVE)

    outcome = engine.apply(RuleSet(rules=(SYSTEM, EVERYONE_READ)), ObjectKind.FILE)

    assert outcome.rule_set.rules == (SYSTEM,)


# ---------------------------------------------------------------------------
# Additive
# ---------------------------------------------------------------------------

def test_additive_grants_read_and_full_control():
    outcome = _engine(mode=PolicyMode.ADDITIVE).apply(RuleSet(rules=(ALICE_MODIFY,)), ObjectKind.FILE)

    assert outcome.rule_set.rules == (
        ALICE_MODIFY,
        PermissionRule("Everyone", Rights.READ),
        PermissionRule("Administrators", Rights.FULL_CONTROL),
    )


def test_additive_does_not_duplicate_covering_rules():
    existing = RuleSet(
        rules=(
            PermissionRule("everyone", Rights.READ | Rights.EXECUTE),
            PermissionRule("ADMINISTRATORS", Rights.FULL_CONTROL),
        ),
        protected=True,
    )

    outcome = _engine(mode=PolicyMode.ADDITIVE).apply(existing, ObjectKind.DIRECTORY)

    assert outcome.rule_set == existing
    assert not outcome.changed


# ---------------------------------------------------------------------------
# Rebuild
# ---------------------------------------------------------------------------

def test_rebuild_grants_full_control_to_allow_list_and_downgrades_others():
    rules = RuleSet(
        rules=(
            PermissionRule("SYSTEM", Rights.READ),
            ALICE_MODIFY,
            PermissionRule("Bob", Rights.READ | Rights.EXECUTE),
        )
    )

    outcome = _engine(mode=PolicyMode.REBUILD).apply(rules, ObjectKind.FILE)

    assert outcome.rule_set.rules == (
        PermissionRule("SYSTEM", Rights.FULL_CONTROL),
        PermissionRule("Alice", Rights.READ),
        PermissionRule("Bob", Rights.READ | Rights.EXECUTE),
    )


def test_rebuild_merges_rules_that_downgrade_to_the_same_rule():
    rules = RuleSet(rules=(PermissionRule("Alice", Rights.WRITE), PermissionRule("alice", Rights.MODIFY)))

    outcome = _engine(mode=PolicyMode.REBUILD).apply(rules, ObjectKind.FILE)

    assert outcome.rule_set.rules == (PermissionRule("Alice", Rights.READ),)


# ---------------------------------------------------------------------------
# Cross-cutting
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("mode", list(PolicyMode))
@pytest.mark.parametrize("broad_access", list(BroadAccess))
def test_apply_is_idempotent(mode, broad_access):
    engine = _engine(mode=mode, broad_access=broad_access, take_ownership=True)

    first = engine.apply(_mixed_rules(), ObjectKind.FILE)
    second = engine.apply(first.rule_set, ObjectKind.FILE)

    assert second.rule_set == first.rule_set
    assert second.owner == first.owner
    assert not second.changed


def test_take_ownership_uses_owner_principal_when_given():
    engine = _engine(take_ownership=True, owner_principal="user:root")

    outcome = engine.apply(RuleSet(owner="user:alice"), ObjectKind.FILE)

    assert outcome.owner == "user:root"
    assert outcome.rule_set.owner == "user:root"


def test_owner_left_alone_without_take_ownership():
    outcome = _engine(take_ownership=False).apply(RuleSet(owner="user:alice"), ObjectKind.FILE)

    assert outcome.owner == "user:alice"


def test_directory_mode_overrides_mode_for_directories():
    engine = _engine(mode=PolicyMode.SUBTRACTIVE, directory_mode=PolicyMode.ADDITIVE)
    rules = RuleSet(rules=(ALICE_MODIFY,))

    as_file = engine.apply(rules, ObjectKind.FILE)
    as_dir = engine.apply(rules, ObjectKind.DIRECTORY)

    assert as_file.rule_set.rules == ()
    assert ALICE_MODIFY in as_dir.rule_set
    assert PermissionRule("Administrators", Rights.FULL_CONTROL) in as_dir.rule_set


def test_engine_does_not_mutate_input():
    rules = _mixed_rules()

    _engine(mode=PolicyMode.REBUILD, take_ownership=True).apply(rules, ObjectKind.FILE)

    assert rules == _mixed_rules()


def test_rules_compare_principals_case_insensitively():
    assert PermissionRule("SYSTEM", Rights.READ) == PermissionRule("system", Rights.READ)
    assert PermissionRule("SYSTEM", Rights.READ) != PermissionRule("system", Rights.WRITE)
    assert PermissionRule("SYSTEM", Rights.READ) != PermissionRule("system", Rights.READ, Effect.DENY)
    assert len({PermissionRule("Straße", Rights.READ), PermissionRule("STRASSE", Rights.READ)}) == 1


def test_format_rights():
    assert format_rights(Rights.FULL_CONTROL) == "FullControl"
    assert format_rights(Rights.MODIFY) == "Modify"
    assert format_rights(Rights.READ | Rights.EXECUTE) == "Read|Execute"
    assert format_rights(Rights(0)) == "None"
