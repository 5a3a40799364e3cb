from __future__ import annotations

import io
from pathlib import Path
from typing import Callable

import pytest

from aclsentry.audit import AuditLog
from aclsentry.console import ConsoleSink
from aclsentry.policy import PermissionRule, Rights, RuleSet


@pytest.fixture
def fallback_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def audit(tmp_path: Path, fallback_stream: io.StringIO):
    log = AuditLog(
        tmp_path / "logs" / "audit.log",
        fallback=ConsoleSink(stream=fallback_stream, colour=False),
    )
    yield log
    log.close()


@pytest.fixture
def read_records(audit: AuditLog) -> Callable[[], list[str]]:
    def _read() -> list[str]:
        if not audit.path.exists():
            return []
        return audit.path.read_text(encoding="utf-8").splitlines()

    return _read


@pytest.fixture
def creator_rules() -> RuleSet:
    """Rules a file typically carries right after an external process created it."""
    return RuleSet(
        rules=(
            PermissionRule("user:root", Rights.FULL_CONTROL),
            PermissionRule("user:alice", Rights.MODIFY),
            PermissionRule("everyone@", Rights.READ),
        ),
        owner="user:alice",
    )
