#!/usr/bin/env python3
"""
main.py — CLI entry point for aclsentry.

Sub-commands
------------
watch   Monitor the configured roots and normalise permissions of every
        newly created entry until interrupted (Ctrl+C, SIGTERM, or ``q``
        followed by Enter on an interactive terminal).

apply   Normalise an existing tree once: every directory below PATH gets
        the directory policy, every file the file policy.  Exits 1 if any
        path failed.

Usage
-----
    # Watch with a config file
    python -m aclsentry.main watch --config /etc/aclsentry.yaml

    # Watch a directory with CLI options only
    python -m aclsentry.main watch --root /srv/messdaten --mode subtractive

    # Show what would change without touching anything
    python -m aclsentry.main apply /srv/messdaten --dry-run
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Any

from aclsentry.audit import AuditLog
from aclsentry.config import Config, ConfigError, load_config
from aclsentry.console import ConsoleSink, Severity
from aclsentry.dedup import EventDeduplicator
from aclsentry.enforcer import Enforcer
from aclsentry.monitor import EventSource, StartupError
from aclsentry.policy import ObjectKind, PolicyEngine, RuleSet
from aclsentry.propagator import Propagator
from aclsentry.readiness import ReadinessGate
from aclsentry.store import DryRunStore, MemoryPermissionStore, PermissionStore, PosixAclStore
from aclsentry.watcher import WatchLoop, describe_roots

logger = logging.getLogger("aclsentry")

EXIT_OK = 0
EXIT_FAILURE = 1


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_store(config: Config) -> PermissionStore:
    """Create the permission store selected by *config*."""
    if config.store == "memory":
        store: PermissionStore = MemoryPermissionStore(default_rules=RuleSet())
    else:
        if not PosixAclStore.available():
            raise StartupError("getfacl/setfacl not found; install the 'acl' package")
        store = PosixAclStore()
    if config.dry_run:
        store = DryRunStore(store)
    return store


def build_audit(config: Config) -> AuditLog:
    return AuditLog(
        config.log_path,
        max_bytes=config.log_max_bytes,
        console=ConsoleSink() if config.console else None,
    )


def build_components(config: Config, audit: AuditLog) -> tuple[Enforcer, Propagator]:
    store = build_store(config)
    enforcer = Enforcer(store, PolicyEngine(config.policy_settings()), audit)
    propagator = Propagator(enforcer, audit, roots=config.roots, ancestor_depth=config.ancestor_depth)
    return enforcer, propagator


def build_loop(config: Config, audit: AuditLog) -> WatchLoop:
    """Assemble a :class:`WatchLoop` from *config*."""
    enforcer, propagator = build_components(config, audit)
    return WatchLoop(
        deduplicator=EventDeduplicator(ttl=config.dedup_ttl, max_entries=config.dedup_max_entries),
        gate=ReadinessGate(
            retries=config.ready_retries,
            interval=config.ready_interval,
            detect_open_writers=config.detect_open_writers,
        ),
        enforcer=enforcer,
        propagator=propagator,
        audit=audit,
        direction=config.propagation,
        reprocess_on=config.reprocess_on,
        workers=config.workers,
    )


# ---------------------------------------------------------------------------
# watch sub-command
# ---------------------------------------------------------------------------

def _install_stop_triggers(stop: threading.Event) -> None:
    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %d, shutting down …", signum)
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(signum, _on_signal)
        except ValueError:
            pass  # not in main thread

    if sys.stdin is not None and sys.stdin.isatty():
        def _read_keys() -> None:
            for line in sys.stdin:
                if line.strip().lower() == "q":
                    stop.set()
                    return

        threading.Thread(target=_read_keys, name="aclsentry-keys", daemon=True).start()


def cmd_watch(config: Config) -> int:
    """Run the watch loop until a stop trigger fires."""
    audit = build_audit(config)
    try:
        loop = build_loop(config, audit)
    except StartupError as exc:
        logger.error("%s", exc)
        audit.close()
        return EXIT_FAILURE

    source = EventSource(config.roots, recursive=config.recursive)
    try:
        source.start(loop.submit)
    except StartupError as exc:
        logger.error("%s", exc)
        loop.stop(wait=False)
        audit.close()
        return EXIT_FAILURE

    stop = threading.Event()
    _install_stop_triggers(stop)
    mode = f"{config.mode.value}{' (dry run)' if config.dry_run else ''}"
    audit.record(
        f"Monitoring {describe_roots(config.roots)} "
        f"(recursive={config.recursive}, policy={mode}, propagation={config.propagation.value}). "
        "Press q + Enter or Ctrl+C to exit."
    )

    try:
        while not stop.wait(1.0):
            if not source.running:
                audit.record("Event source stopped unexpectedly", Severity.ERROR)
                break
    finally:
        source.stop()
        loop.stop(wait=True)
        audit.record("Service stopped.")
        audit.close()
    return EXIT_OK


# ---------------------------------------------------------------------------
# apply sub-command
# ---------------------------------------------------------------------------

def cmd_apply(config: Config, path: str) -> int:
    """Normalise every entry below *path* once."""
    target = os.path.abspath(path)
    if not os.path.exists(target):
        logger.error("Path not found: %s", target)
        return EXIT_FAILURE

    audit = build_audit(config)
    try:
        enforcer, propagator = build_components(config, audit)
    except StartupError as exc:
        logger.error("%s", exc)
        audit.close()
        return EXIT_FAILURE

    failures = 0
    try:
        if os.path.isdir(target):
            result = propagator.apply_recursively_to_subtree(target)
            failures += len(result.failed)
            directories = result.applied if target in result.applied else [target, *result.applied]
            for directory in directories:
                failures += _apply_files(enforcer, directory)
        else:
            failures += 0 if enforcer.normalize(target, ObjectKind.FILE).ok else 1
        audit.record(f"Applied policy to {target}: {failures} failure(s)")
    finally:
        audit.close()
    return EXIT_OK if failures == 0 else EXIT_FAILURE


def _apply_files(enforcer: Enforcer, directory: str) -> int:
    failures = 0
    try:
        with os.scandir(directory) as entries:
            files = sorted(e.path for e in entries if e.is_file(follow_symlinks=False))
    except OSError as exc:
        enforcer.audit.record(f"Error listing directory {directory}: {exc}", Severity.ERROR)
        return 1
    for file_path in files:
        if not enforcer.normalize(file_path, ObjectKind.FILE).ok:
            failures += 1
    return failures


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="YAML configuration file.")
    parser.add_argument(
        "--mode",
        choices=["additive", "subtractive", "rebuild"],
        default=None,
        help="Policy mode (default: subtractive).",
    )
    parser.add_argument(
        "--directory-mode",
        choices=["additive", "subtractive", "rebuild"],
        default=None,
        help="Policy mode for directories (default: same as --mode).",
    )
    parser.add_argument("--admin-principal", default=None, help="Trust group (default: group:root).")
    parser.add_argument("--broad-principal", default=None, help="Broad-access principal (default: everyone@).")
    parser.add_argument(
        "--allow",
        dest="allow_list",
        nargs="+",
        default=None,
        help="Principals whose write access is kept (default: user:root group:root).",
    )
    parser.add_argument(
        "--broad-access",
        choices=["read", "remove"],
        default=None,
        help="Keep Read for the broad principal or remove it (default: read).",
    )
    parser.add_argument("--log-path", default=None, help="Audit log file (default: aclsentry.log).")
    parser.add_argument("--store", choices=["posix", "memory"], default=None, help="Permission store backend.")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Only log intended changes.")
    parser.add_argument("--no-console", dest="console", action="store_false", default=None,
                        help="Do not mirror audit records to the console.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="aclsentry",
        description="aclsentry — normalise permissions of newly created files and directories.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # -- watch --
    watch_p = sub.add_parser("watch", help="Watch directories and enforce the policy.")
    _add_common_options(watch_p)
    watch_p.add_argument(
        "--root",
        dest="roots",
        nargs="+",
        default=None,
        help="Directories to watch.",
    )
    watch_p.add_argument(
        "--no-recursive",
        dest="recursive",
        action="store_false",
        default=None,
        help="Watch only the top level of each root.",
    )
    watch_p.add_argument(
        "--propagation",
        choices=["ancestors", "descendants", "none"],
        default=None,
        help="Directory propagation after a file is normalised (default: ancestors).",
    )
    watch_p.add_argument("--workers", type=int, default=None, help="Worker threads (default: 4).")
    watch_p.add_argument(
        "--reprocess-on",
        nargs="+",
        choices=["modified", "moved"],
        default=None,
        help="Also treat these notifications as creations.",
    )

    # -- apply --
    apply_p = sub.add_parser("apply", help="Normalise an existing tree once.")
    _add_common_options(apply_p)
    apply_p.add_argument("path", help="File or directory to normalise.")

    return parser


_NON_CONFIG_ARGS = {"command", "config", "verbose", "path"}


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k not in _NON_CONFIG_ARGS and v is not None}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """Parse CLI args and dispatch to the appropriate sub-command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    overrides = overrides_from_args(args)
    if args.command == "apply":
        overrides.setdefault("roots", [args.path])

    try:
        config = load_config(args.config, overrides)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FAILURE

    if args.command == "watch":
        return cmd_watch(config)
    return cmd_apply(config, args.path)


if __name__ == "__main__":
    sys.exit(main())
