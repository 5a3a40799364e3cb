"""
config.py — Configuration for aclsentry.

Settings come from an optional YAML file and are overridden by command
line flags.  The result is a frozen :class:`Config` validated by
:meth:`Config.normalized`, which raises :class:`ConfigError` on any
invalid value.  Components receive the pieces they need at construction;
nothing reads configuration from module globals.

Example ``aclsentry.yaml``::

    roots: [/srv/messdaten]
    recursive: true
    mode: subtractive
    propagation: ancestors
    admin_principal: group:root
    broad_principal: everyone@
    allow_list: [user:root, group:root]
    log_path: /var/log/aclsentry/aclsentry.log
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from aclsentry.audit import DEFAULT_MAX_BYTES
from aclsentry.events import EventKind
from aclsentry.policy import BroadAccess, PolicyMode, PolicySettings
from aclsentry.propagator import PropagationDirection

CONFIG_ENV_VAR = "ACLSENTRY_CONFIG"
STORE_BACKENDS = ("posix", "memory")


class ConfigError(ValueError):
    """Raised for unreadable or invalid configuration."""


@dataclass(frozen=True)
class Config:
    """All recognised options with their defaults."""

    roots: tuple[str, ...] = ()
    recursive: bool = True
    mode: PolicyMode = PolicyMode.SUBTRACTIVE
    directory_mode: PolicyMode | None = None
    propagation: PropagationDirection = PropagationDirection.ANCESTORS
    ancestor_depth: int | None = None
    admin_principal: str = "group:root"
    owner_principal: str | None = "user:root"
    broad_principal: str = "everyone@"
    allow_list: tuple[str, ...] = ("user:root", "group:root")
    broad_access: BroadAccess = BroadAccess.READ
    take_ownership: bool = True
    log_path: str = "aclsentry.log"
    log_max_bytes: int = DEFAULT_MAX_BYTES
    console: bool = True
    ready_retries: int = 10
    ready_interval: float = 0.5
    detect_open_writers: bool = True
    dedup_ttl: float = 10.0
    dedup_max_entries: int = 10_000
    workers: int = 4
    reprocess_on: tuple[EventKind, ...] = ()
    dry_run: bool = False
    store: str = "posix"

    def normalized(self) -> "Config":
        """Validate and coerce every field.  Raises :class:`ConfigError`."""
        try:
            mode = PolicyMode(self.mode)
            directory_mode = PolicyMode(self.directory_mode) if self.directory_mode else None
            propagation = PropagationDirection(self.propagation)
            broad_access = BroadAccess(self.broad_access)
            reprocess_on = tuple(EventKind(k) for k in self.reprocess_on)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        if EventKind.CREATED in reprocess_on:
            raise ConfigError("reprocess_on accepts only 'modified' and 'moved'")
        if not self.roots:
            raise ConfigError("at least one watched root is required")
        for name in ("admin_principal", "broad_principal"):
            if not str(getattr(self, name)).strip():
                raise ConfigError(f"{name} must be non-empty")
        if self.ready_retries < 1:
            raise ConfigError(f"ready_retries must be >= 1, got: {self.ready_retries}")
        if self.ready_interval < 0:
            raise ConfigError(f"ready_interval must be >= 0, got: {self.ready_interval}")
        if self.log_max_bytes <= 0:
            raise ConfigError(f"log_max_bytes must be > 0, got: {self.log_max_bytes}")
        if self.dedup_ttl < 0 or self.dedup_max_entries < 1:
            raise ConfigError("dedup_ttl must be >= 0 and dedup_max_entries >= 1")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got: {self.workers}")
        if self.ancestor_depth is not None and self.ancestor_depth < 0:
            raise ConfigError(f"ancestor_depth must be >= 0, got: {self.ancestor_depth}")
        if self.store not in STORE_BACKENDS:
            raise ConfigError(f"store must be one of {', '.join(STORE_BACKENDS)}, got: {self.store}")

        return replace(
            self,
            roots=tuple(os.path.abspath(os.path.expanduser(r)) for r in self.roots),
            mode=mode,
            directory_mode=directory_mode,
            propagation=propagation,
            broad_access=broad_access,
            reprocess_on=reprocess_on,
            allow_list=tuple(self.allow_list),
            owner_principal=self.owner_principal or None,
            log_path=os.path.abspath(os.path.expanduser(self.log_path)),
        )

    def policy_settings(self) -> PolicySettings:
        return PolicySettings(
            mode=self.mode,
            directory_mode=self.directory_mode,
            admin_principal=self.admin_principal,
            broad_principal=self.broad_principal,
            allow_list=self.allow_list,
            broad_access=self.broad_access,
            take_ownership=self.take_ownership,
            owner_principal=self.owner_principal,
        )


_FIELD_NAMES = {f.name for f in fields(Config)}
_TUPLE_FIELDS = {"roots", "allow_list", "reprocess_on"}


def config_from_mapping(data: Mapping[str, Any], base: Config | None = None) -> Config:
    """Overlay *data* on *base* (or the defaults).  Unknown keys are rejected."""
    unknown = sorted(set(data) - _FIELD_NAMES)
    if unknown:
        raise ConfigError(f"unknown configuration key(s): {', '.join(unknown)}")
    values: dict[str, Any] = {}
    for key, value in data.items():
        if value is None and key not in ("directory_mode", "ancestor_depth", "owner_principal"):
            continue
        if key in _TUPLE_FIELDS:
            value = (value,) if isinstance(value, str) else tuple(value)
        values[key] = value
    return replace(base or Config(), **values)


def load_config(path: str | Path | None = None, overrides: Mapping[str, Any] | None = None) -> Config:
    """Load *path* (or ``$ACLSENTRY_CONFIG``), apply *overrides*, and validate."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    config = Config()
    if path:
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except OSError as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        config = config_from_mapping(data, config)
    if overrides:
        config = config_from_mapping(
            {k: v for k, v in overrides.items() if v is not None}, config
        )
    return config.normalized()
