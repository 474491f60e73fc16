"""
Configuration Loader (``branch_config.loader``).

Responsibility
--------------
Loads the YAML configuration file and parses it into the frozen
``branch_config.schema`` dataclasses.  The single public entry point for
runtime configuration is ``branch_config.get_active_config()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on the kernel only for
``ConfigurationError`` and the role vocabulary.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown sections and unknown keys are rejected, so a typo never silently
  falls back to a default.
* Numeric settings are range-checked here, not at first use.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid value or unknown key  -> ``ConfigurationError``.
"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from branch_config.schema import (
    ApprovalsConfig,
    ConvergenceConfig,
    DatabaseConfig,
    EngineConfig,
    LoggingConfig,
    RolesConfig,
)
from branch_kernel.domain.guard import MAX_REQUIRED_APPROVALS, MIN_REQUIRED_APPROVALS, Role
from branch_kernel.exceptions import ConfigurationError

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``override`` onto ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_keys(section: str, data: Any, allowed: type) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(section, "must be a mapping")
    known = {f.name for f in fields(allowed)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(section, f"unknown keys: {', '.join(unknown)}")
    return data


def _int(key: str, value: Any, minimum: int, maximum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(key, f"expected an integer, got {value!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigurationError(key, f"must be {bounds}, got {value}")
    return value


def _bool(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(key, f"expected true/false, got {value!r}")
    return value


def _str(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(key, "expected a non-empty string")
    return value


def parse_database(data: Any) -> DatabaseConfig:
    data = _check_keys("database", data, DatabaseConfig)
    if "url" not in data:
        raise ConfigurationError("database.url", "is required")
    defaults = DatabaseConfig(url=data["url"])
    return DatabaseConfig(
        url=_str("database.url", data["url"]),
        echo=_bool("database.echo", data.get("echo", defaults.echo)),
        pool_size=_int("database.pool_size", data.get("pool_size", defaults.pool_size), 1),
        max_overflow=_int(
            "database.max_overflow", data.get("max_overflow", defaults.max_overflow), 0
        ),
        pool_timeout=_int(
            "database.pool_timeout", data.get("pool_timeout", defaults.pool_timeout), 1
        ),
        pool_recycle=_int(
            "database.pool_recycle", data.get("pool_recycle", defaults.pool_recycle), -1
        ),
        sqlite_busy_timeout=_int(
            "database.sqlite_busy_timeout",
            data.get("sqlite_busy_timeout", defaults.sqlite_busy_timeout),
            0,
        ),
    )


def parse_approvals(data: Any) -> ApprovalsConfig:
    data = _check_keys("approvals", data, ApprovalsConfig)
    return ApprovalsConfig(
        default_required=_int(
            "approvals.default_required",
            data.get("default_required", ApprovalsConfig.default_required),
            MIN_REQUIRED_APPROVALS,
            MAX_REQUIRED_APPROVALS,
        ),
    )


def parse_convergence(data: Any) -> ConvergenceConfig:
    data = _check_keys("convergence", data, ConvergenceConfig)
    defaults = ConvergenceConfig()
    return ConvergenceConfig(
        default_target_ref=_str(
            "convergence.default_target_ref",
            data.get("default_target_ref", defaults.default_target_ref),
        ),
        stale_after_seconds=_int(
            "convergence.stale_after_seconds",
            data.get("stale_after_seconds", defaults.stale_after_seconds),
            1,
        ),
        poll_interval_seconds=_int(
            "convergence.poll_interval_seconds",
            data.get("poll_interval_seconds", defaults.poll_interval_seconds),
            1,
        ),
        in_progress_alert_seconds=_int(
            "convergence.in_progress_alert_seconds",
            data.get("in_progress_alert_seconds", defaults.in_progress_alert_seconds),
            1,
        ),
        archive_after_publish=_bool(
            "convergence.archive_after_publish",
            data.get("archive_after_publish", defaults.archive_after_publish),
        ),
    )


def parse_logging(data: Any) -> LoggingConfig:
    data = _check_keys("logging", data, LoggingConfig)
    level = str(data.get("level", LoggingConfig.level)).upper()
    if level not in _LOG_LEVELS:
        raise ConfigurationError("logging.level", f"unknown level {level!r}")
    return LoggingConfig(
        level=level,
        json=_bool("logging.json", data.get("json", LoggingConfig.json)),
    )


def parse_roles(data: Any) -> RolesConfig:
    data = _check_keys("roles", data, RolesConfig)
    defaults = RolesConfig()
    known = {r.value for r in Role}
    parsed: dict[str, tuple[str, ...]] = {}
    for f in fields(RolesConfig):
        value = data.get(f.name, getattr(defaults, f.name))
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise ConfigurationError(f"roles.{f.name}", "expected a list of role names")
        unknown = sorted(set(value) - known)
        if unknown:
            raise ConfigurationError(f"roles.{f.name}", f"unknown roles: {', '.join(unknown)}")
        parsed[f.name] = tuple(value)
    if not parsed["publish"]:
        raise ConfigurationError("roles.publish", "at least one role must be able to publish")
    return RolesConfig(**parsed)


def parse_config(data: dict[str, Any], source: str | None = None) -> EngineConfig:
    """Parse a whole configuration mapping."""
    unknown = sorted(set(data) - {"database", "approvals", "convergence", "logging", "roles"})
    if unknown:
        raise ConfigurationError("<root>", f"unknown sections: {', '.join(unknown)}")
    return EngineConfig(
        database=parse_database(data.get("database")),
        approvals=parse_approvals(data.get("approvals")),
        convergence=parse_convergence(data.get("convergence")),
        logging=parse_logging(data.get("logging")),
        roles=parse_roles(data.get("roles")),
        source=source,
    )
