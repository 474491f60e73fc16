"""
EngineConfig schema.

Typed, frozen view of the engine's YAML configuration.  The loader parses
``defaults.yaml`` (or an override file) into these types; bridges translate
them into kernel inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings passed to ``create_configured_engine``."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    sqlite_busy_timeout: int = 30


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalsConfig:
    default_required: int = 1


@dataclass(frozen=True)
class ConvergenceConfig:
    """Convergence timing and post-publish behavior."""

    default_target_ref: str = "main"
    stale_after_seconds: int = 300
    poll_interval_seconds: int = 2
    in_progress_alert_seconds: int = 600
    archive_after_publish: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass(frozen=True)
class RolesConfig:
    """Role names that unlock privileged actions.

    Values are role names as understood by the identity provider
    (``publisher``, ``administrator``, ``system`` ...).
    """

    publish: tuple[str, ...] = ("publisher", "administrator")
    threshold: tuple[str, ...] = ("administrator",)
    archive_any: tuple[str, ...] = ("administrator",)
    manage_any: tuple[str, ...] = ("administrator",)
    automated: tuple[str, ...] = ("system",)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """The complete engine configuration."""

    database: DatabaseConfig
    approvals: ApprovalsConfig = field(default_factory=ApprovalsConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    roles: RolesConfig = field(default_factory=RolesConfig)
    source: str | None = None
