"""
Config-to-kernel bridges.

The kernel never imports ``branch_config``.  These helpers translate an
``EngineConfig`` into the plain values and domain objects kernel services
take in their constructors.
"""

from __future__ import annotations

from typing import Any

from branch_config.schema import EngineConfig
from branch_kernel.domain.guard import Role, RolePolicy


def _roles(names: tuple[str, ...]) -> frozenset[Role]:
    return frozenset(Role(name) for name in names)


def build_role_policy(config: EngineConfig) -> RolePolicy:
    roles = config.roles
    return RolePolicy(
        publish_roles=_roles(roles.publish),
        threshold_roles=_roles(roles.threshold),
        archive_any_roles=_roles(roles.archive_any),
        manage_any_roles=_roles(roles.manage_any),
        automated_roles=_roles(roles.automated),
    )


def engine_options(config: EngineConfig) -> dict[str, Any]:
    """Keyword arguments for ``create_configured_engine``."""
    db = config.database
    return {
        "echo": db.echo,
        "pool_size": db.pool_size,
        "max_overflow": db.max_overflow,
        "pool_timeout": db.pool_timeout,
        "pool_recycle": db.pool_recycle,
        "sqlite_busy_timeout": db.sqlite_busy_timeout,
    }
