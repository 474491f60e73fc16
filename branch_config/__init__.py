"""
branch_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.

Architecture position:
    Configuration -- sits above ``branch_kernel`` and below
    ``branch_services`` / ``branch_api``.  The kernel MUST NEVER import from
    ``branch_config``; ``bridges`` translates the parsed config into kernel
    inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - The bundled ``defaults.yaml`` is always the base; an override file is
      overlaid on top of it, and ``DATABASE_URL`` wins over both.

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``ConfigurationError`` -- unknown keys or invalid values.
"""

from __future__ import annotations

import os
from pathlib import Path

from branch_config.loader import load_yaml_file, merge_dicts, parse_config
from branch_config.schema import (
    ApprovalsConfig,
    ConvergenceConfig,
    DatabaseConfig,
    EngineConfig,
    LoggingConfig,
    RolesConfig,
)
from branch_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"
DATABASE_URL_ENV = "DATABASE_URL"

__all__ = [
    "ApprovalsConfig",
    "ConvergenceConfig",
    "DatabaseConfig",
    "EngineConfig",
    "LoggingConfig",
    "RolesConfig",
    "get_active_config",
]


def get_active_config(
    path: Path | str | None = None,
    environ: dict[str, str] | None = None,
) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: Optional YAML file overlaid on the bundled defaults.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        A frozen, validated ``EngineConfig``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ConfigurationError: If validation fails.
    """
    env = os.environ if environ is None else environ
    data = load_yaml_file(DEFAULTS_PATH)
    source = str(DEFAULTS_PATH)
    if path is not None:
        data = merge_dicts(data, load_yaml_file(Path(path)))
        source = str(path)

    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        data = merge_dicts(data, {"database": {"url": database_url}})

    config = parse_config(data, source=source)

    _logger.info(
        "config_loaded",
        extra={
            "config_source": source,
            "database_dialect": config.database.url.split(":", 1)[0],
            "database_url_from_env": bool(database_url),
            "default_required_approvals": config.approvals.default_required,
            "archive_after_publish": config.convergence.archive_after_publish,
        },
    )
    return config
