"""Database layer - engine, base classes, and portable types."""

from branch_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from branch_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    mark_read_only,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "UUID",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "mark_read_only",
]
