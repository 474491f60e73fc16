"""
Module: branch_kernel.db.engine
Responsibility: SQLAlchemy engine initialization and session factory management.
    The single point of database connection configuration for the system.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/, selectors/, or outer layers (create_tables imports
    models only to register their tables).

Invariants enforced:
    - PostgreSQL: READ COMMITTED with explicit row locks (SELECT ... FOR
      UPDATE) on the branch row for every mutation.
    - SQLite: WAL journal, and the driver's implicit transaction handling is
      disabled so SQLAlchemy emits BEGIN itself.  Write units open with
      ``BEGIN IMMEDIATE`` (the database-wide equivalent of the branch row
      lock); units marked read-only open a deferred ``BEGIN`` so readers never
      block behind a writer.
    - Connection pooling with pre-ping to handle stale connections.

Failure modes:
    - RuntimeError if get_engine/get_session_factory called before
      init_engine_from_url().
    - OperationalError ("database is locked") on SQLite if a writer waits
      longer than ``sqlite_busy_timeout`` seconds.
"""

import atexit

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from branch_kernel.logging_config import get_logger

logger = get_logger("db.engine")

# Execution option that marks a unit of work as read-only.
READ_ONLY_OPTION = "branch_kernel_read_only"

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy's "begin" event control transaction start.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_configured_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_busy_timeout: int = 30,
) -> Engine:
    """Build an engine with the dialect-specific settings described above."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            pool_pre_ping=pool_pre_ping,
            connect_args={"timeout": sqlite_busy_timeout, "check_same_thread": False},
        )
        _install_sqlite_hooks(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(database_url: str, **engine_options) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Preconditions: database_url is a SQLAlchemy URL (postgresql:// or sqlite://).
    Postconditions: get_engine/get_session_factory use this engine.  A second call
        replaces the first.

    Args:
        database_url: Database connection URL.
        **engine_options: Forwarded to :func:`create_configured_engine`.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    _engine = create_configured_engine(database_url, **engine_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "echo": engine_options.get("echo", False),
        },
    )
    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Each thread or request handler creates its own session from it.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def mark_read_only(session: Session) -> None:
    """Open the session's transaction in read-only mode.

    Must be called before the session executes its first statement.
    """
    session.connection(execution_options={READ_ONLY_OPTION: True})


def create_tables(engine: Engine | None = None) -> None:
    """
    Create all tables defined by the kernel models.

    Preconditions: Engine initialized, or ``engine`` supplied.
    """
    from branch_kernel.db.base import Base
    import branch_kernel.models  # noqa: F401  (registers tables)

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from branch_kernel.db.base import Base
    import branch_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def _atexit_dispose():
    """Dispose the engine on process exit to release pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)

