"""
Module: governance_kernel.db.engine
Responsibility: The process-wide engine and session factory, and the
    transactional scope that commits a governance mutation together with its
    trail entries.
Architecture position: Kernel > DB.  create_tables()/drop_tables() import
    models/ lazily; nothing else here imports outside db/.

Backends:
    PostgreSQL is the production target: QueuePool, pre-ping, READ COMMITTED.
        Writers serialize on the milestone row with SELECT ... FOR UPDATE.
    SQLite serves local runs and the default test suite.  pysqlite's own
        transaction handling is switched off so that SQLAlchemy emits BEGIN
        and SAVEPOINT itself; the orchestrator's per-attempt savepoints
        depend on that.  Row locks are no-ops there.

Failure modes:
    RuntimeError from the accessors until init_engine_from_url() has run.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from governance_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _prepare_sqlite(engine: Engine) -> None:

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the engine and session factory for ``database_url``.

    Pool options apply to PostgreSQL.  For SQLite, ``pool_timeout`` becomes
    the driver's lock wait in seconds.  Replaces any previous engine.
    """
    global _engine, _SessionFactory

    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": pool_timeout},
        )
        _prepare_sqlite(engine)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    if _engine is not None:
        _engine.dispose()
    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"backend": backend, "pool_size": None if backend == "sqlite" else pool_size},
    )
    return engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory for callers that need one session per thread."""
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


def is_postgres() -> bool:
    return _engine is not None and _engine.dialect.name == "postgresql"


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    One transaction around a unit of governance work.

    Commits on normal exit.  On any exception rolls back, logs
    ``transaction_rolled_back`` and re-raises, so a state change never
    outlives a failed trail write.

        with session_scope() as session:
            GovernanceOrchestrator(session, auto_commit=False).mark_paid(...)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    from governance_kernel.db.base import Base
    import governance_kernel.models  # noqa: F401  (registers every table)

    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every governance table.  Test and local use only."""
    from governance_kernel.db.base import Base
    import governance_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
