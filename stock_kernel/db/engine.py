"""
Module: stock_kernel.db.engine
Responsibility: Engine construction, the process-wide session factory, and
    table creation for the stock ledger.
Architecture position: Kernel > DB.  May import from db/base.py.
    MUST NOT import from services/, selectors/, domain/, or outer layers
    (except create_tables, which imports the modules that define tables).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED.  Correctness comes from explicit
      row locks (SELECT ... FOR UPDATE) on stock cells, sequence counters,
      idempotency records and tokens, plus unique constraints.
    - On SQLite the pysqlite driver never issues its own BEGIN, so the
      SAVEPOINTs used for first-arrival cell creation and idempotency claims
      nest correctly.  An in-memory database is one shared connection.
    - Sessions do not expire attributes on commit: engines commit per step
      and keep reading the rows they just wrote.

Failure modes:
    - RuntimeError when a session is requested before init_engine_from_url().
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from stock_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create an engine for ``database_url`` without installing it.

    Pool settings apply to server databases only.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    kwargs: dict = {
        "echo": echo,
        "connect_args": {"check_same_thread": False, "timeout": 30},
    }
    if _is_memory_sqlite(database_url):
        kwargs["poolclass"] = StaticPool
    eng = create_engine(database_url, **kwargs)

    @event.listens_for(eng, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return eng


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Build the process-wide engine and session factory.

    Any previous engine is disposed.  ``pool_options`` are passed to
    ``build_engine``.  Also configures kernel logging if nothing has yet.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(database_url, echo=echo, **pool_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo, **pool_options},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """The shared factory; each thread should open its own session from it."""
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Commit on success, roll back and re-raise on error, always close.

    Engines commit on their own; this scope is for callers composing
    flush-only services (``auto_commit=False``) into one transaction.
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_scope_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from stock_kernel.db.base import Base
    import stock_kernel.models  # noqa: F401  (registers every model table)
    import stock_kernel.services.sequence_service  # noqa: F401  (sequence_counters)

    return Base.metadata


def create_tables(engine: Engine | None = None) -> None:
    """Create every ledger table on ``engine`` (default: the installed one)."""
    engine = engine or get_engine()
    metadata = _metadata()
    metadata.create_all(engine)
    logger.info("tables_created", extra={"table_count": len(metadata.tables)})


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every ledger table.  Test and development use only."""
    _metadata().drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the installed engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


atexit.register(reset_engine)
