"""
Pytest fixtures for the stock kernel test suite.

Provides:
- Database sessions with per-test rollback isolation
- Engines wired to a deterministic clock
- Real-commit sessions for PostgreSQL concurrency tests
- Log capture as parsed JSON records

Environment Variables:
- DATABASE_URL: connection URL.  Defaults to an in-memory SQLite database.
  Tests marked ``postgres`` are skipped unless this points at PostgreSQL.
"""

import json
import logging
import os
import threading
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from stock_kernel.db.base import Base
from stock_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from stock_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from stock_kernel.domain.clock import DeterministicClock
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from stock_kernel.services import (
    AdjustmentEngine,
    ConversionEngine,
    IdempotencyService,
    LedgerStore,
    SequenceService,
    TokenBinding,
    TransferStateMachine,
)

DEFAULT_DATABASE_URL = "sqlite:///:memory:"

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


def pytest_collection_modifyitems(config, items):
    if get_database_url().startswith("postgresql"):
        return
    skip_pg = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture stock_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, adjustment_engine):
            adjustment_engine.adjust(...)
            logs = captured_logs()
            assert any(r["message"] == "adjustment_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stock_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session."""
    eng = init_engine_from_url(
        get_database_url(), echo=False,
        pool_size=30, max_overflow=20, pool_timeout=10,
    )
    # init_engine_from_url configures logging; keep the test configuration.
    logging.getLogger("stock_kernel").setLevel(logging.DEBUG)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session and register immutability listeners."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


def _truncate_all_tables(engine):
    """Delete all rows; used after tests that perform real commits."""
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            table_names = [t.name for t in reversed(Base.metadata.sorted_tables)]
            conn.execute(text("TRUNCATE " + ", ".join(table_names) + " CASCADE"))
        else:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())
        conn.commit()


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection.  An
    engine's ``session.commit()`` releases a savepoint and its
    ``session.rollback()`` rolls back to one; nothing reaches the database.
    The outer transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Concurrency testing fixtures (real commits + TRUNCATE cleanup)
# =============================================================================


@pytest.fixture(scope="function")
def pg_session_factory(db_engine, db_tables):
    """Provide a tracked session factory for creating sessions in concurrent threads.

    Each thread should create its own session using this factory.  On
    teardown every tracked session is rolled back and closed and all data
    is truncated.
    """
    factory = get_session_factory()
    created_sessions = []
    lock = threading.Lock()
    closed = False

    def tracked_factory():
        nonlocal closed
        with lock:
            if closed:
                raise RuntimeError("pg_session_factory closed (fixture teardown)")
            s = factory()
            created_sessions.append(s)
            return s

    yield tracked_factory

    with lock:
        closed = True

    for s in created_sessions:
        if s.is_active:
            s.rollback()
        s.close()

    _truncate_all_tables(db_engine)


# =============================================================================
# Identity fixtures
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


@pytest.fixture
def store_id() -> UUID:
    return uuid4()


@pytest.fixture
def product_id() -> UUID:
    return uuid4()


@pytest.fixture
def location_a() -> UUID:
    return uuid4()


@pytest.fixture
def location_b() -> UUID:
    return uuid4()


# Clock and policy fixtures


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def policy() -> LedgerPolicy:
    return LedgerPolicy()


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def ledger_store(session: Session, deterministic_clock, policy) -> LedgerStore:
    return LedgerStore(session, deterministic_clock, policy)


@pytest.fixture
def idempotency_service(session: Session, deterministic_clock) -> IdempotencyService:
    return IdempotencyService(session, deterministic_clock)


@pytest.fixture
def sequence_service(session: Session) -> SequenceService:
    return SequenceService(session)


@pytest.fixture
def token_binding(session: Session, deterministic_clock, policy) -> TokenBinding:
    return TokenBinding(session, deterministic_clock, policy)


@pytest.fixture
def adjustment_engine(session: Session, deterministic_clock, policy) -> AdjustmentEngine:
    return AdjustmentEngine(session, deterministic_clock, policy)


@pytest.fixture
def conversion_engine(session: Session, deterministic_clock, policy) -> ConversionEngine:
    return ConversionEngine(session, deterministic_clock, policy)


@pytest.fixture
def transfer_machine(session: Session, deterministic_clock, policy) -> TransferStateMachine:
    return TransferStateMachine(session, deterministic_clock, policy)


# =============================================================================
# Data helpers
# =============================================================================


@pytest.fixture
def stock_cell(adjustment_engine, store_id, test_actor_id):
    """Seed a cell with an absolute quantity and return the result.

    Usage::

        stock_cell(product_id, location_id, Decimal("100"))
    """
    from stock_kernel.domain.dtos import AdjustmentRequest
    from stock_kernel.domain.values import AdjustmentMode, AdjustmentType

    def _seed(product_id: UUID, location_id: UUID, quantity):
        return adjustment_engine.adjust(
            AdjustmentRequest(
                store_id=store_id,
                product_id=product_id,
                location_id=location_id,
                adjustment_type=AdjustmentType.RECEIVED,
                mode=AdjustmentMode.ABSOLUTE,
                value=quantity,
                idempotency_key=f"seed-{uuid4()}",
            ),
            test_actor_id,
        )

    return _seed
