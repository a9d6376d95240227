"""
Module: stock_kernel.db.base
Responsibility: Declarative base for every stock ledger table: the UUID
    primary key, the column type map, and the TrackedBase actor/timestamp
    columns shared by adjustments, transfers and physical tokens.
Architecture position: Kernel > DB.  Lowest import target in the kernel.
    MUST NOT import from models/, services/, selectors/, domain/, or outer
    layers.

Invariants enforced:
    - Every row is keyed by a uuid4 stored as a 36-character string, so ids
      are identical on PostgreSQL and SQLite.
    - A Decimal attribute maps to Numeric(38, 9): grams and millilitres are
      stored exactly.
    - Timestamps are timezone-aware.  Services pass their Clock's ``now()``
      explicitly; the column defaults only cover rows built elsewhere.

Audit relevance:
    created_by_id / updated_by_id are nullable: system processes (imports,
    scheduled counts) act without an authenticated user.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from stock_kernel.db.types import QUANTITY_DECIMAL_PLACES


def utcnow() -> datetime:
    return datetime.now(UTC)


class UUIDString(TypeDecorator):
    """UUID stored as String(36).  Accepts UUID objects or UUID strings."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        # Normalizes case and rejects malformed ids before they reach the table.
        return str(value if isinstance(value, UUID) else UUID(str(value)))

    def process_result_value(self, value, dialect):
        return UUID(value) if value is not None else None


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, QUANTITY_DECIMAL_PLACES),
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Mutable entity with who/when columns for both creation and last change."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
    )
    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
