"""
Module: stock_kernel.models.idempotency
Responsibility: ORM persistence for durable idempotency records.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(key): the insert of this row is the mutual-exclusion gate for a
      logical request.  First writer wins; a concurrent writer blocks on the
      unique index and then observes the winner's outcome.
    - request_hash pins the payload: the same key with a different payload is
      rejected rather than silently replayed.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class IdempotencyRecord(Base):
    """Outcome of one logical request identified by a caller-supplied key."""

    __tablename__ = "idempotency_records"

    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_key"),
    )

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # IdempotencyStatus.value
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    result_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempts: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
