"""
Module: stock_kernel.models.physical_token
Responsibility: ORM persistence for physical (scannable) tokens and their
    append-only scan log.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - code is unique.
    - status == in_transit iff current_transfer_id references a non-terminal
      transfer (maintained by TokenBinding; checked by LedgerSelector audits).
    - While a token is bound, its location and status are the sole truth for
      the unit it represents; no StockCell is touched for that unit.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.domain.values import TokenStatus


class PhysicalToken(TrackedBase):
    """A scannable code standing for one physical unit."""

    __tablename__ = "physical_tokens"

    __table_args__ = (
        UniqueConstraint("code", name="uq_physical_token_code"),
        Index("idx_token_store_status", "store_id", "status"),
        Index("idx_token_current_transfer", "current_transfer_id"),
    )

    code: Mapped[str] = mapped_column(String(255), nullable=False)
    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    current_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # TokenStatus.value
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TokenStatus.AVAILABLE.value,
    )

    current_transfer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    total_scans: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    child_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    @property
    def token_status(self) -> TokenStatus:
        return TokenStatus(self.status)

    def __repr__(self) -> str:
        return f"<PhysicalToken {self.code} {self.status}>"


class TokenScan(Base):
    """One scan of a physical token.  Append-only."""

    __tablename__ = "token_scans"

    __table_args__ = (
        Index("idx_token_scan_token", "token_id", "scanned_at"),
    )

    token_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("physical_tokens.id"),
        nullable=False,
    )
    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # ScanOperation.value
    operation: Mapped[str] = mapped_column(String(30), nullable=False)
    location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    scanned_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
