"""
Module: stock_kernel.models.stock_cell
Responsibility: ORM persistence for StockCell -- the quantity of one product
    at one location.  The atomic unit of inventory truth.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(product_id, location_id): one cell per pair.  Concurrent first
      arrivals race on this constraint; the loser re-reads the winner's row.
    - quantity >= 0 outside the configured sale-overdraft policy (enforced by
      LedgerStore, which is the only writer).
    - version increments by exactly one per mutation and is copied onto the
      LedgerEntry produced by that mutation.

Audit relevance:
    Cells are created lazily and never deleted, only zeroed.  The sum of a
    cell's ledger entry changes reproduces its quantity.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, Index, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class StockCell(Base):
    """
    Quantity of one product at one location.

    Contract:
        Mutated only by LedgerStore under a row lock.  Every mutation bumps
        ``version`` and appends exactly one LedgerEntry.
    """

    __tablename__ = "stock_cells"

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", name="uq_stock_cell_product_location"),
        Index("idx_stock_cell_store_product", "store_id", "product_id"),
    )

    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    version: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<StockCell product={self.product_id} location={self.location_id} "
            f"qty={self.quantity} v{self.version}>"
        )
