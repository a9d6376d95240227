"""
Module: stock_kernel.models.ledger_entry
Responsibility: ORM persistence for LedgerEntry -- the immutable, append-only
    record written on every quantity change.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - quantity_after == quantity_before + quantity_change (checked by
      LedgerStore before flush and by LedgerSelector.verify_cell_trail).
    - UNIQUE(stock_cell_id, cell_version): the per-cell trail is ordered and
      gapless; a lost update would surface as an IntegrityError.
    - UNIQUE(reference_type, reference_id, reference_line_id, transaction_type):
      each half of a transfer line or conversion is applied at most once.
      NULLs are distinct, so entries without a reference line are unaffected.
    - Append-only: UPDATE and DELETE are rejected by db/immutability.py.

Audit relevance:
    Ordered by (stock_cell_id, cell_version), entries form the audit stream
    consumed by reporting.  A transfer is reconstructable from its
    transfer_out / transfer_in pair sharing reference_id.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class LedgerEntry(Base):
    """One immutable quantity change on one stock cell."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        UniqueConstraint("stock_cell_id", "cell_version", name="uq_ledger_cell_version"),
        UniqueConstraint(
            "reference_type",
            "reference_id",
            "reference_line_id",
            "transaction_type",
            name="uq_ledger_reference_line",
        ),
        Index("idx_ledger_cell_created", "stock_cell_id", "created_at"),
        Index("idx_ledger_reference", "reference_type", "reference_id"),
        Index("idx_ledger_store_product", "store_id", "product_id"),
    )

    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    stock_cell_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_cells.id"),
        nullable=False,
    )
    cell_version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # TransactionType.value
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)

    quantity_before: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # ReferenceType.value
    reference_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reference_line_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    performed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_balanced(self) -> bool:
        return self.quantity_before + self.quantity_change == self.quantity_after

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.transaction_type} cell={self.stock_cell_id} "
            f"v{self.cell_version} {self.quantity_before}->{self.quantity_after}>"
        )
