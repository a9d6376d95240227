"""
Module: stock_kernel.models.adjustment
Responsibility: ORM persistence for applied stock adjustments.  The row id is
    the ``adjustment_id`` returned to callers and the ``reference_id`` of the
    ledger entry the adjustment produced.
Architecture position: Kernel > Models.  Inherits TrackedBase.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, UUIDString


class StockAdjustment(TrackedBase):
    """An applied relative or absolute adjustment of one stock cell."""

    __tablename__ = "stock_adjustments"

    __table_args__ = (
        Index("idx_adjustment_product_location", "product_id", "location_id"),
        Index("idx_adjustment_idempotency_key", "idempotency_key"),
    )

    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # AdjustmentType.value / AdjustmentMode.value
    adjustment_type: Mapped[str] = mapped_column(String(30), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)

    requested_value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_before: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    ledger_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
