"""
Module: stock_kernel.models.conversion
Responsibility: ORM persistence for ConversionRecord -- one row per
    parent-to-variant stock conversion.  Immutable after creation.
Architecture position: Kernel > Models.  May import from db/base.py only.

Audit relevance:
    The record's id is the shared reference_id of the conversion_out and
    conversion_in ledger entries it produced.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Index, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class ConversionRecord(Base):
    """A completed parent-to-variant conversion."""

    __tablename__ = "conversion_records"

    __table_args__ = (
        Index("idx_conversion_product_location", "product_id", "location_id"),
    )

    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    variant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    parent_quantity_consumed: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    variant_units_created: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    conversion_ratio: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)

    performed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
