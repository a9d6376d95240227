"""
Module: stock_kernel.models.transfer
Responsibility: ORM persistence for Transfer (header) and TransferItem (lines).
Architecture position: Kernel > Models.  Inherits TrackedBase.

Invariants enforced:
    - transfer_number is unique.
    - status follows domain/transfer_lifecycle.TRANSFER_TRANSITIONS; leaving a
      terminal state is rejected by db/immutability.py.
    - UNIQUE(transfer_id, line_number) keeps item order stable.
    - A TransferItem with bound_token_id is token-bound: its unit is tracked by
      the PhysicalToken, never by a StockCell.

Audit relevance:
    Ledger entries written on receipt carry reference_id = Transfer.id and
    reference_line_id = TransferItem.id, so every moved unit traces back to
    its line.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TrackedBase, UUIDString
from stock_kernel.domain.values import TransferStatus


class Transfer(TrackedBase):
    """A grouped movement of stock between two locations."""

    __tablename__ = "transfers"

    __table_args__ = (
        UniqueConstraint("transfer_number", name="uq_transfer_number"),
        Index("idx_transfer_store_status", "store_id", "status"),
        Index("idx_transfer_destination", "destination_location_id"),
    )

    store_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transfer_number: Mapped[str] = mapped_column(String(50), nullable=False)

    source_location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    destination_location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # TransferStatus.value
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransferStatus.IN_TRANSIT.value,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    received_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancelled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    items: Mapped[list["TransferItem"]] = relationship(
        back_populates="transfer",
        order_by="TransferItem.line_number",
        lazy="selectin",
    )

    @property
    def transfer_status(self) -> TransferStatus:
        return TransferStatus(self.status)

    def __repr__(self) -> str:
        return f"<Transfer {self.transfer_number} {self.status}>"


class TransferItem(TrackedBase):
    """One product line of a transfer."""

    __tablename__ = "transfer_items"

    __table_args__ = (
        UniqueConstraint("transfer_id", "line_number", name="uq_transfer_item_line"),
        Index("idx_transfer_item_token", "bound_token_id"),
    )

    transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("transfers.id"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    received_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    # ItemCondition.value
    condition: Mapped[str | None] = mapped_column(String(20), nullable=True)
    condition_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    bound_token_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("physical_tokens.id"),
        nullable=True,
    )

    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transfer: Mapped[Transfer] = relationship(back_populates="items")

    @property
    def is_token_bound(self) -> bool:
        return self.bound_token_id is not None
