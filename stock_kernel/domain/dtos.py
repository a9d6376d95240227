"""
DTOs -- Pure domain data transfer objects for the stock ledger.

Responsibility:
    Defines the immutable data structures that cross the engine boundary:
    requests (AdjustmentRequest, TransferItemSpec, LedgerMetadata), results
    (AdjustmentResult, ReceiptResult, ConversionResult), and read models
    (LedgerEntryView, TransferView, PhysicalTokenView).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  ``from_model()``
    class methods are boundary converters invoked only from services and
    selectors.

Invariants enforced:
    - Every quantity is a Decimal.
    - Transfer items are a tagged union: ``TokenBoundItem`` (the physical
      token is authoritative for the unit, no ledger math) or
      ``LedgerTrackedItem`` (moved through the ledger).  Code that handles
      items dispatches on the variant rather than testing for a null token.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

from stock_kernel.domain.values import (
    AdjustmentMode,
    AdjustmentType,
    ItemCondition,
    ReferenceType,
    TokenStatus,
    TransactionType,
    TransferStatus,
)

if TYPE_CHECKING:
    from stock_kernel.models.ledger_entry import LedgerEntry as LedgerEntryModel
    from stock_kernel.models.physical_token import PhysicalToken as PhysicalTokenModel
    from stock_kernel.models.transfer import Transfer as TransferModel
    from stock_kernel.models.transfer import TransferItem as TransferItemModel


# Resolves a location id to a display name; supplied by the caller.
LocationNameResolver = Callable[[UUID], "str | None"]


# =============================================================================
# Ledger
# =============================================================================


@dataclass(frozen=True)
class CellKey:
    """Identity of a stock cell."""

    product_id: UUID
    location_id: UUID

    def sort_key(self) -> tuple[str, str]:
        return (str(self.product_id), str(self.location_id))


@dataclass(frozen=True)
class LedgerMetadata:
    """Descriptive fields written onto every LedgerEntry."""

    store_id: UUID
    transaction_type: TransactionType
    reason: str | None = None
    reference_type: ReferenceType | None = None
    reference_id: UUID | None = None
    reference_line_id: UUID | None = None
    performed_by: UUID | None = None


@dataclass(frozen=True)
class LedgerEntryView:
    """Read model of one immutable ledger row."""

    entry_id: UUID
    store_id: UUID
    location_id: UUID
    product_id: UUID
    stock_cell_id: UUID
    cell_version: int
    transaction_type: TransactionType
    quantity_before: Decimal
    quantity_change: Decimal
    quantity_after: Decimal
    reason: str | None
    reference_type: ReferenceType | None
    reference_id: UUID | None
    performed_by: UUID | None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: LedgerEntryModel) -> LedgerEntryView:
        return cls(
            entry_id=entry.id,
            store_id=entry.store_id,
            location_id=entry.location_id,
            product_id=entry.product_id,
            stock_cell_id=entry.stock_cell_id,
            cell_version=entry.cell_version,
            transaction_type=TransactionType(entry.transaction_type),
            quantity_before=entry.quantity_before,
            quantity_change=entry.quantity_change,
            quantity_after=entry.quantity_after,
            reason=entry.reason,
            reference_type=(
                ReferenceType(entry.reference_type) if entry.reference_type else None
            ),
            reference_id=entry.reference_id,
            performed_by=entry.performed_by,
            created_at=entry.created_at,
        )


@dataclass(frozen=True)
class FlooredDelta:
    """Outcome of a delta that was clamped at zero instead of rejected."""

    requested: Decimal
    applied: Decimal
    available_before: Decimal

    @property
    def shortfall(self) -> Decimal:
        return abs(self.requested) - abs(self.applied)


# =============================================================================
# Adjustments
# =============================================================================


@dataclass(frozen=True)
class AdjustmentRequest:
    """
    Transient adjustment input, consumed once by the AdjustmentEngine.

    ``value`` is a signed delta for RELATIVE mode and the target quantity for
    ABSOLUTE mode.
    """

    store_id: UUID
    product_id: UUID
    location_id: UUID
    adjustment_type: AdjustmentType
    mode: AdjustmentMode
    value: Decimal
    idempotency_key: str
    reason: str = ""
    notes: str | None = None

    def fingerprint_payload(self) -> dict[str, Any]:
        """Canonical payload hashed to detect idempotency-key reuse."""
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "adjustment_type": AdjustmentType(self.adjustment_type).value,
            "mode": AdjustmentMode(self.mode).value,
            "value": self.value,
        }


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of an adjustment; a replay compares equal to the first result."""

    adjustment_id: UUID
    quantity_before: Decimal
    quantity_after: Decimal
    cell_total: Decimal
    replayed: bool = field(default=False, compare=False)

    def to_payload(self) -> dict[str, str]:
        return {
            "adjustment_id": str(self.adjustment_id),
            "quantity_before": str(self.quantity_before),
            "quantity_after": str(self.quantity_after),
            "cell_total": str(self.cell_total),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, str], replayed: bool = True) -> AdjustmentResult:
        return cls(
            adjustment_id=UUID(payload["adjustment_id"]),
            quantity_before=Decimal(payload["quantity_before"]),
            quantity_after=Decimal(payload["quantity_after"]),
            cell_total=Decimal(payload["cell_total"]),
            replayed=replayed,
        )


# =============================================================================
# Conversions
# =============================================================================


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of a parent-to-variant conversion."""

    conversion_id: UUID
    parent_quantity_consumed: Decimal
    variant_units_created: Decimal
    new_parent_quantity: Decimal
    new_variant_quantity: Decimal
    replayed: bool = field(default=False, compare=False)

    def to_payload(self) -> dict[str, str]:
        return {
            "conversion_id": str(self.conversion_id),
            "parent_quantity_consumed": str(self.parent_quantity_consumed),
            "variant_units_created": str(self.variant_units_created),
            "new_parent_quantity": str(self.new_parent_quantity),
            "new_variant_quantity": str(self.new_variant_quantity),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, str], replayed: bool = True) -> ConversionResult:
        return cls(
            conversion_id=UUID(payload["conversion_id"]),
            parent_quantity_consumed=Decimal(payload["parent_quantity_consumed"]),
            variant_units_created=Decimal(payload["variant_units_created"]),
            new_parent_quantity=Decimal(payload["new_parent_quantity"]),
            new_variant_quantity=Decimal(payload["new_variant_quantity"]),
            replayed=replayed,
        )


# =============================================================================
# Transfers
# =============================================================================


@dataclass(frozen=True)
class TransferItemSpec:
    """One line of a create-transfer request."""

    product_id: UUID
    quantity: Decimal
    token_code: str | None = None


@dataclass(frozen=True)
class LedgerTrackedItem:
    """Transfer line whose stock moves through the numeric ledger."""

    item_id: UUID
    line_number: int
    product_id: UUID
    quantity: Decimal
    received_quantity: Decimal
    condition: ItemCondition | None
    received_at: datetime | None


@dataclass(frozen=True)
class TokenBoundItem:
    """Transfer line represented by a physical token; the token is the ledger."""

    item_id: UUID
    line_number: int
    product_id: UUID
    quantity: Decimal
    received_quantity: Decimal
    condition: ItemCondition | None
    received_at: datetime | None
    token_id: UUID


TransferItemView = LedgerTrackedItem | TokenBoundItem


def item_view_from_model(item: TransferItemModel) -> TransferItemView:
    """Build the tagged read model for a TransferItem row."""
    condition = ItemCondition(item.condition) if item.condition else None
    if item.bound_token_id is not None:
        return TokenBoundItem(
            item_id=item.id,
            line_number=item.line_number,
            product_id=item.product_id,
            quantity=item.quantity,
            received_quantity=item.received_quantity,
            condition=condition,
            received_at=item.received_at,
            token_id=item.bound_token_id,
        )
    return LedgerTrackedItem(
        item_id=item.id,
        line_number=item.line_number,
        product_id=item.product_id,
        quantity=item.quantity,
        received_quantity=item.received_quantity,
        condition=condition,
        received_at=item.received_at,
    )


@dataclass(frozen=True)
class TransferView:
    """Read model of a transfer with its items and optional location names."""

    transfer_id: UUID
    store_id: UUID
    transfer_number: str
    scan_code: str
    source_location_id: UUID
    destination_location_id: UUID
    status: TransferStatus
    notes: str | None
    tracking_number: str | None
    shipped_at: datetime | None
    received_at: datetime | None
    cancelled_at: datetime | None
    created_by_id: UUID | None
    approved_by_id: UUID | None
    received_by_id: UUID | None
    cancelled_by_id: UUID | None
    items: tuple[TransferItemView, ...] = ()
    source_location_name: str | None = None
    destination_location_name: str | None = None

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def total_quantity(self) -> Decimal:
        return sum((item.quantity for item in self.items), Decimal("0"))

    @property
    def display_number(self) -> str:
        return f"#{self.transfer_number}"

    @classmethod
    def from_model(
        cls,
        transfer: TransferModel,
        scan_code_prefix: str = "P",
        resolve_location_name: LocationNameResolver | None = None,
    ) -> TransferView:
        source_name = dest_name = None
        if resolve_location_name is not None:
            source_name = resolve_location_name(transfer.source_location_id)
            dest_name = resolve_location_name(transfer.destination_location_id)
        return cls(
            transfer_id=transfer.id,
            store_id=transfer.store_id,
            transfer_number=transfer.transfer_number,
            scan_code=f"{scan_code_prefix}{str(transfer.id).lower()}",
            source_location_id=transfer.source_location_id,
            destination_location_id=transfer.destination_location_id,
            status=TransferStatus(transfer.status),
            notes=transfer.notes,
            tracking_number=transfer.tracking_number,
            shipped_at=transfer.shipped_at,
            received_at=transfer.received_at,
            cancelled_at=transfer.cancelled_at,
            created_by_id=transfer.created_by_id,
            approved_by_id=transfer.approved_by_id,
            received_by_id=transfer.received_by_id,
            cancelled_by_id=transfer.cancelled_by_id,
            items=tuple(
                item_view_from_model(item)
                for item in sorted(transfer.items, key=lambda i: i.line_number)
            ),
            source_location_name=source_name,
            destination_location_name=dest_name,
        )


@dataclass(frozen=True)
class SourceShortfall:
    """
    Source stock was insufficient when a ledger-tracked item was received.

    The source deduction is floored at zero; this records how much of the
    shipped quantity the source cell could not account for.
    """

    item_id: UUID
    product_id: UUID
    location_id: UUID
    requested: Decimal
    deducted: Decimal

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.deducted


@dataclass(frozen=True)
class ReceiptResult:
    """Outcome of receiving a transfer."""

    transfer: TransferView
    ledger_entry_ids: tuple[UUID, ...] = ()
    released_token_ids: tuple[UUID, ...] = ()
    warnings: tuple[SourceShortfall, ...] = field(default_factory=tuple)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


# =============================================================================
# Physical tokens
# =============================================================================


@dataclass(frozen=True)
class PhysicalTokenView:
    """Read model of a physical token."""

    token_id: UUID
    code: str
    store_id: UUID
    product_id: UUID | None
    current_location_id: UUID | None
    status: TokenStatus
    current_transfer_id: UUID | None
    total_scans: int
    last_scanned_at: datetime | None
    current_location_name: str | None = None

    @property
    def is_in_transit(self) -> bool:
        return self.status == TokenStatus.IN_TRANSIT

    @property
    def is_available(self) -> bool:
        return self.status == TokenStatus.AVAILABLE

    @classmethod
    def from_model(
        cls,
        token: PhysicalTokenModel,
        resolve_location_name: LocationNameResolver | None = None,
    ) -> PhysicalTokenView:
        location_name = None
        if resolve_location_name is not None and token.current_location_id is not None:
            location_name = resolve_location_name(token.current_location_id)
        return cls(
            token_id=token.id,
            code=token.code,
            store_id=token.store_id,
            product_id=token.product_id,
            current_location_id=token.current_location_id,
            status=TokenStatus(token.status),
            current_transfer_id=token.current_transfer_id,
            total_scans=token.total_scans,
            last_scanned_at=token.last_scanned_at,
            current_location_name=location_name,
        )
