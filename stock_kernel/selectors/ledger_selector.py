"""
Module: stock_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries: the ordered audit stream of ledger
    entries, per-cell trail verification, quantity reconstruction from
    entries, and a canonical hash of the ledger.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    DTOs and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Trail order is (stock_cell_id, cell_version); versions start at 1 and
      have no gaps.
    - Every entry balances: quantity_after == quantity_before + quantity_change.
    - Consecutive entries chain: each quantity_before equals the previous
      entry's quantity_after.
    - The sum of a cell's changes equals its stored quantity.

Failure modes:
    - Verification never raises for drift; it reports it in CellTrailReport.

Audit relevance:
    ``verify_cell_trail`` / ``verify_all`` are what ``scripts/verify_ledger.py``
    runs.  ``canonical_hash`` lets two replicas or two points in time be
    compared with one string.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import CellKey, LedgerEntryView
from stock_kernel.domain.values import ReferenceType
from stock_kernel.models.ledger_entry import LedgerEntry
from stock_kernel.models.stock_cell import StockCell
from stock_kernel.selectors.base import BaseSelector
from stock_kernel.utils.hashing import hash_payload


@dataclass(frozen=True)
class CellTrailReport:
    """Result of replaying one cell's ledger trail."""

    stock_cell_id: UUID
    product_id: UUID
    location_id: UUID
    stored_quantity: Decimal
    stored_version: int
    reconstructed_quantity: Decimal
    entry_count: int
    version_gaps: tuple[int, ...] = ()
    unbalanced_entry_ids: tuple[UUID, ...] = ()
    broken_chain_entry_ids: tuple[UUID, ...] = ()

    @property
    def drift(self) -> Decimal:
        return self.stored_quantity - self.reconstructed_quantity

    @property
    def is_consistent(self) -> bool:
        return (
            self.drift == 0
            and self.stored_version == self.entry_count
            and not self.version_gaps
            and not self.unbalanced_entry_ids
            and not self.broken_chain_entry_ids
        )


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Selector for the ledger audit stream.

    Guarantees:
        - All quantities are Decimal.
        - Entries are always returned in (stock_cell_id, cell_version) order.
    """

    def _cell(self, cell_key: CellKey) -> StockCell | None:
        return self.session.execute(
            select(StockCell).where(
                StockCell.product_id == cell_key.product_id,
                StockCell.location_id == cell_key.location_id,
            )
        ).scalar_one_or_none()

    def entries_for_cell(self, cell_key: CellKey) -> list[LedgerEntryView]:
        """Every entry of one cell, oldest version first."""
        cell = self._cell(cell_key)
        if cell is None:
            return []
        return self._entries_by_cell_id(cell.id)

    def _entries_by_cell_id(self, stock_cell_id: UUID) -> list[LedgerEntryView]:
        rows = self.session.scalars(
            select(LedgerEntry)
            .where(LedgerEntry.stock_cell_id == stock_cell_id)
            .order_by(LedgerEntry.cell_version)
        )
        return [LedgerEntryView.from_model(row) for row in rows]

    def entries_for_reference(
        self,
        reference_type: ReferenceType,
        reference_id: UUID,
    ) -> list[LedgerEntryView]:
        """
        Entries written by one adjustment, transfer or conversion.

        A received transfer yields its transfer_out / transfer_in pairs.
        """
        rows = self.session.scalars(
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == ReferenceType(reference_type).value,
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.created_at, LedgerEntry.stock_cell_id, LedgerEntry.cell_version)
        )
        return [LedgerEntryView.from_model(row) for row in rows]

    def iter_entries(
        self,
        store_id: UUID | None = None,
        batch_size: int = 500,
    ) -> Iterator[LedgerEntryView]:
        """Stream the ledger in (stock_cell_id, cell_version) order."""
        stmt = select(LedgerEntry).order_by(LedgerEntry.stock_cell_id, LedgerEntry.cell_version)
        if store_id is not None:
            stmt = stmt.where(LedgerEntry.store_id == store_id)
        for row in self.session.scalars(stmt.execution_options(yield_per=batch_size)):
            yield LedgerEntryView.from_model(row)

    def reconstruct_quantity(self, cell_key: CellKey) -> Decimal:
        """Sum of every change ever applied to the cell (zero when none)."""
        return sum(
            (entry.quantity_change for entry in self.entries_for_cell(cell_key)),
            Decimal("0"),
        )

    def verify_cell_trail(self, cell_key: CellKey) -> CellTrailReport | None:
        """Replay one cell's entries against its stored state."""
        cell = self._cell(cell_key)
        if cell is None:
            return None
        return self._verify(cell)

    def verify_all(self, store_id: UUID | None = None) -> list[CellTrailReport]:
        stmt = select(StockCell).order_by(StockCell.product_id, StockCell.location_id)
        if store_id is not None:
            stmt = stmt.where(StockCell.store_id == store_id)
        return [self._verify(cell) for cell in self.session.scalars(stmt)]

    def _verify(self, cell: StockCell) -> CellTrailReport:
        entries = self._entries_by_cell_id(cell.id)

        gaps: list[int] = []
        unbalanced: list[UUID] = []
        broken: list[UUID] = []
        reconstructed = Decimal("0")
        previous_after: Decimal | None = None

        for expected_version, entry in enumerate(entries, start=1):
            if entry.cell_version != expected_version:
                gaps.append(expected_version)
            if entry.quantity_before + entry.quantity_change != entry.quantity_after:
                unbalanced.append(entry.entry_id)
            if previous_after is not None and entry.quantity_before != previous_after:
                broken.append(entry.entry_id)
            previous_after = entry.quantity_after
            reconstructed += entry.quantity_change

        return CellTrailReport(
            stock_cell_id=cell.id,
            product_id=cell.product_id,
            location_id=cell.location_id,
            stored_quantity=cell.quantity,
            stored_version=cell.version,
            reconstructed_quantity=reconstructed,
            entry_count=len(entries),
            version_gaps=tuple(gaps),
            unbalanced_entry_ids=tuple(unbalanced),
            broken_chain_entry_ids=tuple(broken),
        )

    def canonical_hash(self, store_id: UUID | None = None) -> str:
        """
        Deterministic SHA-256 over every entry in trail order.

        Timestamps and actors are excluded: the hash covers quantities and
        references only, so a faithful replay produces the same value.
        """
        lines = [
            {
                "cell": f"{entry.product_id}:{entry.location_id}",
                "version": entry.cell_version,
                "type": entry.transaction_type.value,
                "before": str(entry.quantity_before.normalize()),
                "change": str(entry.quantity_change.normalize()),
                "after": str(entry.quantity_after.normalize()),
            }
            for entry in self.iter_entries(store_id)
        ]
        lines.sort(key=lambda line: (line["cell"], line["version"]))
        return hash_payload({"entries": lines})
