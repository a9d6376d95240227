"""
LedgerStore -- the single writer of stock cells and ledger entries.

Responsibility:
    Applies quantity changes to StockCells under a row lock and appends the
    matching LedgerEntry for every change.  Every quantity mutation in the
    system goes through ``apply_delta``, ``set_absolute`` or
    ``apply_delta_floored``.

Architecture position:
    Kernel > Services.  Flush-only building block composed by the
    AdjustmentEngine, ConversionEngine and TransferStateMachine, which own
    commit/rollback.

Invariants enforced:
    - Read-modify-write of a cell happens under ``SELECT ... FOR UPDATE``;
      no application-level locks.
    - ``quantity >= 0`` after every change, except a SALE delta when the
      policy allows overselling.
    - Each mutation bumps ``StockCell.version`` by one and writes exactly one
      LedgerEntry carrying that version, with
      ``quantity_after == quantity_before + quantity_change``.
    - A change carrying a ``reference_line_id`` is applied at most once per
      (reference, line, transaction type); a repeat returns the existing
      entry.

Failure modes:
    - InsufficientStockError: the change would take the cell negative.
    - InvalidQuantityError: float/NaN input or a negative absolute target.
    - IntegrityError on cell creation: a concurrent first arrival won the
      race; handled by re-reading the winner's row inside a savepoint.

Audit relevance:
    ``ledger_delta_applied`` is logged at DEBUG with cell and version.  The
    ledger entries themselves are the audit stream.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, round_quantity, to_quantity
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import CellKey, FlooredDelta, LedgerMetadata
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.values import TransactionType
from stock_kernel.exceptions import InsufficientStockError, InvalidQuantityError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.ledger_entry import LedgerEntry
from stock_kernel.models.stock_cell import StockCell
from stock_kernel.services.base import BaseService

logger = get_logger("services.ledger_store")


class LedgerStore(BaseService[StockCell]):
    """
    Locked, versioned writes to stock cells.

    Contract:
        Methods flush but never commit.  A failure raised before the caller
        commits leaves nothing applied once the caller rolls back.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: LedgerPolicy | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._policy = policy or LedgerPolicy()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_cell(self, cell_key: CellKey) -> StockCell | None:
        return self.session.execute(
            select(StockCell).where(
                StockCell.product_id == cell_key.product_id,
                StockCell.location_id == cell_key.location_id,
            )
        ).scalar_one_or_none()

    def get_quantity(self, cell_key: CellKey) -> Decimal:
        """Current quantity of a cell; a missing cell reads as zero."""
        cell = self.get_cell(cell_key)
        return cell.quantity if cell is not None else ZERO

    def product_total(self, store_id, product_id) -> Decimal:
        """Sum of a product's quantity across every location of a store."""
        quantities = self.session.scalars(
            select(StockCell.quantity).where(
                StockCell.store_id == store_id,
                StockCell.product_id == product_id,
            )
        )
        return sum(quantities, ZERO)

    def find_reference_entry(self, metadata: LedgerMetadata) -> LedgerEntry | None:
        """The entry already written for this reference line, if any."""
        if metadata.reference_line_id is None or metadata.reference_type is None:
            return None
        return self.session.execute(
            select(LedgerEntry).where(
                LedgerEntry.reference_type == metadata.reference_type.value,
                LedgerEntry.reference_id == metadata.reference_id,
                LedgerEntry.reference_line_id == metadata.reference_line_id,
                LedgerEntry.transaction_type == metadata.transaction_type.value,
            )
        ).scalar_one_or_none()

    # =========================================================================
    # Locking
    # =========================================================================

    def _select_locked(self, cell_key: CellKey) -> StockCell | None:
        return self.session.execute(
            select(StockCell)
            .where(
                StockCell.product_id == cell_key.product_id,
                StockCell.location_id == cell_key.location_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def lock_cell(self, cell_key: CellKey, store_id) -> StockCell:
        """
        Lock a cell for update, creating it at zero on first arrival.

        The lock is held until the caller's transaction ends.
        """
        cell = self._select_locked(cell_key)
        if cell is not None:
            return cell

        now = self._clock.now()
        savepoint = self.session.begin_nested()
        try:
            cell = StockCell(
                store_id=store_id,
                product_id=cell_key.product_id,
                location_id=cell_key.location_id,
                quantity=ZERO,
                version=0,
                created_at=now,
                updated_at=now,
            )
            self.session.add(cell)
            self.session.flush()
            savepoint.commit()
            logger.debug(
                "stock_cell_created",
                extra={
                    "product_id": str(cell_key.product_id),
                    "location_id": str(cell_key.location_id),
                },
            )
            return cell
        except IntegrityError:
            logger.debug(
                "stock_cell_create_race_retry",
                extra={
                    "product_id": str(cell_key.product_id),
                    "location_id": str(cell_key.location_id),
                },
            )
            savepoint.rollback()
            cell = self._select_locked(cell_key)
            if cell is None:
                raise
            return cell

    # =========================================================================
    # Writes
    # =========================================================================

    def apply_delta(
        self,
        cell_key: CellKey,
        signed_change: Decimal,
        metadata: LedgerMetadata,
    ) -> LedgerEntry:
        """
        Add ``signed_change`` to the cell and append its ledger entry.

        Raises:
            InsufficientStockError: If the result would be negative and the
                change is not an allowed oversell.
        """
        change = self._normalize(signed_change, "quantity_change")

        cell = self.lock_cell(cell_key, metadata.store_id)
        existing = self.find_reference_entry(metadata)
        if existing is not None:
            self._log_reference_replay(existing)
            return existing

        new_quantity = cell.quantity + change
        if new_quantity < ZERO and not self._overdraft_allowed(metadata):
            logger.info(
                "ledger_insufficient_stock",
                extra={
                    "product_id": str(cell_key.product_id),
                    "location_id": str(cell_key.location_id),
                    "required": -change,
                    "available": cell.quantity,
                },
            )
            raise InsufficientStockError(
                required=-change,
                available=cell.quantity,
                product_id=str(cell_key.product_id),
                location_id=str(cell_key.location_id),
            )

        return self._write(cell, change, metadata)

    def set_absolute(
        self,
        cell_key: CellKey,
        target: Decimal,
        metadata: LedgerMetadata,
    ) -> LedgerEntry:
        """
        Set the cell to ``target`` and record the implied change.

        The change is computed from the locked current quantity, never from a
        value the caller read earlier.
        """
        target_quantity = self._normalize(target, "target")
        if target_quantity < ZERO:
            raise InvalidQuantityError(target, "absolute target must not be negative")

        cell = self.lock_cell(cell_key, metadata.store_id)
        existing = self.find_reference_entry(metadata)
        if existing is not None:
            self._log_reference_replay(existing)
            return existing

        return self._write(cell, target_quantity - cell.quantity, metadata)

    def apply_delta_floored(
        self,
        cell_key: CellKey,
        signed_change: Decimal,
        metadata: LedgerMetadata,
    ) -> tuple[LedgerEntry | None, FlooredDelta]:
        """
        Apply a negative change, clamping the cell at zero instead of failing.

        Used for the source half of a transfer receipt, where the goods have
        physically arrived and the source count is the less reliable number.
        A missing cell is left uncreated and no entry is written.

        Returns:
            (entry, outcome).  ``entry`` is None when the cell does not exist.
        """
        change = self._normalize(signed_change, "quantity_change")

        cell = self._select_locked(cell_key)
        if cell is None:
            return None, FlooredDelta(requested=change, applied=ZERO, available_before=ZERO)

        existing = self.find_reference_entry(metadata)
        if existing is not None:
            self._log_reference_replay(existing)
            return existing, FlooredDelta(
                requested=change,
                applied=existing.quantity_change,
                available_before=existing.quantity_before,
            )

        available = cell.quantity
        applied = max(change, -available) if change < ZERO else change
        entry = self._write(cell, applied, metadata)
        return entry, FlooredDelta(requested=change, applied=applied, available_before=available)

    # =========================================================================
    # Internals
    # =========================================================================

    def _normalize(self, value: Decimal, field: str) -> Decimal:
        return round_quantity(
            to_quantity(value, field=field),
            self._policy.quantity_decimal_places,
        )

    def _overdraft_allowed(self, metadata: LedgerMetadata) -> bool:
        return (
            metadata.transaction_type == TransactionType.SALE
            and self._policy.allow_negative_on_sale
        )

    def _write(
        self,
        cell: StockCell,
        change: Decimal,
        metadata: LedgerMetadata,
    ) -> LedgerEntry:
        now: datetime = self._clock.now()
        before = cell.quantity
        after = before + change

        cell.quantity = after
        cell.version += 1
        cell.updated_at = now

        entry = LedgerEntry(
            store_id=metadata.store_id,
            location_id=cell.location_id,
            product_id=cell.product_id,
            stock_cell_id=cell.id,
            cell_version=cell.version,
            transaction_type=metadata.transaction_type.value,
            quantity_before=before,
            quantity_change=change,
            quantity_after=after,
            reason=metadata.reason,
            reference_type=metadata.reference_type.value if metadata.reference_type else None,
            reference_id=metadata.reference_id,
            reference_line_id=metadata.reference_line_id,
            performed_by=metadata.performed_by,
            created_at=now,
        )
        assert entry.is_balanced
        self.session.add(entry)
        self.session.flush()

        logger.debug(
            "ledger_delta_applied",
            extra={
                "stock_cell_id": str(cell.id),
                "cell_version": cell.version,
                "transaction_type": metadata.transaction_type.value,
                "quantity_before": before,
                "quantity_change": change,
                "quantity_after": after,
            },
        )
        return entry

    def _log_reference_replay(self, entry: LedgerEntry) -> None:
        logger.info(
            "ledger_reference_replayed",
            extra={
                "ledger_entry_id": str(entry.id),
                "reference_type": entry.reference_type,
                "reference_id": str(entry.reference_id),
                "reference_line_id": str(entry.reference_line_id),
            },
        )
