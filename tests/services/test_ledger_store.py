"""
Tests for LedgerStore, the single writer of stock cells.

Verifies:
- Lazy cell creation at zero
- Every change bumps the version and writes one balanced entry
- Non-negativity outside the sale-overdraft policy
- Absolute sets computed from the locked quantity
- Floored deltas clamp at zero and skip missing cells
- Reference-line deduplication
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from stock_kernel.domain.dtos import CellKey, LedgerMetadata
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.values import ReferenceType, TransactionType
from stock_kernel.exceptions import InsufficientStockError, InvalidQuantityError
from stock_kernel.models.ledger_entry import LedgerEntry
from stock_kernel.models.stock_cell import StockCell
from stock_kernel.services.ledger_store import LedgerStore


@pytest.fixture
def cell_key(product_id, location_a) -> CellKey:
    return CellKey(product_id, location_a)


@pytest.fixture
def meta(store_id, test_actor_id):
    def _meta(transaction_type=TransactionType.ADJUSTMENT, **kwargs):
        return LedgerMetadata(
            store_id=store_id,
            transaction_type=transaction_type,
            performed_by=test_actor_id,
            **kwargs,
        )
    return _meta


class TestLockCell:

    def test_first_arrival_creates_cell_at_zero(self, ledger_store, cell_key, store_id):
        cell = ledger_store.lock_cell(cell_key, store_id)
        assert cell.quantity == Decimal("0")
        assert cell.version == 0
        assert cell.store_id == store_id

    def test_second_lock_returns_same_row(self, ledger_store, cell_key, store_id, session):
        first = ledger_store.lock_cell(cell_key, store_id)
        second = ledger_store.lock_cell(cell_key, store_id)
        assert first.id == second.id
        count = session.scalar(select(func.count()).select_from(StockCell))
        assert count == 1

    def test_missing_cell_reads_as_zero(self, ledger_store, cell_key):
        assert ledger_store.get_cell(cell_key) is None
        assert ledger_store.get_quantity(cell_key) == Decimal("0")


class TestApplyDelta:

    def test_positive_delta(self, ledger_store, cell_key, meta):
        entry = ledger_store.apply_delta(cell_key, Decimal("100"), meta())
        assert entry.quantity_before == Decimal("0")
        assert entry.quantity_change == Decimal("100")
        assert entry.quantity_after == Decimal("100")
        assert entry.cell_version == 1
        assert entry.is_balanced
        assert ledger_store.get_quantity(cell_key) == Decimal("100")

    def test_versions_increment_by_one(self, ledger_store, cell_key, meta):
        versions = [
            ledger_store.apply_delta(cell_key, Decimal(d), meta()).cell_version
            for d in ("10", "-3", "5")
        ]
        assert versions == [1, 2, 3]
        assert ledger_store.get_cell(cell_key).version == 3

    def test_fractional_quantities_exact(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("7.0"), meta())
        entry = ledger_store.apply_delta(cell_key, Decimal("-3.5"), meta())
        assert entry.quantity_after == Decimal("3.5")

    def test_overdraw_rejected_with_numbers(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("3.5"), meta())
        with pytest.raises(InsufficientStockError) as exc_info:
            ledger_store.apply_delta(cell_key, Decimal("-7"), meta())
        assert exc_info.value.required == Decimal("7")
        assert exc_info.value.available == Decimal("3.5")
        assert ledger_store.get_quantity(cell_key) == Decimal("3.5")

    def test_sale_overdraft_only_when_allowed(self, session, deterministic_clock, cell_key, meta):
        strict = LedgerStore(session, deterministic_clock, LedgerPolicy())
        with pytest.raises(InsufficientStockError):
            strict.apply_delta(cell_key, Decimal("-1"), meta(TransactionType.SALE))

        lenient = LedgerStore(
            session, deterministic_clock, LedgerPolicy(allow_negative_on_sale=True),
        )
        entry = lenient.apply_delta(cell_key, Decimal("-1"), meta(TransactionType.SALE))
        assert entry.quantity_after == Decimal("-1")

        # Only sales may oversell.
        with pytest.raises(InsufficientStockError):
            lenient.apply_delta(cell_key, Decimal("-1"), meta())

    def test_float_rejected(self, ledger_store, cell_key, meta):
        with pytest.raises(InvalidQuantityError):
            ledger_store.apply_delta(cell_key, 1.5, meta())

    def test_rounds_to_storage_precision(self, ledger_store, cell_key, meta):
        entry = ledger_store.apply_delta(cell_key, Decimal("1.0000000004"), meta())
        assert entry.quantity_change == Decimal("1.000000000")

    def test_reference_line_applied_once(self, ledger_store, cell_key, meta, session):
        reference_id, line_id = uuid4(), uuid4()
        metadata = meta(
            TransactionType.TRANSFER_IN,
            reference_type=ReferenceType.TRANSFER,
            reference_id=reference_id,
            reference_line_id=line_id,
        )
        first = ledger_store.apply_delta(cell_key, Decimal("5"), metadata)
        second = ledger_store.apply_delta(cell_key, Decimal("5"), metadata)

        assert first.id == second.id
        assert ledger_store.get_quantity(cell_key) == Decimal("5")
        count = session.scalar(
            select(func.count()).select_from(LedgerEntry).where(
                LedgerEntry.reference_id == reference_id
            )
        )
        assert count == 1


class TestSetAbsolute:

    def test_records_implied_change(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("55"), meta())
        entry = ledger_store.set_absolute(cell_key, Decimal("50"), meta())
        assert entry.quantity_before == Decimal("55")
        assert entry.quantity_change == Decimal("-5")
        assert entry.quantity_after == Decimal("50")

    def test_zero_target_allowed(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("3"), meta())
        entry = ledger_store.set_absolute(cell_key, Decimal("0"), meta())
        assert entry.quantity_after == Decimal("0")

    def test_same_value_still_writes_entry(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("3"), meta())
        entry = ledger_store.set_absolute(cell_key, Decimal("3"), meta())
        assert entry.quantity_change == Decimal("0")
        assert entry.cell_version == 2

    def test_negative_target_rejected(self, ledger_store, cell_key, meta):
        with pytest.raises(InvalidQuantityError):
            ledger_store.set_absolute(cell_key, Decimal("-1"), meta())


class TestApplyDeltaFloored:

    def test_clamps_at_zero(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("4"), meta())
        entry, outcome = ledger_store.apply_delta_floored(
            cell_key, Decimal("-10"), meta(TransactionType.TRANSFER_OUT),
        )
        assert entry.quantity_change == Decimal("-4")
        assert entry.quantity_after == Decimal("0")
        assert outcome.applied == Decimal("-4")
        assert outcome.available_before == Decimal("4")
        assert outcome.shortfall == Decimal("6")

    def test_full_deduction_has_no_shortfall(self, ledger_store, cell_key, meta):
        ledger_store.apply_delta(cell_key, Decimal("12"), meta())
        _, outcome = ledger_store.apply_delta_floored(
            cell_key, Decimal("-10"), meta(TransactionType.TRANSFER_OUT),
        )
        assert outcome.shortfall == Decimal("0")

    def test_missing_cell_not_created(self, ledger_store, cell_key, meta):
        entry, outcome = ledger_store.apply_delta_floored(
            cell_key, Decimal("-2"), meta(TransactionType.TRANSFER_OUT),
        )
        assert entry is None
        assert outcome.applied == Decimal("0")
        assert ledger_store.get_cell(cell_key) is None


class TestProductTotal:

    def test_sums_across_locations(self, ledger_store, product_id, location_a, location_b, store_id, meta):
        ledger_store.apply_delta(CellKey(product_id, location_a), Decimal("30"), meta())
        ledger_store.apply_delta(CellKey(product_id, location_b), Decimal("12.5"), meta())
        ledger_store.apply_delta(CellKey(uuid4(), location_a), Decimal("99"), meta())
        assert ledger_store.product_total(store_id, product_id) == Decimal("42.5")
