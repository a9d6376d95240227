"""Tests for LedgerSelector audit-stream queries."""

from decimal import Decimal
from uuid import uuid4

from stock_kernel.domain.dtos import CellKey
from stock_kernel.selectors import LedgerSelector


def test_entries_ordered_by_version(stock_cell, session, product_id, location_a):
    for quantity in ("5", "8", "2"):
        stock_cell(product_id, location_a, Decimal(quantity))
    entries = LedgerSelector(session).entries_for_cell(CellKey(product_id, location_a))
    assert [e.cell_version for e in entries] == [1, 2, 3]
    assert [e.quantity_after for e in entries] == [Decimal("5"), Decimal("8"), Decimal("2")]


def test_unknown_cell(session):
    selector = LedgerSelector(session)
    key = CellKey(uuid4(), uuid4())
    assert selector.entries_for_cell(key) == []
    assert selector.reconstruct_quantity(key) == Decimal("0")
    assert selector.verify_cell_trail(key) is None


def test_reconstruct_matches_stored(stock_cell, ledger_store, session, product_id, location_a):
    stock_cell(product_id, location_a, Decimal("12.75"))
    stock_cell(product_id, location_a, Decimal("3"))
    key = CellKey(product_id, location_a)
    assert LedgerSelector(session).reconstruct_quantity(key) == ledger_store.get_quantity(key)


def test_iter_entries_filters_by_store(stock_cell, session, store_id, product_id, location_a, location_b):
    stock_cell(product_id, location_a, Decimal("1"))
    stock_cell(product_id, location_b, Decimal("2"))
    selector = LedgerSelector(session)
    assert len(list(selector.iter_entries(store_id))) == 2
    assert list(selector.iter_entries(uuid4())) == []
