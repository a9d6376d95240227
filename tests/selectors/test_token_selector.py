"""Tests for TokenSelector read models and binding audits."""

from decimal import Decimal
from uuid import uuid4

from stock_kernel.domain.dtos import TransferItemSpec
from stock_kernel.domain.values import TokenStatus
from stock_kernel.selectors import TokenSelector


def test_at_location(token_binding, session, store_id, location_a, location_b):
    token_binding.register_token("B-2", store_id, location_a)
    token_binding.register_token("A-1", store_id, location_a)
    sold = token_binding.register_token("C-3", store_id, location_a)
    token_binding.register_token("D-4", store_id, location_b)
    token_binding.mark_sold(sold)

    selector = TokenSelector(session)
    assert [v.code for v in selector.at_location(store_id, location_a)] == ["A-1", "B-2"]
    assert len(selector.at_location(store_id, location_a, status=None)) == 3
    assert [v.code for v in selector.at_location(store_id, location_a, TokenStatus.SOLD)] == ["C-3"]


def test_get_with_location_name(token_binding, session, store_id, location_a):
    token = token_binding.register_token("N-1", store_id, location_a)
    view = TokenSelector(session, {location_a: "Safe"}.get).get(token.id)
    assert view.current_location_name == "Safe"
    assert view.is_available
    assert TokenSelector(session).get(uuid4()) is None


def test_consistent_bindings(
    transfer_machine, token_binding, session, store_id, location_a, location_b, product_id, test_actor_id,
):
    token_binding.register_token("T-1", store_id, location_a, product_id=product_id)
    transfer_machine.create_transfer(
        store_id, location_a, location_b,
        [TransferItemSpec(product_id, Decimal("1"), "T-1")], None, test_actor_id,
    )
    token = token_binding.find_token("T-1", store_id)
    assert TokenSelector(session).get(token.id).is_in_transit
    assert TokenSelector(session).verify_bindings(store_id) == []


def test_detects_broken_bindings(token_binding, session, store_id, location_a):
    stray = token_binding.register_token("S-1", store_id, location_a)
    stray.status = TokenStatus.IN_TRANSIT.value
    orphan = token_binding.register_token("S-2", store_id, location_a)
    orphan.current_transfer_id = uuid4()
    session.flush()

    violations = {v.code: v for v in TokenSelector(session).verify_bindings(store_id)}
    assert violations["S-1"].reason == "in transit without a transfer"
    assert violations["S-2"].reason == "bound to a transfer but not in transit"
