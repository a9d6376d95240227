"""Unit tests for canonical payload hashing."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import pytest

from stock_kernel.domain.values import AdjustmentMode
from stock_kernel.utils.hashing import canonicalize_json, hash_payload


class TestCanonicalizeJson:

    def test_keys_sorted_without_whitespace(self):
        assert canonicalize_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_rich_types(self):
        uid = UUID("00000000-0000-0000-0000-000000000001")
        out = canonicalize_json({
            "id": uid,
            "mode": AdjustmentMode.ABSOLUTE,
            "at": datetime(2024, 1, 1, tzinfo=UTC),
            "qty": Decimal("5.000"),
        })
        assert str(uid) in out
        assert '"absolute"' in out
        assert '"5"' in out
        assert "2024-01-01T00:00:00+00:00" in out

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})


class TestHashPayload:

    def test_sha256_hex(self):
        digest = hash_payload({"a": 1})
        assert len(digest) == 64
        int(digest, 16)

    def test_key_order_irrelevant(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_equal_decimals_hash_equal(self):
        assert hash_payload({"v": Decimal("5")}) == hash_payload({"v": Decimal("5.000")})

    def test_different_payload_different_hash(self):
        assert hash_payload({"v": Decimal("5")}) != hash_payload({"v": Decimal("-5")})
