"""
Tests for stock ledger configuration loading.

Covers:
- Loader (parse_config) -- YAML dict parsing and validation
- Entry point (get_active_config) -- path / env var / packaged defaults
- Bridge (build_ledger_policy) -- LedgerConfig to kernel LedgerPolicy
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal
from uuid import uuid4

import pytest
import yaml

from stock_config import CONFIG_ENV_VAR, get_active_config
from stock_config.bridges import build_ledger_policy
from stock_config.loader import compute_checksum, load_yaml_file, parse_config
from stock_config.schema import LedgerConfig
from stock_kernel.domain.dtos import TransferItemSpec
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.services import TransferStateMachine


def _write(tmp_path, data, name="ledger.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


# =========================================================================
# 1. parse_config
# =========================================================================


class TestParseConfig:

    def test_empty_mapping_gives_defaults(self):
        config = parse_config({})
        assert config.allow_negative_on_sale is False
        assert config.transfer_number_prefix == "TRF"
        assert config.checksum == compute_checksum({})

    def test_overrides(self):
        config = parse_config({"allow_negative_on_sale": True, "transfer_number_width": 4})
        assert config.allow_negative_on_sale is True
        assert config.transfer_number_width == 4

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="allow_negative"):
            parse_config({"allow_negative": True})

    def test_wrong_type_rejected(self):
        with pytest.raises(ValueError, match="quantity_decimal_places"):
            parse_config({"quantity_decimal_places": "9"})

    def test_bool_is_not_an_int(self):
        with pytest.raises(ValueError):
            parse_config({"transfer_number_width": True})

    @pytest.mark.parametrize(
        "data",
        [
            {"quantity_decimal_places": 12},
            {"transfer_number_width": 0},
            {"transfer_code_prefix": ""},
            {"version": 0},
        ],
    )
    def test_out_of_range_rejected(self, data):
        with pytest.raises(ValueError):
            parse_config(data)

    def test_checksum_is_not_settable(self):
        with pytest.raises(ValueError):
            parse_config({"checksum": "abc"})

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            parse_config({}).version = 2


class TestChecksum:

    def test_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_value_sensitive(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})


# =========================================================================
# 2. File loading and get_active_config
# =========================================================================


class TestLoadYaml:

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_yaml_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(tmp_path / "nope.yaml")


class TestGetActiveConfig:

    def test_packaged_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = get_active_config()
        assert config.config_id == "stock-ledger-default"
        assert config.version == 1
        assert config.checksum

    def test_explicit_path(self, tmp_path):
        path = _write(tmp_path, {"config_id": "store-17", "allow_negative_on_sale": True})
        config = get_active_config(path)
        assert config.config_id == "store-17"
        assert config.allow_negative_on_sale is True

    def test_env_var(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"config_id": "from-env"})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert get_active_config().config_id == "from-env"

    def test_trace_logged(self, tmp_path, captured_logs):
        path = _write(tmp_path, {"config_id": "traced", "version": 3})
        get_active_config(path)
        traces = [r for r in captured_logs() if r["message"] == "STOCK_CONFIG_TRACE"]
        assert traces
        assert traces[0]["config_id"] == "traced"
        assert traces[0]["config_version"] == 3
        assert traces[0]["source"] == str(path)


# =========================================================================
# 3. Bridge to the kernel
# =========================================================================


class TestBuildLedgerPolicy:

    def test_defaults_match(self):
        assert build_ledger_policy(LedgerConfig()) == LedgerPolicy()

    def test_fields_carried(self):
        policy = build_ledger_policy(
            parse_config({
                "allow_negative_on_sale": True,
                "transfer_number_prefix": "MOV",
                "transfer_code_prefix": "X",
                "token_match_fallback": False,
            })
        )
        assert policy.allow_negative_on_sale is True
        assert policy.transfer_number_prefix == "MOV"
        assert policy.transfer_code_prefix == "X"
        assert policy.token_match_fallback is False

    def test_policy_drives_numbering(self, session, deterministic_clock, store_id, location_a, location_b, test_actor_id):
        policy = build_ledger_policy(
            parse_config({"transfer_number_prefix": "MOV", "transfer_number_width": 3})
        )
        machine = TransferStateMachine(session, deterministic_clock, policy)
        view = machine.create_transfer(
            store_id, location_a, location_b,
            [TransferItemSpec(uuid4(), Decimal("1"))], None, test_actor_id,
        )
        assert view.transfer_number == "MOV-001"
