"""
Stock ledger configuration schema.

``LedgerConfig`` is the parsed, validated form of a YAML configuration file.
It is frozen: a running process never mutates its configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, fields


@dataclass(frozen=True)
class LedgerConfig:
    """Runtime configuration for the stock ledger."""

    config_id: str = "stock-ledger-default"
    version: int = 1

    allow_negative_on_sale: bool = False
    quantity_decimal_places: int = 9

    transfer_number_prefix: str = "TRF"
    transfer_number_width: int = 6
    transfer_code_prefix: str = "P"
    warn_on_source_shortfall: bool = True

    token_match_fallback: bool = True

    # SHA-256 of the source data; set by the loader.
    checksum: str = ""

    @classmethod
    def field_types(cls) -> dict[str, type]:
        """Declared Python type of every YAML-settable field."""
        types = {"str": str, "int": int, "bool": bool}
        return {
            f.name: types[f.type]
            for f in fields(cls)
            if f.name != "checksum"
        }
