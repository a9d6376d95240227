"""
LedgerPolicy -- runtime knobs the engines consult.

Built from the YAML configuration by ``stock_config.bridges``; the kernel
never reads configuration itself.  The defaults are the production
behaviour, so engines constructed without a policy behave correctly.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LedgerPolicy:
    """Immutable runtime policy for the stock ledger engines."""

    # A sale may drive a cell below zero (oversell) when True.
    allow_negative_on_sale: bool = False

    # Storage precision for quantities.
    quantity_decimal_places: int = 9

    # Transfer numbers look like TRF-000042.
    transfer_number_prefix: str = "TRF"
    transfer_number_width: int = 6

    # Prefix of a transfer's scan code: "P" + lowercase transfer uuid.
    transfer_code_prefix: str = "P"

    # Emit a WARNING log when a receipt clamps a source deduction.
    warn_on_source_shortfall: bool = True

    # Token lookup retries case-insensitively after an exact miss.
    token_match_fallback: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.quantity_decimal_places <= 9:
            raise ValueError("quantity_decimal_places must be between 0 and 9")
        if self.transfer_number_width < 1:
            raise ValueError("transfer_number_width must be positive")
        if not self.transfer_number_prefix:
            raise ValueError("transfer_number_prefix must not be empty")
        if not self.transfer_code_prefix:
            raise ValueError("transfer_code_prefix must not be empty")
