"""
Config -> Kernel bridges.

The kernel never imports ``stock_config``.  These functions translate a
loaded ``LedgerConfig`` into the kernel's own input types.

Usage:
    from stock_config import get_active_config
    from stock_config.bridges import build_ledger_policy

    policy = build_ledger_policy(get_active_config())
    engine = AdjustmentEngine(session, clock, policy)
"""

from __future__ import annotations

from stock_config.schema import LedgerConfig
from stock_kernel.domain.policy import LedgerPolicy


def build_ledger_policy(config: LedgerConfig) -> LedgerPolicy:
    return LedgerPolicy(
        allow_negative_on_sale=config.allow_negative_on_sale,
        quantity_decimal_places=config.quantity_decimal_places,
        transfer_number_prefix=config.transfer_number_prefix,
        transfer_number_width=config.transfer_number_width,
        transfer_code_prefix=config.transfer_code_prefix,
        warn_on_source_shortfall=config.warn_on_source_shortfall,
        token_match_fallback=config.token_match_fallback,
    )
