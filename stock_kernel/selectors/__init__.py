"""Read-only query selectors for the stock ledger."""

from stock_kernel.selectors.ledger_selector import CellTrailReport, LedgerSelector
from stock_kernel.selectors.token_selector import TokenBindingViolation, TokenScanView, TokenSelector
from stock_kernel.selectors.transfer_selector import TransferSelector

__all__ = [
    "CellTrailReport",
    "LedgerSelector",
    "TokenBindingViolation",
    "TokenScanView",
    "TokenSelector",
    "TransferSelector",
]
