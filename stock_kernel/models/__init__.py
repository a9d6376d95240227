"""ORM models.  Importing this package registers every ledger table on Base.metadata."""

from stock_kernel.models.adjustment import StockAdjustment
from stock_kernel.models.conversion import ConversionRecord
from stock_kernel.models.idempotency import IdempotencyRecord
from stock_kernel.models.ledger_entry import LedgerEntry
from stock_kernel.models.physical_token import PhysicalToken, TokenScan
from stock_kernel.models.stock_cell import StockCell
from stock_kernel.models.transfer import Transfer, TransferItem

__all__ = [
    "ConversionRecord",
    "IdempotencyRecord",
    "LedgerEntry",
    "PhysicalToken",
    "StockAdjustment",
    "StockCell",
    "TokenScan",
    "Transfer",
    "TransferItem",
]
