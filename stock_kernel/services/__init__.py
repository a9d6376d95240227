"""Stock kernel services: the imperative shell around the ledger."""

from stock_kernel.services.adjustment_engine import AdjustmentEngine
from stock_kernel.services.conversion_engine import ConversionEngine
from stock_kernel.services.idempotency_service import IdempotencyService
from stock_kernel.services.ledger_store import LedgerStore
from stock_kernel.services.sequence_service import SequenceService
from stock_kernel.services.token_binding import TokenBinding
from stock_kernel.services.transfer_state_machine import TransferStateMachine

__all__ = [
    "AdjustmentEngine",
    "ConversionEngine",
    "IdempotencyService",
    "LedgerStore",
    "SequenceService",
    "TokenBinding",
    "TransferStateMachine",
]
