"""
Value enums for the stock ledger.

All enums are ``str`` subclasses and are persisted by their ``.value`` so
the database stays readable and portable.
"""

from enum import Enum


class TransactionType(str, Enum):
    """Kind of quantity change recorded on a LedgerEntry."""

    ADJUSTMENT = "adjustment"
    SALE = "sale"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    CONVERSION_OUT = "conversion_out"
    CONVERSION_IN = "conversion_in"
    RECEIPT = "receipt"
    RETURN = "return"


class ReferenceType(str, Enum):
    """Kind of business document a LedgerEntry links back to."""

    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    CONVERSION = "conversion"
    SALE = "sale"


class AdjustmentType(str, Enum):
    """Reason category of a stock adjustment."""

    COUNT_CORRECTION = "count_correction"
    DAMAGE = "damage"
    SHRINKAGE = "shrinkage"
    THEFT = "theft"
    EXPIRED = "expired"
    RECEIVED = "received"
    RETURN = "return"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class AdjustmentMode(str, Enum):
    """
    How an adjustment value is interpreted.

    RELATIVE: the value is a signed delta supplied by the caller.
    ABSOLUTE: the value is the authoritative end state of the cell.  Audits
        use this so that sales landing between "read count" and "submit
        count" cannot make the audit wrong.
    """

    RELATIVE = "relative"
    ABSOLUTE = "absolute"


class TransferStatus(str, Enum):
    """Lifecycle state of a transfer.  See ``transfer_lifecycle``."""

    DRAFT = "draft"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemCondition(str, Enum):
    """Condition of a transfer item as recorded on receipt."""

    GOOD = "good"
    DAMAGED = "damaged"
    EXPIRED = "expired"
    REJECTED = "rejected"


class TokenStatus(str, Enum):
    """Status of a physical (scannable) token."""

    AVAILABLE = "available"
    IN_TRANSIT = "in_transit"
    SOLD = "sold"
    SPLIT = "split"
    CONSUMED = "consumed"


class ScanOperation(str, Enum):
    """Operation recorded alongside a token scan."""

    LOOKUP = "lookup"
    TRANSFER_OUT = "transfer_out"
    RECEIVE = "receive"
    CANCEL = "cancel"
    SALE = "sale"
    SPLIT = "split"


class IdempotencyStatus(str, Enum):
    """State of a durable idempotency record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
