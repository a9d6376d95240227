"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejected stock operation must tell the caller exactly what went wrong
and with which numbers, so a point-of-sale screen can show "need 7.0g, have
3.5g" without a follow-up query.  Parsing message strings for that is fragile.

Every exception in this module therefore:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (required/available, states, ids)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockLedgerError (base)
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- InvalidQuantityError
    |   +-- StockCellNotFoundError
    |   +-- InvalidAdjustmentError
    |
    +-- ConversionError
    |   +-- InvalidConversionRatioError
    |
    +-- TransferError
    |   +-- TransferNotFoundError
    |   +-- InvalidTransferError
    |   +-- InvalidTransferStateError
    |   |   +-- AlreadyReceivedError
    |   +-- LocationMismatchError
    |
    +-- TokenError
    |   +-- TokenNotFoundError
    |   +-- TokenUnavailableError
    |   +-- TokenAlreadyBoundError
    |
    +-- IdempotencyError
    |   +-- DuplicateRequestError
    |   +-- RequestInProgressError
    |   +-- IdempotencyKeyReuseError
    |
    +-- StorageError
    |   +-- StorageFailureError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|--------------------------------------
Stock        | INSUFFICIENT_STOCK         | Change would drive a cell negative
             | INVALID_QUANTITY           | NaN/inf/float/negative/zero quantity
             | STOCK_CELL_NOT_FOUND       | No cell for (product, location)
             | INVALID_ADJUSTMENT         | Unknown type/mode, missing key
-------------|----------------------------|--------------------------------------
Conversion   | INVALID_CONVERSION_RATIO   | Ratio missing, zero or negative
-------------|----------------------------|--------------------------------------
Transfer     | TRANSFER_NOT_FOUND         | Unknown transfer id / code
             | INVALID_TRANSFER           | Malformed create request
             | INVALID_TRANSFER_STATE     | Transition not allowed from state
             | ALREADY_RECEIVED           | Receipt of a completed transfer
             | LOCATION_MISMATCH          | Receiving at the wrong location
-------------|----------------------------|--------------------------------------
Token        | TOKEN_NOT_FOUND            | Unknown physical token code
             | TOKEN_UNAVAILABLE          | Token not in `available` status
             | TOKEN_ALREADY_BOUND        | Token already bound to a transfer
-------------|----------------------------|--------------------------------------
Idempotency  | DUPLICATE_REQUEST          | Completed key replayed (internal)
             | REQUEST_IN_PROGRESS        | Same key still being applied
             | IDEMPOTENCY_KEY_REUSE      | Same key, different request payload
-------------|----------------------------|--------------------------------------
Storage      | STORAGE_FAILURE            | Commit of an atomic write failed
-------------|----------------------------|--------------------------------------
Immutability | IMMUTABILITY_VIOLATION     | UPDATE/DELETE of an append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        engine.adjust(request, actor_id)
    except InsufficientStockError as e:
        api_response(code=e.code, required=e.required, available=e.available)
    except StorageFailureError:
        # Retry with the SAME idempotency key.
        ...

DuplicateRequestError is never seen by callers of the engines: a completed
idempotency key is replayed and its stored result returned.
"""

from decimal import Decimal


class StockLedgerError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_LEDGER_ERROR"


# Stock cell exceptions


class StockError(StockLedgerError):
    """Base exception for stock cell errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """
    A quantity-changing operation would breach the non-negativity invariant.

    Both numbers are carried so the caller can present an accurate message
    without re-querying the cell.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        required: Decimal,
        available: Decimal,
        product_id: str | None = None,
        location_id: str | None = None,
    ):
        self.required = required
        self.available = available
        self.product_id = product_id
        self.location_id = location_id
        super().__init__(
            f"Insufficient stock: need {required}, have {available}"
        )


class InvalidQuantityError(StockError):
    """Quantity is malformed, non-finite, or outside the allowed range."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, value: object, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid quantity {value!r}: {reason}")


class StockCellNotFoundError(StockError):
    """No stock cell exists for the (product, location) pair."""

    code: str = "STOCK_CELL_NOT_FOUND"

    def __init__(self, product_id: str, location_id: str):
        self.product_id = product_id
        self.location_id = location_id
        super().__init__(
            f"No stock cell for product {product_id} at location {location_id}"
        )


class InvalidAdjustmentError(StockError):
    """Adjustment request names an unknown type or mode, or has no idempotency key."""

    code: str = "INVALID_ADJUSTMENT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid adjustment {field} {value!r}: {reason}")


# Conversion exceptions


class ConversionError(StockLedgerError):
    """Base exception for parent-to-variant conversion errors."""

    code: str = "CONVERSION_ERROR"


class InvalidConversionRatioError(ConversionError):
    """Conversion ratio is missing, zero, or negative."""

    code: str = "INVALID_CONVERSION_RATIO"

    def __init__(self, ratio: object):
        self.ratio = ratio
        super().__init__(f"Invalid conversion ratio: {ratio!r}")


# Transfer exceptions


class TransferError(StockLedgerError):
    """Base exception for transfer errors."""

    code: str = "TRANSFER_ERROR"


class TransferNotFoundError(TransferError):
    """Transfer with the given id (or scan code) does not exist."""

    code: str = "TRANSFER_NOT_FOUND"

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Transfer not found: {transfer_id}")


class InvalidTransferError(TransferError):
    """The transfer request itself is malformed."""

    code: str = "INVALID_TRANSFER"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid transfer: {reason}")


class InvalidTransferStateError(TransferError):
    """A lifecycle transition was attempted from the wrong state."""

    code: str = "INVALID_TRANSFER_STATE"

    def __init__(self, transfer_id: str, current_status: str, attempted_status: str):
        self.transfer_id = transfer_id
        self.current_status = current_status
        self.attempted_status = attempted_status
        super().__init__(
            f"Transfer {transfer_id} cannot move from "
            f"{current_status} to {attempted_status}"
        )


class AlreadyReceivedError(InvalidTransferStateError):
    """The transfer has already been received; stock was moved exactly once."""

    code: str = "ALREADY_RECEIVED"

    def __init__(self, transfer_id: str, received_at: str | None = None):
        self.transfer_id = transfer_id
        self.current_status = "completed"
        self.attempted_status = "completed"
        self.received_at = received_at
        TransferError.__init__(self, f"Transfer {transfer_id} was already received")


class LocationMismatchError(TransferError):
    """Receipt attempted at a location other than the transfer's destination."""

    code: str = "LOCATION_MISMATCH"

    def __init__(self, transfer_id: str, expected_location_id: str, actual_location_id: str):
        self.transfer_id = transfer_id
        self.expected_location_id = expected_location_id
        self.actual_location_id = actual_location_id
        super().__init__(
            f"Transfer {transfer_id} is destined for {expected_location_id}, "
            f"not {actual_location_id}"
        )


# Physical token exceptions


class TokenError(StockLedgerError):
    """Base exception for physical token errors."""

    code: str = "TOKEN_ERROR"


class TokenNotFoundError(TokenError):
    """No active token matches the scanned code."""

    code: str = "TOKEN_NOT_FOUND"

    def __init__(self, code_value: str):
        self.code_value = code_value
        super().__init__(f"Physical token not found: {code_value}")


class TokenUnavailableError(TokenError):
    """Token is not in a status that allows the requested operation."""

    code: str = "TOKEN_UNAVAILABLE"

    def __init__(self, code_value: str, status: str):
        self.code_value = code_value
        self.status = status
        super().__init__(
            f"Physical token {code_value} is not available (status: {status})"
        )


class TokenAlreadyBoundError(TokenError):
    """Token is already bound to another non-terminal transfer."""

    code: str = "TOKEN_ALREADY_BOUND"

    def __init__(self, code_value: str, transfer_id: str):
        self.code_value = code_value
        self.transfer_id = transfer_id
        super().__init__(
            f"Physical token {code_value} is already bound to transfer {transfer_id}"
        )


# Idempotency exceptions


class IdempotencyError(StockLedgerError):
    """Base exception for idempotency-key errors."""

    code: str = "IDEMPOTENCY_ERROR"


class DuplicateRequestError(IdempotencyError):
    """
    The idempotency key has already completed.

    Engines catch this internally and replay the stored result.
    """

    code: str = "DUPLICATE_REQUEST"

    def __init__(self, idempotency_key: str, result_payload: dict | None = None):
        self.idempotency_key = idempotency_key
        self.result_payload = result_payload
        super().__init__(f"Duplicate request: {idempotency_key}")


class RequestInProgressError(IdempotencyError):
    """Another caller is still applying this idempotency key; retry later."""

    code: str = "REQUEST_IN_PROGRESS"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Request still in progress: {idempotency_key}")


class IdempotencyKeyReuseError(IdempotencyError):
    """Same idempotency key submitted with a different request payload."""

    code: str = "IDEMPOTENCY_KEY_REUSE"

    def __init__(self, idempotency_key: str, expected_hash: str, received_hash: str):
        self.idempotency_key = idempotency_key
        self.expected_hash = expected_hash
        self.received_hash = received_hash
        super().__init__(
            f"Idempotency key {idempotency_key} reused with a different payload"
        )


# Storage exceptions


class StorageError(StockLedgerError):
    """Base exception for storage errors."""

    code: str = "STORAGE_ERROR"


class StorageFailureError(StorageError):
    """
    The underlying atomic write could not be committed.

    Always safe to retry with the same idempotency key.
    """

    code: str = "STORAGE_FAILURE"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage failure during {operation}: {detail}")


# Immutability exceptions


class ImmutabilityError(StockLedgerError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
