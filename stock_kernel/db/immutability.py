"""
ORM-level immutability enforcement for the stock ledger.

The ledger is append-only.  Quantity history is corrected by writing new
entries, never by editing or deleting old ones.  This module registers
SQLAlchemy mapper events that fire before UPDATE/DELETE SQL reaches the
database and raise ImmutabilityViolationError when a protected row would be
changed.

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
    [before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity            | Rule
------------------|----------------------------------------------------------
LedgerEntry       | Never updated, never deleted
ConversionRecord  | Never updated, never deleted
StockAdjustment   | Never updated, never deleted
TokenScan         | Never updated, never deleted
StockCell         | Never deleted (zeroed instead)
Transfer          | Status follows TRANSFER_TRANSITIONS; terminal transfers
                  | accept no further changes; never deleted

Conditional bulk UPDATEs issued through ``session.execute(update(...))`` do
not fire mapper events.  The transfer receipt uses one deliberately
(``WHERE status = 'in_transit'``) and its WHERE clause carries the same rule.

Usage:

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from stock_kernel.domain.transfer_lifecycle import can_transition, is_terminal
from stock_kernel.domain.values import TransferStatus
from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Columns that may change on a terminal transfer: audit metadata only.
_TRANSFER_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_ledger_entry_update(mapper, connection, target):
    _block("LedgerEntry", target, "UPDATE", "Ledger entries are append-only and cannot be modified")


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "DELETE", "Ledger entries are append-only and cannot be deleted")


def _check_conversion_record_update(mapper, connection, target):
    _block("ConversionRecord", target, "UPDATE", "Conversion records are immutable")


def _check_conversion_record_delete(mapper, connection, target):
    _block("ConversionRecord", target, "DELETE", "Conversion records cannot be deleted")


def _check_adjustment_update(mapper, connection, target):
    _block("StockAdjustment", target, "UPDATE", "Applied adjustments are immutable")


def _check_adjustment_delete(mapper, connection, target):
    _block("StockAdjustment", target, "DELETE", "Applied adjustments cannot be deleted")


def _check_token_scan_update(mapper, connection, target):
    _block("TokenScan", target, "UPDATE", "Scan history is append-only")


def _check_token_scan_delete(mapper, connection, target):
    _block("TokenScan", target, "DELETE", "Scan history is append-only")


def _check_stock_cell_delete(mapper, connection, target):
    _block("StockCell", target, "DELETE", "Stock cells are never deleted, only zeroed")


def _check_transfer_update(mapper, connection, target):
    """
    Reject illegal status transitions and edits to terminal transfers.

    Uses attribute history: ``deleted`` holds the value loaded from the
    database, ``added`` the value being written.
    """
    from stock_kernel.models.transfer import Transfer

    if not isinstance(target, Transfer):
        return

    status_history = get_history(target, "status")
    if status_history.deleted:
        old_status = TransferStatus(status_history.deleted[0])
        new_status = TransferStatus(target.status)
        if old_status != new_status and not can_transition(old_status, new_status):
            _block(
                "Transfer",
                target,
                "UPDATE",
                f"Illegal status transition {old_status.value} -> {new_status.value}",
            )
        return

    # Status unchanged: a terminal transfer only accepts audit metadata.
    if not is_terminal(TransferStatus(target.status)):
        return

    for attr in mapper.column_attrs:
        key = attr.key
        if key in _TRANSFER_AUDIT_FIELDS:
            continue
        if get_history(target, key).has_changes():
            _block(
                "Transfer",
                target,
                "UPDATE",
                f"Transfer is {target.status}; field '{key}' cannot change",
            )


def _check_transfer_delete(mapper, connection, target):
    _block("Transfer", target, "DELETE", "Transfers are never deleted; cancel instead")


def _listeners():
    from stock_kernel.models.adjustment import StockAdjustment
    from stock_kernel.models.conversion import ConversionRecord
    from stock_kernel.models.ledger_entry import LedgerEntry
    from stock_kernel.models.physical_token import TokenScan
    from stock_kernel.models.stock_cell import StockCell
    from stock_kernel.models.transfer import Transfer

    return [
        (LedgerEntry, "before_update", _check_ledger_entry_update),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (ConversionRecord, "before_update", _check_conversion_record_update),
        (ConversionRecord, "before_delete", _check_conversion_record_delete),
        (StockAdjustment, "before_update", _check_adjustment_update),
        (StockAdjustment, "before_delete", _check_adjustment_delete),
        (TokenScan, "before_update", _check_token_scan_update),
        (TokenScan, "before_delete", _check_token_scan_delete),
        (StockCell, "before_delete", _check_stock_cell_delete),
        (Transfer, "before_update", _check_transfer_update),
        (Transfer, "before_delete", _check_transfer_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call after models are importable and before any writes.  Safe to call
    more than once.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that deliberately tamper with history to
    verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
