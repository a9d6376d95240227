"""
Transfer lifecycle (``stock_kernel.domain.transfer_lifecycle``).

Responsibility
--------------
The pure state machine for transfers.  ``TRANSFER_TRANSITIONS`` is the only
definition of which status changes are legal; the TransferStateMachine
service and the ORM immutability listener both consult it.

Architecture position
---------------------
**Kernel domain layer** -- pure.  ZERO I/O.  Imports only ``domain.values``.

Invariants enforced
-------------------
* Status is monotonic: ``draft -> in_transit -> completed`` with
  ``in_transit -> cancelled`` as the only other edge.
* ``completed`` and ``cancelled`` are terminal -- no outgoing edges.
* Transfers are normally created directly in ``in_transit`` (shipped at
  creation); ``draft`` exists for callers that stage transfers first.
"""

from __future__ import annotations

from stock_kernel.domain.values import TransferStatus

TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.DRAFT: frozenset({TransferStatus.IN_TRANSIT}),
    TransferStatus.IN_TRANSIT: frozenset({
        TransferStatus.COMPLETED,
        TransferStatus.CANCELLED,
    }),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}

TERMINAL_TRANSFER_STATUSES: frozenset[TransferStatus] = frozenset({
    TransferStatus.COMPLETED,
    TransferStatus.CANCELLED,
})

INITIAL_TRANSFER_STATUS = TransferStatus.IN_TRANSIT


def can_transition(current: TransferStatus | str, target: TransferStatus | str) -> bool:
    """Return True if ``current -> target`` is a legal transfer transition."""
    return TransferStatus(target) in TRANSFER_TRANSITIONS[TransferStatus(current)]


def is_terminal(status: TransferStatus | str) -> bool:
    return TransferStatus(status) in TERMINAL_TRANSFER_STATUSES
