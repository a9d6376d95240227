"""
BaseService -- abstract base for flush-only kernel services.

Responsibility:
    Common constructor and session contract for the building-block services
    (LedgerStore, IdempotencyService, TokenBinding).  They persist with
    ``session.flush()`` and never commit.

Architecture position:
    Kernel > Services.  The engines (AdjustmentEngine, ConversionEngine,
    TransferStateMachine) compose these services and own commit/rollback.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the atomicity of the
      engine that composed it: a later failure could no longer roll back the
      earlier half of the operation.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from stock_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for flush-only services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read models -- those belong in
          ``stock_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
