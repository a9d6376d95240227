"""
AdjustmentEngine -- idempotent single-cell quantity adjustments.

Responsibility:
    Applies a relative (signed delta) or absolute (authoritative end state)
    adjustment to one (product, location) cell, exactly once per
    idempotency key, and records the applied adjustment.

Architecture position:
    Kernel > Services.  Top-level engine: owns commit/rollback.  Composes
    IdempotencyService and LedgerStore.

Invariants enforced:
    - Exactly-once: a completed key replays its stored AdjustmentResult with
      ``replayed=True`` and writes nothing.
    - Absolute mode is applied as ``set_absolute`` against the locked cell and
      is never turned into a delta computed from an earlier read.
    - The ledger entry, the StockAdjustment row and the completed idempotency
      record commit together or not at all.

Failure modes:
    - InvalidAdjustmentError: missing idempotency key, unknown type or mode.
    - InvalidQuantityError: float/NaN value, zero relative delta, negative
      absolute target.
    - InsufficientStockError: relative delta would take the cell negative.
      The idempotency record is persisted as failed; a retry may succeed.
    - RequestInProgressError / IdempotencyKeyReuseError: see
      IdempotencyService.
    - StorageFailureError: the commit itself failed.  Retry with the same key.

Audit relevance:
    Emits ``adjustment_started`` / ``adjustment_completed`` /
    ``adjustment_replayed`` / ``adjustment_failed`` with the idempotency key
    bound into the log context.
"""

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, to_quantity
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import AdjustmentRequest, AdjustmentResult, CellKey, LedgerMetadata
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.values import AdjustmentMode, AdjustmentType, ReferenceType, TransactionType
from stock_kernel.exceptions import (
    DuplicateRequestError,
    InvalidAdjustmentError,
    InvalidQuantityError,
    StockLedgerError,
    StorageFailureError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.adjustment import StockAdjustment
from stock_kernel.services.idempotency_service import IdempotencyService
from stock_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.adjustment")


class AdjustmentEngine:
    """
    Relative and absolute stock adjustments with idempotent replay.

    Contract:
        ``adjust`` commits on success (when ``auto_commit``) and rolls back on
        failure.  With ``auto_commit=False`` the caller owns the transaction
        and no failed idempotency record is written.
    """

    OPERATION = "stock_adjustment"

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: LedgerPolicy | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or LedgerPolicy()
        self._auto_commit = auto_commit
        self._ledger = LedgerStore(session, self._clock, self._policy)
        self._idempotency = IdempotencyService(session, self._clock)

    def adjust(self, request: AdjustmentRequest, actor_id: UUID | None) -> AdjustmentResult:
        """
        Apply ``request`` once.

        Postconditions:
            - On success exactly one LedgerEntry and one StockAdjustment exist
              for the key, and the key's record is completed.
            - A replay returns the first result unchanged except
              ``replayed=True``.
        """
        with LogContext.bind(
            correlation_id=uuid4(),
            actor_id=actor_id,
            store_id=request.store_id,
            idempotency_key=request.idempotency_key,
        ):
            value = self._validate(request)
            payload = request.fingerprint_payload()
            logger.info(
                "adjustment_started",
                extra={
                    "product_id": str(request.product_id),
                    "location_id": str(request.location_id),
                    "adjustment_type": AdjustmentType(request.adjustment_type).value,
                    "mode": AdjustmentMode(request.mode).value,
                    "value": value,
                },
            )

            try:
                record = self._idempotency.claim(
                    request.idempotency_key, self.OPERATION, payload, actor_id,
                )
            except DuplicateRequestError as dup:
                self._end_read_only()
                logger.info("adjustment_replayed")
                return AdjustmentResult.from_payload(dup.result_payload or {})
            except StockLedgerError:
                self._end_read_only()
                raise

            try:
                result = self._apply(request, value, actor_id)
                self._idempotency.complete(record, result.to_payload())
                self._commit()
            except StockLedgerError as exc:
                self._fail(request, payload, actor_id, exc)
                raise

            logger.info(
                "adjustment_completed",
                extra={
                    "adjustment_id": str(result.adjustment_id),
                    "quantity_before": result.quantity_before,
                    "quantity_after": result.quantity_after,
                },
            )
            return result

    def quick_audit(
        self,
        store_id: UUID,
        product_id: UUID,
        location_id: UUID,
        counted_quantity: Decimal,
        actor_id: UUID | None,
        idempotency_key: str,
        notes: str | None = None,
    ) -> AdjustmentResult:
        """Record a shelf count as the authoritative quantity of a cell."""
        return self.adjust(
            AdjustmentRequest(
                store_id=store_id,
                product_id=product_id,
                location_id=location_id,
                adjustment_type=AdjustmentType.COUNT_CORRECTION,
                mode=AdjustmentMode.ABSOLUTE,
                value=counted_quantity,
                idempotency_key=idempotency_key,
                reason="Quick audit",
                notes=notes,
            ),
            actor_id,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate(self, request: AdjustmentRequest) -> Decimal:
        if not request.idempotency_key:
            raise InvalidAdjustmentError(
                "idempotency_key", request.idempotency_key, "an idempotency key is required",
            )
        try:
            AdjustmentType(request.adjustment_type)
        except ValueError:
            raise InvalidAdjustmentError(
                "adjustment_type", request.adjustment_type, "unknown adjustment type",
            ) from None
        try:
            mode = AdjustmentMode(request.mode)
        except ValueError:
            raise InvalidAdjustmentError("mode", request.mode, "unknown adjustment mode") from None

        value = to_quantity(request.value, field="value")
        if mode == AdjustmentMode.RELATIVE and value == ZERO:
            raise InvalidQuantityError(request.value, "relative adjustment must be non-zero")
        if mode == AdjustmentMode.ABSOLUTE and value < ZERO:
            raise InvalidQuantityError(request.value, "absolute target must not be negative")
        return value

    def _apply(
        self,
        request: AdjustmentRequest,
        value: Decimal,
        actor_id: UUID | None,
    ) -> AdjustmentResult:
        adjustment_id = uuid4()
        adjustment_type = AdjustmentType(request.adjustment_type)
        mode = AdjustmentMode(request.mode)
        cell_key = CellKey(request.product_id, request.location_id)
        metadata = LedgerMetadata(
            store_id=request.store_id,
            transaction_type=TransactionType.ADJUSTMENT,
            reason=request.reason or adjustment_type.display_name,
            reference_type=ReferenceType.ADJUSTMENT,
            reference_id=adjustment_id,
            performed_by=actor_id,
        )

        if mode == AdjustmentMode.ABSOLUTE:
            entry = self._ledger.set_absolute(cell_key, value, metadata)
        else:
            entry = self._ledger.apply_delta(cell_key, value, metadata)

        now = self._clock.now()
        self._session.add(
            StockAdjustment(
                id=adjustment_id,
                store_id=request.store_id,
                product_id=request.product_id,
                location_id=request.location_id,
                adjustment_type=adjustment_type.value,
                mode=mode.value,
                requested_value=value,
                quantity_before=entry.quantity_before,
                quantity_after=entry.quantity_after,
                reason=metadata.reason,
                notes=request.notes,
                ledger_entry_id=entry.id,
                idempotency_key=request.idempotency_key,
                created_by_id=actor_id,
                created_at=now,
                updated_at=now,
            )
        )
        self._session.flush()

        return AdjustmentResult(
            adjustment_id=adjustment_id,
            quantity_before=entry.quantity_before,
            quantity_after=entry.quantity_after,
            cell_total=self._ledger.product_total(request.store_id, request.product_id),
        )

    def _commit(self) -> None:
        if not self._auto_commit:
            self._session.flush()
            return
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error("adjustment_commit_failed", exc_info=True)
            raise StorageFailureError("adjust", str(exc)) from exc

    def _end_read_only(self) -> None:
        # Releases the idempotency row lock taken by the claim.
        if self._auto_commit:
            self._session.rollback()

    def _fail(
        self,
        request: AdjustmentRequest,
        payload: dict,
        actor_id: UUID | None,
        exc: StockLedgerError,
    ) -> None:
        logger.warning(
            "adjustment_failed",
            extra={"error_code": exc.code},
            exc_info=True,
        )
        if not self._auto_commit:
            return
        self._session.rollback()
        if isinstance(exc, StorageFailureError):
            return
        self._idempotency.record_failure(
            request.idempotency_key, self.OPERATION, payload, exc.code, actor_id,
        )
        self._commit()
