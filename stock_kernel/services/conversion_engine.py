"""
ConversionEngine -- parent-to-variant stock conversion.

Responsibility:
    Converts stock of a parent product into units of a variant at one
    location (e.g. a 1000g bag into 4 x 250g packs): a ``conversion_out``
    entry on the parent cell, a ``conversion_in`` entry on the variant cell
    and a ConversionRecord, all in one transaction.

Architecture position:
    Kernel > Services.  Top-level engine: owns commit/rollback.

Invariants enforced:
    - Both cells are locked in sorted key order before either is read, so two
      conversions touching the same pair cannot deadlock.
    - ``units_to_create * conversion_ratio <= locked parent quantity``.
    - Both entries share ``reference_id = conversion_id``.
    - All or nothing: one commit covers both entries and the record.

Failure modes:
    - InvalidConversionRatioError: ratio <= 0 or not finite.
    - InvalidQuantityError: units_to_create <= 0 or a float.
    - InsufficientStockError(required, available): parent stock too low.
    - StorageFailureError: the commit failed.
"""

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_kernel.db.types import RATIO_DECIMAL_PLACES, ZERO, round_quantity, to_quantity
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import CellKey, ConversionResult, LedgerMetadata
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.values import ReferenceType, TransactionType
from stock_kernel.exceptions import (
    DuplicateRequestError,
    InsufficientStockError,
    InvalidConversionRatioError,
    InvalidQuantityError,
    StockLedgerError,
    StorageFailureError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.conversion import ConversionRecord
from stock_kernel.services.idempotency_service import IdempotencyService
from stock_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.conversion")


class ConversionEngine:
    """Atomic parent-to-variant conversions."""

    OPERATION = "stock_conversion"

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

    def convert(
        self,
        product_id: UUID,
        variant_id: UUID,
        location_id: UUID,
        units_to_create: Decimal,
        conversion_ratio: Decimal,
        actor_id: UUID | None,
        store_id: UUID,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> ConversionResult:
        """
        Consume ``units_to_create * conversion_ratio`` of the parent and create
        ``units_to_create`` of the variant at ``location_id``.

        ``conversion_ratio`` is parent quantity per variant unit.
        """
        units = to_quantity(units_to_create, field="units_to_create")
        if units <= ZERO:
            raise InvalidQuantityError(units_to_create, "units_to_create must be positive")
        ratio = self._validate_ratio(conversion_ratio)
        if product_id == variant_id:
            raise InvalidQuantityError(variant_id, "variant must differ from parent product")

        required = round_quantity(units * ratio, self._policy.quantity_decimal_places)
        payload = {
            "store_id": store_id,
            "product_id": product_id,
            "variant_id": variant_id,
            "location_id": location_id,
            "units_to_create": units,
            "conversion_ratio": ratio,
        }

        with LogContext.bind(
            correlation_id=uuid4(),
            actor_id=actor_id,
            store_id=store_id,
            idempotency_key=idempotency_key,
        ):
            logger.info(
                "conversion_started",
                extra={
                    "product_id": str(product_id),
                    "variant_id": str(variant_id),
                    "location_id": str(location_id),
                    "units_to_create": units,
                    "conversion_ratio": ratio,
                },
            )

            record = None
            if idempotency_key is not None:
                try:
                    record = self._idempotency.claim(
                        idempotency_key, self.OPERATION, payload, actor_id,
                    )
                except DuplicateRequestError as dup:
                    self._rollback()
                    logger.info("conversion_replayed")
                    return ConversionResult.from_payload(dup.result_payload or {})
                except StockLedgerError:
                    self._rollback()
                    raise

            try:
                result = self._apply(
                    product_id, variant_id, location_id, units, ratio, required,
                    actor_id, store_id, notes,
                )
                if record is not None:
                    self._idempotency.complete(record, result.to_payload())
                self._commit()
            except StockLedgerError as exc:
                logger.warning(
                    "conversion_failed",
                    extra={"error_code": exc.code},
                    exc_info=True,
                )
                self._rollback()
                if idempotency_key is not None and self._auto_commit and not isinstance(
                    exc, StorageFailureError
                ):
                    self._idempotency.record_failure(
                        idempotency_key, self.OPERATION, payload, exc.code, actor_id,
                    )
                    self._commit()
                raise

            logger.info(
                "conversion_completed",
                extra={
                    "conversion_id": str(result.conversion_id),
                    "parent_quantity_consumed": result.parent_quantity_consumed,
                    "new_parent_quantity": result.new_parent_quantity,
                    "new_variant_quantity": result.new_variant_quantity,
                },
            )
            return result

    def _validate_ratio(self, conversion_ratio: Decimal) -> Decimal:
        if isinstance(conversion_ratio, (bool, float)):
            raise InvalidConversionRatioError(conversion_ratio)
        try:
            ratio = to_quantity(conversion_ratio, field="conversion_ratio")
        except InvalidQuantityError as exc:
            raise InvalidConversionRatioError(conversion_ratio) from exc
        if ratio <= ZERO:
            raise InvalidConversionRatioError(conversion_ratio)
        return round_quantity(ratio, RATIO_DECIMAL_PLACES)

    def _apply(
        self,
        product_id: UUID,
        variant_id: UUID,
        location_id: UUID,
        units: Decimal,
        ratio: Decimal,
        required: Decimal,
        actor_id: UUID | None,
        store_id: UUID,
        notes: str | None,
    ) -> ConversionResult:
        parent_key = CellKey(product_id, location_id)
        variant_key = CellKey(variant_id, location_id)

        # Lock order: sorted by key, whatever the direction of the conversion.
        cells = {}
        for key in sorted((parent_key, variant_key), key=CellKey.sort_key):
            cells[key] = self._ledger.lock_cell(key, store_id)

        available = cells[parent_key].quantity
        if required > available:
            raise InsufficientStockError(
                required=required,
                available=available,
                product_id=str(product_id),
                location_id=str(location_id),
            )

        conversion_id = uuid4()
        reason = f"Converted to {units} variant units"

        out_entry = self._ledger.apply_delta(
            parent_key,
            -required,
            LedgerMetadata(
                store_id=store_id,
                transaction_type=TransactionType.CONVERSION_OUT,
                reason=reason,
                reference_type=ReferenceType.CONVERSION,
                reference_id=conversion_id,
                reference_line_id=product_id,
                performed_by=actor_id,
            ),
        )
        in_entry = self._ledger.apply_delta(
            variant_key,
            units,
            LedgerMetadata(
                store_id=store_id,
                transaction_type=TransactionType.CONVERSION_IN,
                reason=reason,
                reference_type=ReferenceType.CONVERSION,
                reference_id=conversion_id,
                reference_line_id=variant_id,
                performed_by=actor_id,
            ),
        )

        self._session.add(
            ConversionRecord(
                id=conversion_id,
                store_id=store_id,
                product_id=product_id,
                variant_id=variant_id,
                location_id=location_id,
                parent_quantity_consumed=required,
                variant_units_created=units,
                conversion_ratio=ratio,
                performed_by=actor_id,
                notes=notes,
                created_at=self._clock.now(),
            )
        )
        self._session.flush()

        return ConversionResult(
            conversion_id=conversion_id,
            parent_quantity_consumed=required,
            variant_units_created=units,
            new_parent_quantity=out_entry.quantity_after,
            new_variant_quantity=in_entry.quantity_after,
        )

    def _commit(self) -> None:
        if not self._auto_commit:
            self._session.flush()
            return
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error("conversion_commit_failed", exc_info=True)
            raise StorageFailureError("convert", str(exc)) from exc

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()
