"""
TransferStateMachine -- location-to-location stock movement.

Responsibility:
    Creates transfers (shipped on creation), receives them at their
    destination, cancels them, and resolves scanned codes to transfers.

Architecture position:
    Kernel > Services.  Top-level engine: owns commit/rollback.  Composes
    LedgerStore, TokenBinding, SequenceService and IdempotencyService.
    Legal status changes come from domain/transfer_lifecycle.py.

Invariants enforced:
    - Creation touches no StockCell.  Stock moves only on receipt.
    - Receipt dispatches on the item variant.  A TokenBoundItem moves its
      token and writes no ledger entry.  A LedgerTrackedItem writes
      ``transfer_out`` at the source (floored at zero) and ``transfer_in`` at
      the destination.
    - Each half of a ledger-tracked item commits on its own, keyed by
      (transfer, item, transaction type) in the ledger's reference columns,
      so a retried receipt resumes instead of double-crediting.
    - Completion is a conditional UPDATE ``WHERE status = 'in_transit'``;
      exactly one receipt can win it.
    - Cancellation is refused once any receipt work has committed.  Both
      paths lock the transfer row, and the cancelling UPDATE repeats the
      check in its WHERE clause.

Failure modes:
    - TransferNotFoundError: unknown transfer id.
    - AlreadyReceivedError: the transfer is already completed.
    - InvalidTransferStateError: any other transition from the wrong state.
    - LocationMismatchError: receiving at a location other than the
      transfer's destination.
    - InvalidTransferError / InvalidQuantityError: malformed create request,
      unknown item condition, or a cancel after a receipt has started.
    - Token errors from TokenBinding when binding tokens.

Audit relevance:
    ``transfer_created``, ``transfer_received``, ``transfer_cancelled`` at
    INFO; ``transfer_source_shortfall`` at WARNING when a receipt had to
    clamp the source deduction.
"""

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import assert_never
from uuid import UUID, uuid4

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, round_quantity, to_quantity
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    CellKey,
    LedgerMetadata,
    LedgerTrackedItem,
    LocationNameResolver,
    ReceiptResult,
    SourceShortfall,
    TokenBoundItem,
    TransferItemSpec,
    TransferView,
    item_view_from_model,
)
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.transfer_lifecycle import INITIAL_TRANSFER_STATUS, can_transition
from stock_kernel.domain.values import (
    ItemCondition,
    ReferenceType,
    ScanOperation,
    TokenStatus,
    TransactionType,
    TransferStatus,
)
from stock_kernel.exceptions import (
    AlreadyReceivedError,
    DuplicateRequestError,
    InvalidQuantityError,
    InvalidTransferError,
    InvalidTransferStateError,
    LocationMismatchError,
    StockLedgerError,
    StorageFailureError,
    TokenNotFoundError,
    TokenUnavailableError,
    TransferNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.ledger_entry import LedgerEntry
from stock_kernel.models.transfer import Transfer, TransferItem
from stock_kernel.services.idempotency_service import IdempotencyService
from stock_kernel.services.ledger_store import LedgerStore
from stock_kernel.services.sequence_service import SequenceService
from stock_kernel.services.token_binding import TokenBinding, normalize_code

logger = get_logger("services.transfer")


def _receipt_started():
    """SQL condition, correlated on Transfer.id: some receipt work is committed."""
    return exists(
        select(LedgerEntry.id).where(
            LedgerEntry.reference_type == ReferenceType.TRANSFER.value,
            LedgerEntry.reference_id == Transfer.id,
        )
    ) | exists(
        select(TransferItem.id).where(
            TransferItem.transfer_id == Transfer.id,
            TransferItem.received_at.is_not(None),
        )
    )


class TransferStateMachine:
    """
    Create, receive and cancel transfers.

    Contract:
        With ``auto_commit`` (the default) every public write commits its own
        work.  ``receive_transfer`` commits once per item half and once for
        the final status change.
    """

    OPERATION_CREATE = "transfer_create"

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: LedgerPolicy | None = None,
        auto_commit: bool = True,
        resolve_location_name: LocationNameResolver | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or LedgerPolicy()
        self._auto_commit = auto_commit
        self._resolve_location_name = resolve_location_name
        self._ledger = LedgerStore(session, self._clock, self._policy)
        self._tokens = TokenBinding(session, self._clock, self._policy)
        self._sequences = SequenceService(session)
        self._idempotency = IdempotencyService(session, self._clock)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_transfer(
        self,
        store_id: UUID,
        source_location_id: UUID,
        destination_location_id: UUID,
        items: Sequence[TransferItemSpec],
        notes: str | None,
        actor_id: UUID | None,
        tracking_number: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransferView:
        """
        Persist a new in-transit transfer with its items.

        Items naming a ``token_code`` are bound to their physical token in
        the same transaction.  No stock moves until the transfer is received.
        """
        specs = self._validate_create(source_location_id, destination_location_id, items)
        payload = {
            "store_id": store_id,
            "source_location_id": source_location_id,
            "destination_location_id": destination_location_id,
            "items": [
                {
                    "product_id": spec.product_id,
                    "quantity": spec.quantity,
                    "token_code": spec.token_code,
                }
                for spec in specs
            ],
            "notes": notes,
            "tracking_number": tracking_number,
        }

        with LogContext.bind(
            correlation_id=uuid4(),
            actor_id=actor_id,
            store_id=store_id,
            idempotency_key=idempotency_key,
        ):
            record = None
            if idempotency_key is not None:
                try:
                    record = self._idempotency.claim(
                        idempotency_key, self.OPERATION_CREATE, payload, actor_id,
                    )
                except DuplicateRequestError as dup:
                    self._rollback()
                    transfer_id = UUID((dup.result_payload or {})["transfer_id"])
                    logger.info("transfer_create_replayed", extra={"transfer_id": str(transfer_id)})
                    return self.get_transfer(transfer_id)
                except StockLedgerError:
                    self._rollback()
                    raise

            try:
                transfer = self._create(
                    store_id, source_location_id, destination_location_id,
                    specs, notes, actor_id, tracking_number,
                )
                if record is not None:
                    self._idempotency.complete(record, {"transfer_id": str(transfer.id)})
                self._commit("create_transfer")
            except StockLedgerError as exc:
                logger.warning(
                    "transfer_create_failed",
                    extra={"error_code": exc.code},
                    exc_info=True,
                )
                self._rollback()
                raise

            logger.info(
                "transfer_created",
                extra={
                    "transfer_id": str(transfer.id),
                    "transfer_number": transfer.transfer_number,
                    "item_count": len(specs),
                },
            )
            return self._view(transfer)

    def create_token_transfer(
        self,
        code: str,
        store_id: UUID,
        destination_location_id: UUID,
        actor_id: UUID | None,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransferView:
        """Ship the single unit behind a physical token from where it is now."""
        token = self._tokens.require_token(code, store_id)
        if token.token_status != TokenStatus.AVAILABLE:
            raise TokenUnavailableError(token.code, token.status)
        if token.product_id is None:
            raise InvalidTransferError(f"token {token.code} is not linked to a product")
        if token.current_location_id is None:
            raise InvalidTransferError(f"token {token.code} has no current location")

        return self.create_transfer(
            store_id=store_id,
            source_location_id=token.current_location_id,
            destination_location_id=destination_location_id,
            items=[TransferItemSpec(token.product_id, Decimal("1"), token_code=token.code)],
            notes=notes,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
        )

    def _validate_create(
        self,
        source_location_id: UUID,
        destination_location_id: UUID,
        items: Sequence[TransferItemSpec],
    ) -> list[TransferItemSpec]:
        if not items:
            raise InvalidTransferError("transfer must contain at least one item")
        if source_location_id == destination_location_id:
            raise InvalidTransferError("source and destination must differ")

        specs = []
        for spec in items:
            quantity = round_quantity(
                to_quantity(spec.quantity),
                self._policy.quantity_decimal_places,
            )
            if quantity <= ZERO:
                raise InvalidQuantityError(spec.quantity, "transfer quantity must be positive")
            if spec.token_code is not None and quantity != Decimal("1"):
                raise InvalidTransferError("a token-bound item carries exactly one unit")
            specs.append(TransferItemSpec(spec.product_id, quantity, spec.token_code))
        return specs

    def _create(
        self,
        store_id: UUID,
        source_location_id: UUID,
        destination_location_id: UUID,
        specs: list[TransferItemSpec],
        notes: str | None,
        actor_id: UUID | None,
        tracking_number: str | None,
    ) -> Transfer:
        now = self._clock.now()
        transfer = Transfer(
            id=uuid4(),
            store_id=store_id,
            transfer_number=self._sequences.next_transfer_number(
                self._policy.transfer_number_prefix,
                self._policy.transfer_number_width,
            ),
            source_location_id=source_location_id,
            destination_location_id=destination_location_id,
            status=INITIAL_TRANSFER_STATUS.value,
            notes=notes,
            tracking_number=tracking_number,
            shipped_at=now,
            created_by_id=actor_id,
            approved_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )
        self._session.add(transfer)
        self._session.flush()

        for line_number, spec in enumerate(specs, start=1):
            bound_token_id = None
            if spec.token_code is not None:
                token = self._tokens.require_token(spec.token_code, store_id)
                if token.current_location_id != source_location_id:
                    raise InvalidTransferError(
                        f"token {token.code} is not at the source location"
                    )
                if token.product_id is not None and token.product_id != spec.product_id:
                    raise InvalidTransferError(
                        f"token {token.code} belongs to a different product"
                    )
                self._tokens.bind(token, transfer.id, actor_id)
                bound_token_id = token.id

            transfer.items.append(
                TransferItem(
                    line_number=line_number,
                    product_id=spec.product_id,
                    quantity=spec.quantity,
                    received_quantity=ZERO,
                    bound_token_id=bound_token_id,
                    created_by_id=actor_id,
                    created_at=now,
                    updated_at=now,
                )
            )
        self._session.flush()
        return transfer

    # =========================================================================
    # Receipt
    # =========================================================================

    def receive_transfer(
        self,
        transfer_id: UUID,
        destination_location_id: UUID,
        actor_id: UUID | None,
        item_conditions: Mapping[UUID, ItemCondition | str] | None = None,
        condition_notes: Mapping[UUID, str] | None = None,
    ) -> ReceiptResult:
        """
        Receive every item of an in-transit transfer at its destination.

        Raises:
            AlreadyReceivedError: The transfer is completed, or a concurrent
                receipt completed it first.
            InvalidTransferStateError: The transfer is draft or cancelled.
            LocationMismatchError: ``destination_location_id`` is not the
                transfer's destination.
            InvalidTransferError: An item condition is unknown, or a
                condition names an item outside this transfer.  Raised
                before anything is written.
        """
        item_conditions = item_conditions or {}
        condition_notes = condition_notes or {}

        with LogContext.bind(
            correlation_id=uuid4(),
            actor_id=actor_id,
            transfer_id=transfer_id,
        ):
            transfer = self._require_transfer(transfer_id)
            self._check_receivable(transfer)
            if transfer.destination_location_id != destination_location_id:
                raise LocationMismatchError(
                    str(transfer.id),
                    str(transfer.destination_location_id),
                    str(destination_location_id),
                )
            conditions = self._validate_conditions(transfer, item_conditions, condition_notes)

            logger.info(
                "transfer_receive_started",
                extra={"transfer_number": transfer.transfer_number, "item_count": len(transfer.items)},
            )

            entry_ids: list[UUID] = []
            released: list[UUID] = []
            warnings: list[SourceShortfall] = []

            try:
                for item in sorted(transfer.items, key=lambda i: i.line_number):
                    if item.received_at is not None:
                        # Finished by an earlier, interrupted attempt.
                        continue

                    # Serializes with cancel_transfer: nothing is written once
                    # a concurrent cancel has committed.
                    self._check_receivable(self._lock_transfer(transfer.id))

                    view = item_view_from_model(item)
                    match view:
                        case TokenBoundItem():
                            released.append(self._receive_token_item(transfer, view, actor_id))
                        case LedgerTrackedItem():
                            ids, shortfall = self._receive_ledger_item(transfer, view, actor_id)
                            entry_ids.extend(ids)
                            if shortfall is not None:
                                warnings.append(shortfall)
                        case _:
                            assert_never(view)

                    condition = conditions.get(item.id)
                    item.received_quantity = item.quantity
                    item.condition = condition.value if condition else None
                    item.condition_notes = condition_notes.get(item.id)
                    item.received_at = self._clock.now()
                    item.updated_by_id = actor_id
                    self._commit("receive_transfer_item")

                self._complete(transfer, actor_id)
            except StockLedgerError as exc:
                logger.warning(
                    "transfer_receive_failed",
                    extra={"error_code": exc.code},
                    exc_info=True,
                )
                self._rollback()
                raise

            self._session.refresh(transfer)
            logger.info(
                "transfer_received",
                extra={
                    "transfer_number": transfer.transfer_number,
                    "ledger_entry_count": len(entry_ids),
                    "released_token_count": len(released),
                    "shortfall_count": len(warnings),
                },
            )
            return ReceiptResult(
                transfer=self._view(transfer),
                ledger_entry_ids=tuple(entry_ids),
                released_token_ids=tuple(released),
                warnings=tuple(warnings),
            )

    def _receive_token_item(
        self,
        transfer: Transfer,
        item: TokenBoundItem,
        actor_id: UUID | None,
    ) -> UUID:
        token = self._tokens.get_token(item.token_id)
        if token is None:
            raise TokenNotFoundError(str(item.token_id))
        self._tokens.release_to(
            token, transfer.destination_location_id, ScanOperation.RECEIVE, actor_id,
        )
        return token.id

    def _receive_ledger_item(
        self,
        transfer: Transfer,
        item: LedgerTrackedItem,
        actor_id: UUID | None,
    ) -> tuple[list[UUID], SourceShortfall | None]:
        reason = f"Transfer {transfer.transfer_number}"
        entry_ids: list[UUID] = []

        source_entry, floored = self._ledger.apply_delta_floored(
            CellKey(item.product_id, transfer.source_location_id),
            -item.quantity,
            self._metadata(transfer, item, TransactionType.TRANSFER_OUT, reason, actor_id),
        )
        if source_entry is not None:
            entry_ids.append(source_entry.id)
        self._commit("receive_transfer_out")

        dest_entry = self._ledger.apply_delta(
            CellKey(item.product_id, transfer.destination_location_id),
            item.quantity,
            self._metadata(transfer, item, TransactionType.TRANSFER_IN, reason, actor_id),
        )
        entry_ids.append(dest_entry.id)

        shortfall = None
        if floored.shortfall > ZERO:
            shortfall = SourceShortfall(
                item_id=item.item_id,
                product_id=item.product_id,
                location_id=transfer.source_location_id,
                requested=item.quantity,
                deducted=-floored.applied,
            )
            if self._policy.warn_on_source_shortfall:
                logger.warning(
                    "transfer_source_shortfall",
                    extra={
                        "transfer_number": transfer.transfer_number,
                        "item_id": str(item.item_id),
                        "product_id": str(item.product_id),
                        "requested": shortfall.requested,
                        "deducted": shortfall.deducted,
                        "shortfall": shortfall.shortfall,
                    },
                )
        return entry_ids, shortfall

    def _metadata(
        self,
        transfer: Transfer,
        item: LedgerTrackedItem,
        transaction_type: TransactionType,
        reason: str,
        actor_id: UUID | None,
    ) -> LedgerMetadata:
        return LedgerMetadata(
            store_id=transfer.store_id,
            transaction_type=transaction_type,
            reason=reason,
            reference_type=ReferenceType.TRANSFER,
            reference_id=transfer.id,
            reference_line_id=item.item_id,
            performed_by=actor_id,
        )

    def _complete(self, transfer: Transfer, actor_id: UUID | None) -> None:
        now = self._clock.now()
        result = self._session.execute(
            update(Transfer)
            .where(
                Transfer.id == transfer.id,
                Transfer.status == TransferStatus.IN_TRANSIT.value,
            )
            .values(
                status=TransferStatus.COMPLETED.value,
                received_at=now,
                received_by_id=actor_id,
                updated_at=now,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._rollback()
            current = self._require_transfer(transfer.id)
            self._check_receivable(current)
            raise InvalidTransferStateError(
                str(transfer.id), current.status, TransferStatus.COMPLETED.value,
            )
        self._commit("receive_transfer_complete")

    def _check_receivable(self, transfer: Transfer) -> None:
        status = transfer.transfer_status
        if status == TransferStatus.COMPLETED:
            received_at = transfer.received_at.isoformat() if transfer.received_at else None
            raise AlreadyReceivedError(str(transfer.id), received_at)
        if not can_transition(status, TransferStatus.COMPLETED):
            raise InvalidTransferStateError(
                str(transfer.id), status.value, TransferStatus.COMPLETED.value,
            )

    @staticmethod
    def _validate_conditions(
        transfer: Transfer,
        item_conditions: Mapping[UUID, ItemCondition | str],
        condition_notes: Mapping[UUID, str],
    ) -> dict[UUID, ItemCondition]:
        item_ids = {item.id for item in transfer.items}
        unknown = (set(item_conditions) | set(condition_notes)) - item_ids
        if unknown:
            raise InvalidTransferError(
                f"items {sorted(str(i) for i in unknown)} are not part of transfer "
                f"{transfer.transfer_number}"
            )

        conditions = {}
        for item_id, condition in item_conditions.items():
            if not condition:
                continue
            try:
                conditions[item_id] = ItemCondition(condition)
            except ValueError:
                raise InvalidTransferError(f"unknown item condition {condition!r}") from None
        return conditions

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_transfer(self, transfer_id: UUID, actor_id: UUID | None) -> TransferView:
        """
        Cancel an in-transit transfer.

        Bound tokens go back to the source location as available.  No ledger
        entries are written: nothing moved.

        Raises:
            InvalidTransferStateError: The transfer is not in transit.
            InvalidTransferError: A receipt has already committed work for
                this transfer (a ledger entry or a received item).  Retry
                ``receive_transfer`` to finish it.
        """
        with LogContext.bind(correlation_id=uuid4(), actor_id=actor_id, transfer_id=transfer_id):
            transfer = self._lock_transfer(transfer_id)
            status = transfer.transfer_status
            if not can_transition(status, TransferStatus.CANCELLED):
                self._rollback()
                raise InvalidTransferStateError(
                    str(transfer.id), status.value, TransferStatus.CANCELLED.value,
                )
            if self._receipt_in_progress(transfer.id):
                self._rollback()
                raise self._receipt_in_progress_error(transfer)

            try:
                now = self._clock.now()
                result = self._session.execute(
                    update(Transfer)
                    .where(
                        Transfer.id == transfer.id,
                        Transfer.status == TransferStatus.IN_TRANSIT.value,
                        ~_receipt_started(),
                    )
                    .values(
                        status=TransferStatus.CANCELLED.value,
                        cancelled_at=now,
                        cancelled_by_id=actor_id,
                        updated_at=now,
                        updated_by_id=actor_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self._rollback()
                    current = self._require_transfer(transfer.id)
                    if current.transfer_status == TransferStatus.IN_TRANSIT:
                        raise self._receipt_in_progress_error(current)
                    raise InvalidTransferStateError(
                        str(transfer.id), current.status, TransferStatus.CANCELLED.value,
                    )

                for item in transfer.items:
                    if not item.is_token_bound:
                        continue
                    token = self._tokens.get_token(item.bound_token_id)
                    if token is not None and token.current_transfer_id == transfer.id:
                        self._tokens.release_to(
                            token, transfer.source_location_id, ScanOperation.CANCEL, actor_id,
                        )
                self._commit("cancel_transfer")
            except StockLedgerError:
                self._rollback()
                raise

            self._session.refresh(transfer)
            logger.info(
                "transfer_cancelled",
                extra={"transfer_number": transfer.transfer_number},
            )
            return self._view(transfer)

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_transfer(self, transfer_id: UUID) -> TransferView:
        return self._view(self._require_transfer(transfer_id))

    def lookup_by_token(self, code: str, store_id: UUID) -> TransferView | None:
        """
        Resolve a scanned code to a transfer.

        A transfer's own scan code (prefix + transfer uuid) resolves directly.
        Any other code is looked up as a physical token and its current
        transfer followed.
        """
        normalized = normalize_code(code)
        transfer_id = self._parse_scan_code(normalized)
        if transfer_id is not None:
            transfer = self._session.get(Transfer, transfer_id)
            if transfer is not None and transfer.store_id == store_id:
                return self._view(transfer)
            return None

        token = self._tokens.find_token(normalized, store_id)
        if token is None or token.current_transfer_id is None:
            return None
        transfer = self._session.get(Transfer, token.current_transfer_id)
        return self._view(transfer) if transfer is not None else None

    def _parse_scan_code(self, code: str) -> UUID | None:
        prefix = self._policy.transfer_code_prefix
        if len(code) <= len(prefix) or code[: len(prefix)].upper() != prefix.upper():
            return None
        try:
            return UUID(code[len(prefix):])
        except ValueError:
            return None

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_transfer(self, transfer_id: UUID) -> Transfer:
        transfer = self._session.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if transfer is None:
            raise TransferNotFoundError(str(transfer_id))
        return transfer

    def _lock_transfer(self, transfer_id: UUID) -> Transfer:
        transfer = self._session.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if transfer is None:
            raise TransferNotFoundError(str(transfer_id))
        return transfer

    def _receipt_in_progress(self, transfer_id: UUID) -> bool:
        return self._session.scalar(
            select(Transfer.id).where(Transfer.id == transfer_id, _receipt_started())
        ) is not None

    @staticmethod
    def _receipt_in_progress_error(transfer: Transfer) -> InvalidTransferError:
        logger.warning(
            "transfer_cancel_refused",
            extra={"transfer_number": transfer.transfer_number},
        )
        return InvalidTransferError(
            f"transfer {transfer.transfer_number} has a receipt in progress; "
            "finish it with receive_transfer instead of cancelling"
        )

    def _view(self, transfer: Transfer) -> TransferView:
        return TransferView.from_model(
            transfer,
            scan_code_prefix=self._policy.transfer_code_prefix,
            resolve_location_name=self._resolve_location_name,
        )

    def _commit(self, operation: str) -> None:
        if not self._auto_commit:
            self._session.flush()
            return
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error("transfer_commit_failed", extra={"operation": operation}, exc_info=True)
            raise StorageFailureError(operation, str(exc)) from exc

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()
