"""
IdempotencyService -- durable request deduplication keyed by caller tokens.

Responsibility:
    Owns the idempotency record lifecycle for significant operations:
    claim a key (insert-as-gate), replay a completed outcome, reclaim a
    failed one, record completion or failure.

Architecture position:
    Kernel > Services.  Flush-only; used by AdjustmentEngine,
    ConversionEngine and TransferStateMachine inside their transactions.

Invariants enforced:
    - The unique insert on ``idempotency_records.key`` is the only
      cross-request serialization point.  First writer wins; a concurrent
      writer blocks on the unique index (PostgreSQL) and then reads the
      winner's outcome.
    - A key is bound to the hash of its first payload.  Reusing it with a
      different payload raises IdempotencyKeyReuseError.
    - Failed records never block a retry: they are reclaimed.

Failure modes:
    - DuplicateRequestError: the key already completed.  Engines catch it and
      replay ``result_payload``; callers never see it.
    - RequestInProgressError: another transaction still holds the key.
      Retryable.
    - IdempotencyKeyReuseError: same key, different payload.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.values import IdempotencyStatus
from stock_kernel.exceptions import (
    DuplicateRequestError,
    IdempotencyKeyReuseError,
    RequestInProgressError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.idempotency import IdempotencyRecord
from stock_kernel.services.base import BaseService
from stock_kernel.utils.hashing import hash_payload

logger = get_logger("services.idempotency")


class IdempotencyService(BaseService[IdempotencyRecord]):
    """Claim, complete and fail idempotency records."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    @staticmethod
    def request_hash(operation: str, payload: dict[str, Any]) -> str:
        return hash_payload({"operation": operation, "payload": payload})

    def get(self, key: str) -> IdempotencyRecord | None:
        return self.session.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.key == key)
        ).scalar_one_or_none()

    def _get_locked(self, key: str) -> IdempotencyRecord | None:
        return self.session.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def claim(
        self,
        key: str,
        operation: str,
        payload: dict[str, Any],
        actor_id: UUID | None = None,
    ) -> IdempotencyRecord:
        """
        Take ownership of ``key`` for this transaction.

        Returns the in-progress record the caller must later ``complete``.

        Raises:
            DuplicateRequestError: Key already completed (carries the result).
            RequestInProgressError: Key held by a transaction still running.
            IdempotencyKeyReuseError: Key was first used with another payload.
        """
        request_hash = self.request_hash(operation, payload)

        existing = self._get_locked(key)
        if existing is not None:
            return self._resolve_existing(existing, request_hash)

        now = self._clock.now()
        savepoint = self.session.begin_nested()
        try:
            record = IdempotencyRecord(
                key=key,
                operation=operation,
                request_hash=request_hash,
                status=IdempotencyStatus.IN_PROGRESS.value,
                attempts=1,
                actor_id=actor_id,
                created_at=now,
                updated_at=now,
            )
            self.session.add(record)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            # A concurrent request inserted the key first; its transaction
            # has finished by the time the unique index lets us through.
            savepoint.rollback()
            existing = self._get_locked(key)
            if existing is None:
                raise
            logger.info(
                "idempotency_claim_contended",
                extra={"operation": operation, "status": existing.status},
            )
            return self._resolve_existing(existing, request_hash)

        logger.debug("idempotency_claimed", extra={"operation": operation})
        return record

    def _resolve_existing(
        self,
        record: IdempotencyRecord,
        request_hash: str,
    ) -> IdempotencyRecord:
        if record.request_hash != request_hash:
            logger.warning(
                "idempotency_key_reused",
                extra={"operation": record.operation},
            )
            raise IdempotencyKeyReuseError(
                idempotency_key=record.key,
                expected_hash=record.request_hash,
                received_hash=request_hash,
            )

        match IdempotencyStatus(record.status):
            case IdempotencyStatus.COMPLETED:
                raise DuplicateRequestError(record.key, record.result_payload)
            case IdempotencyStatus.IN_PROGRESS:
                raise RequestInProgressError(record.key)
            case IdempotencyStatus.FAILED:
                record.status = IdempotencyStatus.IN_PROGRESS.value
                record.attempts += 1
                record.error_code = None
                record.updated_at = self._clock.now()
                self.session.flush()
                logger.info(
                    "idempotency_reclaimed",
                    extra={"operation": record.operation, "attempts": record.attempts},
                )
                return record

    def complete(self, record: IdempotencyRecord, result_payload: dict[str, Any]) -> None:
        """Mark a claimed record completed with the payload future replays return."""
        record.status = IdempotencyStatus.COMPLETED.value
        record.result_payload = result_payload
        record.updated_at = self._clock.now()
        self.session.flush()

    def record_failure(
        self,
        key: str,
        operation: str,
        payload: dict[str, Any],
        error_code: str,
        actor_id: UUID | None = None,
    ) -> IdempotencyRecord | None:
        """
        Persist a failed outcome for ``key``.

        Called in a fresh transaction after the failed attempt was rolled
        back.  A record another request has since claimed or completed is
        left untouched and None is returned.
        """
        now = self._clock.now()
        record = self._get_locked(key)
        if record is None:
            savepoint = self.session.begin_nested()
            try:
                record = IdempotencyRecord(
                    key=key,
                    operation=operation,
                    request_hash=self.request_hash(operation, payload),
                    status=IdempotencyStatus.FAILED.value,
                    error_code=error_code,
                    attempts=1,
                    actor_id=actor_id,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(record)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                return None
        elif record.status == IdempotencyStatus.FAILED.value:
            record.error_code = error_code
            record.attempts += 1
            record.updated_at = now
            self.session.flush()
        else:
            return None

        logger.info(
            "idempotency_failed",
            extra={"operation": operation, "error_code": error_code},
        )
        return record
