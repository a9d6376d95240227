"""
TokenBinding -- lifecycle of physical (scannable) tokens.

Responsibility:
    Registers tokens, resolves scanned codes to tokens, binds tokens to
    transfers and releases them, and keeps the append-only scan log.

Architecture position:
    Kernel > Services.  Flush-only building block used by the
    TransferStateMachine; callers may also use it directly for sale, split
    and consumption scans.

Invariants enforced:
    - ``status == in_transit`` iff ``current_transfer_id`` is set.  ``bind``
      sets both, ``release_to`` clears both.
    - A token bound to one transfer cannot be bound to another.
    - Only an ``available`` token can be bound, sold, split or consumed.
    - Every state change and every explicit scan appends a TokenScan and
      bumps ``total_scans``.

Failure modes:
    - TokenNotFoundError: ``require_token`` found no active token.
    - TokenAlreadyBoundError: the token is already in another transfer.
    - TokenUnavailableError: the token is sold, split, consumed or inactive.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.policy import LedgerPolicy
from stock_kernel.domain.values import ScanOperation, TokenStatus
from stock_kernel.exceptions import (
    TokenAlreadyBoundError,
    TokenNotFoundError,
    TokenUnavailableError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.physical_token import PhysicalToken, TokenScan
from stock_kernel.services.base import BaseService

logger = get_logger("services.token_binding")


def normalize_code(code: str) -> str:
    """Scanner input with surrounding whitespace removed."""
    return code.strip()


class TokenBinding(BaseService[PhysicalToken]):
    """Physical token registration, lookup, binding and scan history."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: LedgerPolicy | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._policy = policy or LedgerPolicy()

    # =========================================================================
    # Registration and lookup
    # =========================================================================

    def register_token(
        self,
        code: str,
        store_id: UUID,
        location_id: UUID | None,
        product_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> PhysicalToken:
        code = normalize_code(code)
        if not code:
            raise ValueError("token code must not be empty")
        now = self._clock.now()
        token = PhysicalToken(
            code=code,
            store_id=store_id,
            product_id=product_id,
            current_location_id=location_id,
            status=TokenStatus.AVAILABLE.value,
            total_scans=0,
            is_active=True,
            created_by_id=actor_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(token)
        self.session.flush()
        logger.info(
            "token_registered",
            extra={"token_id": str(token.id), "code": code},
        )
        return token

    def find_token(self, code: str, store_id: UUID) -> PhysicalToken | None:
        """
        Resolve a scanned code: exact match first, then (when enabled) a
        case-insensitive match on the trimmed code.
        """
        normalized = normalize_code(code)
        if not normalized:
            return None

        token = self.session.execute(
            select(PhysicalToken).where(
                PhysicalToken.code == normalized,
                PhysicalToken.store_id == store_id,
                PhysicalToken.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if token is not None or not self._policy.token_match_fallback:
            return token

        return self.session.execute(
            select(PhysicalToken)
            .where(
                func.lower(PhysicalToken.code) == normalized.lower(),
                PhysicalToken.store_id == store_id,
                PhysicalToken.is_active.is_(True),
            )
            .order_by(PhysicalToken.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def require_token(self, code: str, store_id: UUID) -> PhysicalToken:
        token = self.find_token(code, store_id)
        if token is None:
            raise TokenNotFoundError(code)
        return token

    def get_token(self, token_id: UUID) -> PhysicalToken | None:
        return self.session.get(PhysicalToken, token_id)

    def lock_token(self, token_id: UUID) -> PhysicalToken:
        return self.session.execute(
            select(PhysicalToken)
            .where(PhysicalToken.id == token_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    # =========================================================================
    # Binding
    # =========================================================================

    def bind(
        self,
        token: PhysicalToken,
        transfer_id: UUID,
        actor_id: UUID | None = None,
    ) -> PhysicalToken:
        """Attach an available token to an in-transit transfer."""
        token = self.lock_token(token.id)
        if token.current_transfer_id is not None:
            raise TokenAlreadyBoundError(token.code, str(token.current_transfer_id))
        self._require_available(token)

        token.status = TokenStatus.IN_TRANSIT.value
        token.current_transfer_id = transfer_id
        token.updated_by_id = actor_id
        self.record_scan(
            token, ScanOperation.TRANSFER_OUT, token.current_location_id, actor_id=actor_id,
        )
        logger.info(
            "token_bound",
            extra={"token_id": str(token.id), "transfer_id": str(transfer_id)},
        )
        return token

    def release_to(
        self,
        token: PhysicalToken,
        location_id: UUID,
        operation: ScanOperation = ScanOperation.RECEIVE,
        actor_id: UUID | None = None,
    ) -> PhysicalToken:
        """Detach a token from its transfer and make it available at ``location_id``."""
        token = self.lock_token(token.id)
        transfer_id = token.current_transfer_id

        token.status = TokenStatus.AVAILABLE.value
        token.current_transfer_id = None
        token.current_location_id = location_id
        token.updated_by_id = actor_id
        self.record_scan(token, operation, location_id, actor_id=actor_id)
        logger.info(
            "token_released",
            extra={
                "token_id": str(token.id),
                "transfer_id": str(transfer_id) if transfer_id else None,
                "location_id": str(location_id),
                "operation": ScanOperation(operation).value,
            },
        )
        return token

    # =========================================================================
    # Scans and terminal states
    # =========================================================================

    def record_scan(
        self,
        token: PhysicalToken,
        operation: ScanOperation,
        location_id: UUID | None = None,
        notes: str | None = None,
        actor_id: UUID | None = None,
    ) -> TokenScan:
        """Append a scan; a receive scan also moves the token."""
        now = self._clock.now()
        operation = ScanOperation(operation)

        token.total_scans += 1
        token.last_scanned_at = now
        if operation == ScanOperation.RECEIVE and location_id is not None:
            token.current_location_id = location_id

        scan = TokenScan(
            token_id=token.id,
            store_id=token.store_id,
            operation=operation.value,
            location_id=location_id,
            notes=notes,
            scanned_by=actor_id,
            scanned_at=now,
        )
        self.session.add(scan)
        self.session.flush()
        return scan

    def mark_split(
        self,
        token: PhysicalToken,
        child_count: int,
        actor_id: UUID | None = None,
    ) -> PhysicalToken:
        if child_count < 1:
            raise ValueError("child_count must be at least 1")
        token = self._finish(token, TokenStatus.SPLIT, ScanOperation.SPLIT, actor_id)
        token.child_count = child_count
        self.session.flush()
        return token

    def mark_sold(self, token: PhysicalToken, actor_id: UUID | None = None) -> PhysicalToken:
        return self._finish(token, TokenStatus.SOLD, ScanOperation.SALE, actor_id)

    def mark_consumed(self, token: PhysicalToken, actor_id: UUID | None = None) -> PhysicalToken:
        return self._finish(token, TokenStatus.CONSUMED, None, actor_id)

    def _finish(
        self,
        token: PhysicalToken,
        status: TokenStatus,
        operation: ScanOperation | None,
        actor_id: UUID | None,
    ) -> PhysicalToken:
        token = self.lock_token(token.id)
        self._require_available(token)
        token.status = status.value
        token.updated_by_id = actor_id
        if operation is not None:
            self.record_scan(token, operation, token.current_location_id, actor_id=actor_id)
        else:
            self.session.flush()
        logger.info(
            "token_status_changed",
            extra={"token_id": str(token.id), "status": status.value},
        )
        return token

    def _require_available(self, token: PhysicalToken) -> None:
        if not token.is_active:
            raise TokenUnavailableError(token.code, "inactive")
        if token.token_status != TokenStatus.AVAILABLE:
            raise TokenUnavailableError(token.code, token.status)
