"""
Module: stock_kernel.selectors.token_selector
Responsibility: Read-only physical token queries: token read models, scan
    history, and verification of the token/transfer binding invariant.
Architecture position: Kernel > Selectors.

Invariants checked:
    - status == in_transit iff current_transfer_id references a transfer that
      is not completed or cancelled.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain.dtos import LocationNameResolver, PhysicalTokenView
from stock_kernel.domain.transfer_lifecycle import is_terminal
from stock_kernel.domain.values import ScanOperation, TokenStatus
from stock_kernel.models.physical_token import PhysicalToken, TokenScan
from stock_kernel.models.transfer import Transfer
from stock_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class TokenScanView:
    """One entry of a token's scan history."""

    scan_id: UUID
    token_id: UUID
    operation: ScanOperation
    location_id: UUID | None
    notes: str | None
    scanned_by: UUID | None
    scanned_at: datetime


@dataclass(frozen=True)
class TokenBindingViolation:
    """A token whose status disagrees with its transfer binding."""

    token_id: UUID
    code: str
    status: TokenStatus
    current_transfer_id: UUID | None
    reason: str


class TokenSelector(BaseSelector[PhysicalToken]):
    """Token read models and binding audits."""

    def __init__(
        self,
        session: Session,
        resolve_location_name: LocationNameResolver | None = None,
    ):
        super().__init__(session)
        self._resolve_location_name = resolve_location_name

    def get(self, token_id: UUID) -> PhysicalTokenView | None:
        token = self.session.get(PhysicalToken, token_id)
        if token is None:
            return None
        return PhysicalTokenView.from_model(token, self._resolve_location_name)

    def at_location(
        self,
        store_id: UUID,
        location_id: UUID,
        status: TokenStatus | None = TokenStatus.AVAILABLE,
    ) -> list[PhysicalTokenView]:
        stmt = select(PhysicalToken).where(
            PhysicalToken.store_id == store_id,
            PhysicalToken.current_location_id == location_id,
            PhysicalToken.is_active.is_(True),
        )
        if status is not None:
            stmt = stmt.where(PhysicalToken.status == TokenStatus(status).value)
        stmt = stmt.order_by(PhysicalToken.code)
        return [
            PhysicalTokenView.from_model(token, self._resolve_location_name)
            for token in self.session.scalars(stmt)
        ]

    def scan_history(self, token_id: UUID) -> list[TokenScanView]:
        """Scans of one token, oldest first."""
        rows = self.session.scalars(
            select(TokenScan)
            .where(TokenScan.token_id == token_id)
            .order_by(TokenScan.scanned_at, TokenScan.id)
        )
        return [
            TokenScanView(
                scan_id=row.id,
                token_id=row.token_id,
                operation=ScanOperation(row.operation),
                location_id=row.location_id,
                notes=row.notes,
                scanned_by=row.scanned_by,
                scanned_at=row.scanned_at,
            )
            for row in rows
        ]

    def verify_bindings(self, store_id: UUID | None = None) -> list[TokenBindingViolation]:
        """Tokens whose in_transit status and transfer binding disagree."""
        stmt = (
            select(PhysicalToken, Transfer)
            .outerjoin(Transfer, PhysicalToken.current_transfer_id == Transfer.id)
            .where(
                (PhysicalToken.status == TokenStatus.IN_TRANSIT.value)
                | (PhysicalToken.current_transfer_id.is_not(None))
            )
        )
        if store_id is not None:
            stmt = stmt.where(PhysicalToken.store_id == store_id)

        violations = []
        for token, transfer in self.session.execute(stmt):
            reason = None
            if token.status != TokenStatus.IN_TRANSIT.value:
                reason = "bound to a transfer but not in transit"
            elif token.current_transfer_id is None:
                reason = "in transit without a transfer"
            elif transfer is None:
                reason = "bound to a missing transfer"
            elif is_terminal(transfer.status):
                reason = f"bound to a {transfer.status} transfer"
            if reason is not None:
                violations.append(
                    TokenBindingViolation(
                        token_id=token.id,
                        code=token.code,
                        status=TokenStatus(token.status),
                        current_transfer_id=token.current_transfer_id,
                        reason=reason,
                    )
                )
        return violations
