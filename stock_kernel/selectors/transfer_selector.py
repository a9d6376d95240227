"""
Module: stock_kernel.selectors.transfer_selector
Responsibility: Read-only transfer queries returning TransferView read models.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain.dtos import LocationNameResolver, TransferView
from stock_kernel.domain.values import TransferStatus
from stock_kernel.models.transfer import Transfer
from stock_kernel.selectors.base import BaseSelector


class TransferSelector(BaseSelector[Transfer]):
    """Transfer listings for dashboards and receiving screens."""

    def __init__(
        self,
        session: Session,
        scan_code_prefix: str = "P",
        resolve_location_name: LocationNameResolver | None = None,
    ):
        super().__init__(session)
        self._scan_code_prefix = scan_code_prefix
        self._resolve_location_name = resolve_location_name

    def _view(self, transfer: Transfer) -> TransferView:
        return TransferView.from_model(
            transfer,
            scan_code_prefix=self._scan_code_prefix,
            resolve_location_name=self._resolve_location_name,
        )

    def get(self, transfer_id: UUID) -> TransferView | None:
        transfer = self.session.get(Transfer, transfer_id)
        return self._view(transfer) if transfer is not None else None

    def get_by_number(self, transfer_number: str) -> TransferView | None:
        transfer = self.session.execute(
            select(Transfer).where(Transfer.transfer_number == transfer_number)
        ).scalar_one_or_none()
        return self._view(transfer) if transfer is not None else None

    def list_transfers(
        self,
        store_id: UUID,
        status: TransferStatus | None = None,
        location_id: UUID | None = None,
        limit: int = 100,
    ) -> list[TransferView]:
        """
        Most recent transfers first.

        ``location_id`` matches either end of the transfer.
        """
        stmt = select(Transfer).where(Transfer.store_id == store_id)
        if status is not None:
            stmt = stmt.where(Transfer.status == TransferStatus(status).value)
        if location_id is not None:
            stmt = stmt.where(
                (Transfer.source_location_id == location_id)
                | (Transfer.destination_location_id == location_id)
            )
        stmt = stmt.order_by(Transfer.created_at.desc(), Transfer.transfer_number.desc()).limit(limit)
        return [self._view(transfer) for transfer in self.session.scalars(stmt)]

    def incoming(self, store_id: UUID, destination_location_id: UUID) -> list[TransferView]:
        """In-transit transfers waiting to be received at a location."""
        stmt = (
            select(Transfer)
            .where(
                Transfer.store_id == store_id,
                Transfer.destination_location_id == destination_location_id,
                Transfer.status == TransferStatus.IN_TRANSIT.value,
            )
            .order_by(Transfer.shipped_at, Transfer.transfer_number)
        )
        return [self._view(transfer) for transfer in self.session.scalars(stmt)]
