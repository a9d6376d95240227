"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing numbers for human-facing identifiers, chiefly
    transfer numbers (``TRF-000042``).  Uses a dedicated counter table with
    row-level locking (``SELECT ... FOR UPDATE``) so concurrent allocations
    never collide.

Architecture position:
    Kernel > Services.  Called by TransferStateMachine.

Invariants enforced:
    - The locked counter row is the sole source of the next value.  The
      aggregate-max-plus-one pattern is never used.
    - The increment is only visible after the caller's transaction commits;
      a rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via savepoint
      rollback and retry).
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from stock_kernel.db.base import Base
from stock_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "transfer_number")
    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        number = sequence_service.next_transfer_number("TRF", 6)
        # If the transaction rolls back, the number is not consumed
    """

    TRANSFER_NUMBER = "transfer_number"

    def __init__(self, session: Session):
        self._session = session

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create_counter(self, sequence_name: str) -> SequenceCounter:
        """
        Insert a counter at zero and lock it.

        Another transaction may insert the same name concurrently; the
        unique index makes the loser wait, after which it locks the
        winner's row instead.  The savepoint keeps the caller's other
        work intact.
        """
        savepoint = self._session.begin_nested()
        try:
            self._session.add(SequenceCounter(name=sequence_name, current_value=0))
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
        counter = self._lock_counter(sequence_name)
        if counter is None:
            raise RuntimeError(f"sequence counter {sequence_name!r} vanished after creation")
        return counter

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the named counter (creating it on first use), increment it and
        return the new value, always > 0.

        The row stays locked until the caller's transaction ends.
        """
        counter = self._lock_counter(sequence_name) or self._create_counter(sequence_name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_transfer_number(self, prefix: str, width: int) -> str:
        """Allocate the next transfer number, e.g. ``TRF-000042``."""
        value = self.next_value(self.TRANSFER_NUMBER)
        return f"{prefix}-{value:0{width}d}"

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def reset(self, sequence_name: str, value: int = 0) -> None:
        """
        Reset a sequence to a specific value.

        WARNING: tests and migration scripts only.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=value)
            self._session.add(counter)
        else:
            counter.current_value = value

        self._session.flush()
