"""Tests for SequenceService transfer numbering."""

from stock_kernel.services.sequence_service import SequenceService


def test_first_value_is_one(sequence_service):
    assert sequence_service.current_value("widgets") is None
    assert sequence_service.next_value("widgets") == 1
    assert sequence_service.current_value("widgets") == 1


def test_strictly_increasing(sequence_service):
    values = [sequence_service.next_value("widgets") for _ in range(5)]
    assert values == [1, 2, 3, 4, 5]


def test_sequences_independent(sequence_service):
    sequence_service.next_value("a")
    sequence_service.next_value("a")
    assert sequence_service.next_value("b") == 1


def test_transfer_number_format(sequence_service):
    assert sequence_service.next_transfer_number("TRF", 6) == "TRF-000001"
    assert sequence_service.next_transfer_number("MV", 3) == "MV-002"


def test_reset(sequence_service):
    sequence_service.next_value(SequenceService.TRANSFER_NUMBER)
    sequence_service.reset(SequenceService.TRANSFER_NUMBER, 41)
    assert sequence_service.next_transfer_number("TRF", 6) == "TRF-000042"


def test_rollback_returns_value(sequence_service, session):
    session.commit()
    sequence_service.next_value("widgets")
    session.rollback()
    assert sequence_service.next_value("widgets") == 1
