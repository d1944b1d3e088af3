"""
Tests for SequenceService.

Per-day, per-kind counters issued by a single upsert statement, and the
document number format built on top of them.
"""

from datetime import date

import pytest

from deal_kernel.services.sequence_service import SequenceService, format_document_number

DAY = date(2026, 1, 31)


@pytest.fixture
def sequences(session):
    return SequenceService(session)


class TestAllocate:
    def test_first_allocation_of_the_day_is_one(self, sequences):
        assert sequences.allocate(SequenceService.PROPOSAL, DAY) == 1

    def test_allocations_are_consecutive(self, sequences):
        values = [sequences.allocate(SequenceService.PROPOSAL, DAY) for _ in range(5)]

        assert values == [1, 2, 3, 4, 5]
        assert sequences.current_value(SequenceService.PROPOSAL, DAY) == 5

    def test_each_day_starts_again(self, sequences):
        sequences.allocate(SequenceService.PROPOSAL, DAY)
        sequences.allocate(SequenceService.PROPOSAL, DAY)

        assert sequences.allocate(SequenceService.PROPOSAL, date(2026, 2, 1)) == 1

    def test_kinds_are_independent(self, sequences):
        sequences.allocate(SequenceService.PROPOSAL, DAY)

        assert sequences.allocate("inquiry", DAY) == 1

    def test_nothing_allocated(self, sequences):
        assert sequences.current_value(SequenceService.PROPOSAL, DAY) is None

    def test_rollback_returns_the_value(self, sequences, session):
        sequences.allocate(SequenceService.PROPOSAL, DAY)
        session.commit()
        sequences.allocate(SequenceService.PROPOSAL, DAY)
        session.rollback()

        assert sequences.allocate(SequenceService.PROPOSAL, DAY) == 2


class TestDocumentNumber:
    def test_next_document_number(self, sequences):
        assert sequences.next_document_number("proposal", "PROP", DAY) == "PROP-20260131-0001"
        assert sequences.next_document_number("proposal", "PROP", DAY) == "PROP-20260131-0002"

    def test_zero_padding(self):
        assert format_document_number("PROP", DAY, 7) == "PROP-20260131-0007"

    def test_wide_values_keep_every_digit(self):
        assert format_document_number("PROP", DAY, 12345) == "PROP-20260131-12345"
