"""Tests for delegation event models."""

from decimal import Decimal

from delegate_vote_tracker.chain.models import DelegationEvent, EventStats, event_key
from tests.factories import DELEGATE_A, complete_event, incomplete_event, tx


class TestDelegationEvent:
    """Tests for DelegationEvent."""

    def test_key_is_case_insensitive(self) -> None:
        upper = DelegationEvent(
            block_number=1,
            transaction_hash=tx(0xABC).upper().replace("0X", "0x"),
            to_delegate=DELEGATE_A.upper().replace("0X", "0x"),
            timestamp=0,
        )
        assert upper.key == event_key(tx(0xABC), DELEGATE_A)

    def test_completeness(self) -> None:
        assert complete_event(1, DELEGATE_A, "1").is_complete
        assert not incomplete_event(2, DELEGATE_A, "1").is_complete

    def test_to_dict_keeps_exact_amount(self) -> None:
        event = incomplete_event(3, DELEGATE_A, "-0.000000000000000001")

        data = event.to_dict()

        assert Decimal(data["amountDelegatedChanged"]) == Decimal("-0.000000000000000001")
        assert data["delegator"] is None
        assert data["toDelegate"] == DELEGATE_A


class TestEventStats:
    """Tests for EventStats."""

    def test_merge_accumulates_counters(self) -> None:
        total = EventStats(from_block=0, to_block=99, total_chunks=2)
        total.merge(EventStats(from_block=0, to_block=49, complete_sets=2, processed_chunks=1))
        total.merge(EventStats(from_block=50, to_block=99, incomplete_sets=1, failed_chunks=1))

        assert total.complete_sets == 2
        assert total.incomplete_sets == 1
        assert total.processed_chunks == 1
        assert total.failed_chunks == 1
        assert total.blocks_processed == 100
        assert total.to_dict()["totalChunks"] == 2

    def test_empty_range(self) -> None:
        assert EventStats.empty(10, 9).blocks_processed == 0
