"""Tests for vote-weight reconciliation."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from delegate_vote_tracker.storage.database import DatabaseManager
from delegate_vote_tracker.storage.repos import (
    DelegateDTO,
    DelegateRepository,
    EventStore,
    VoteWeightDTO,
    VoteWeightRepository,
)
from delegate_vote_tracker.weights.reconcile import VoteWeightReconciler
from tests.factories import (
    DELEGATE_A,
    DELEGATE_B,
    DELEGATE_C,
    DELEGATOR_1,
    DELEGATOR_2,
    complete_event,
    incomplete_event,
)


def _chain_reader(weights: dict[str, Decimal]) -> MagicMock:
    reader = MagicMock()
    reader.read_weights = AsyncMock(return_value=weights)
    return reader


async def _seed_events(db: DatabaseManager) -> None:
    async with db.get_async_session() as session:
        await EventStore(session).store_events(
            [
                complete_event(1, DELEGATE_A, "100", delegator=DELEGATOR_1),
                complete_event(3, DELEGATE_B, "50", delegator=DELEGATOR_2),
            ],
            [incomplete_event(2, DELEGATE_A, "2.5")],
        )


async def _weights(db: DatabaseManager) -> dict[str, VoteWeightDTO]:
    async with db.get_async_session() as session:
        return {w.address: w for w in await VoteWeightRepository(session).list_all()}


class TestMergeEventWeights:
    """Tests for merging Event Replay results."""

    @pytest.mark.asyncio
    async def test_merge_keeps_weight_and_adds_event_addresses(self, db: DatabaseManager) -> None:
        await _seed_events(db)
        async with db.get_async_session() as session:
            await VoteWeightRepository(session).upsert_many(
                [
                    VoteWeightDTO(address=DELEGATE_A, weight=Decimal("105.00")),
                    VoteWeightDTO(address=DELEGATE_C, weight=Decimal("9.00"), event_calc_weight=Decimal("4.00")),
                ]
            )
        reconciler = VoteWeightReconciler(db, _chain_reader({}))

        report = await reconciler.merge_event_weights()

        assert report.updated_existing == 2
        assert report.added_from_events == 1
        assert report.replayed_addresses == 2

        rows = await _weights(db)
        assert rows[DELEGATE_A].weight == Decimal("105.00")
        assert rows[DELEGATE_A].event_calc_weight == Decimal("102.50")
        assert rows[DELEGATE_A].unique_delegators == 1
        assert rows[DELEGATE_A].delegator_percent == Decimal("50.00")
        # Seen only in events: new row with no chain weight yet.
        assert rows[DELEGATE_B].weight == Decimal("0.00")
        assert rows[DELEGATE_B].event_calc_weight == Decimal("50.00")
        # No events at all: replay fields zeroed, weight untouched.
        assert rows[DELEGATE_C].weight == Decimal("9.00")
        assert rows[DELEGATE_C].event_calc_weight == Decimal("0.00")
        assert rows[DELEGATE_C].unique_delegators == 0

    @pytest.mark.asyncio
    async def test_merge_never_reads_chain(self, db: DatabaseManager) -> None:
        await _seed_events(db)
        reader = _chain_reader({})

        await VoteWeightReconciler(db, reader).merge_event_weights()

        reader.read_weights.assert_not_awaited()


class TestCheckMismatches:
    """Tests for targeted Chain Read correction."""

    @pytest.mark.asyncio
    async def test_corrects_only_mismatched_rows(self, db: DatabaseManager) -> None:
        await _seed_events(db)
        async with db.get_async_session() as session:
            await VoteWeightRepository(session).upsert_many(
                [
                    VoteWeightDTO(
                        address=DELEGATE_A,
                        weight=Decimal("105.00"),
                        event_calc_weight=Decimal("102.50"),
                        unique_delegators=1,
                        delegator_percent=Decimal("50.00"),
                    ),
                    VoteWeightDTO(
                        address=DELEGATE_B,
                        weight=Decimal("50.00"),
                        event_calc_weight=Decimal("50.00"),
                        unique_delegators=1,
                        delegator_percent=Decimal("50.00"),
                    ),
                ]
            )
        before = await _weights(db)
        reader = _chain_reader({DELEGATE_A: Decimal("102.50")})

        report = await VoteWeightReconciler(db, reader).check_mismatches()

        reader.read_weights.assert_awaited_once_with([DELEGATE_A])
        assert report.total_checked == 2
        assert report.mismatches_found == 1
        assert [u.address for u in report.updated_addresses] == [DELEGATE_A]
        assert report.updated_addresses[0].previous_weight == Decimal("105.00")

        after = await _weights(db)
        assert after[DELEGATE_A].weight == Decimal("102.50")
        assert after[DELEGATE_A].event_calc_weight == Decimal("102.50")
        assert after[DELEGATE_A].unique_delegators == 1
        assert after[DELEGATE_B] == before[DELEGATE_B]
        assert report.to_dict()["updatedAddresses"][0]["weight"] == "102.50"

    @pytest.mark.asyncio
    async def test_difference_within_tolerance_is_a_match(self, db: DatabaseManager) -> None:
        await _seed_events(db)
        async with db.get_async_session() as session:
            await VoteWeightRepository(session).upsert_many(
                [VoteWeightDTO(address=DELEGATE_A, weight=Decimal("102.51"))]
            )
        reader = _chain_reader({})

        report = await VoteWeightReconciler(db, reader).check_mismatches()

        assert report.mismatches_found == 0
        reader.read_weights.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_row_without_events_compares_to_zero(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await VoteWeightRepository(session).upsert_many(
                [VoteWeightDTO(address=DELEGATE_C, weight=Decimal("3.00"))]
            )
        reader = _chain_reader({})

        report = await VoteWeightReconciler(db, reader).check_mismatches()

        assert report.mismatches_found == 1
        # A failed or missing read stores 0.00.
        assert (await _weights(db))[DELEGATE_C].weight == Decimal("0.00")


class TestRefreshAllFromChain:
    """Tests for the full Chain Read refresh."""

    @pytest.mark.asyncio
    async def test_replaces_table_with_chain_weights(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await DelegateRepository(session).add_many(
                [DelegateDTO(address=DELEGATE_A), DelegateDTO(address=DELEGATE_B)]
            )
            await VoteWeightRepository(session).upsert_many(
                [VoteWeightDTO(address=DELEGATE_C, weight=Decimal("1.00"), event_calc_weight=Decimal("1.00"))]
            )
        reader = _chain_reader({DELEGATE_A: Decimal("10.00")})

        rows = await VoteWeightReconciler(db, reader).refresh_all_from_chain()

        reader.read_weights.assert_awaited_once_with([DELEGATE_A, DELEGATE_B])
        assert {r.address: r.weight for r in rows} == {DELEGATE_A: Decimal("10.00"), DELEGATE_B: Decimal("0.00")}
        stored = await _weights(db)
        assert set(stored) == {DELEGATE_A, DELEGATE_B}
        assert stored[DELEGATE_A].event_calc_weight is None
