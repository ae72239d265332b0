"""Vote-weight reconciliation engine.

This module implements the three passes over the vote-weight table:
- Merging Event Replay results into every row without touching `weight`.
- Checking stored `weight` against a fresh replay and re-reading chain state
  only for the addresses that disagree beyond the tolerance.
- A full Chain Read refresh of every known delegate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.storage.repos import (
    DelegateRepository,
    EventStore,
    VoteWeightDTO,
    VoteWeightRepository,
)
from delegate_vote_tracker.weights.precision import ZERO_WEIGHT
from delegate_vote_tracker.weights.replay import replay_weights

if TYPE_CHECKING:
    from delegate_vote_tracker.storage.database import DatabaseManager
    from delegate_vote_tracker.weights.onchain import ChainReadCalculator

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")


@dataclass
class MergeReport:
    """Outcome of merging Event Replay results into the weight table."""

    updated_existing: int = 0
    added_from_events: int = 0
    replayed_addresses: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "updatedExisting": self.updated_existing,
            "addedFromEvents": self.added_from_events,
            "replayedAddresses": self.replayed_addresses,
        }


@dataclass
class CorrectedWeight:
    """A mismatched row after its targeted Chain Read."""

    address: str
    previous_weight: Decimal
    weight: Decimal
    event_calc_weight: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "address": self.address,
            "previousWeight": f"{self.previous_weight:.2f}",
            "weight": f"{self.weight:.2f}",
            "eventCalcWeight": f"{self.event_calc_weight:.2f}",
        }


@dataclass
class MismatchReport:
    """Outcome of one mismatch check."""

    total_checked: int = 0
    mismatches_found: int = 0
    updated_addresses: list[CorrectedWeight] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalChecked": self.total_checked,
            "mismatchesFound": self.mismatches_found,
            "updatedAddresses": [u.to_dict() for u in self.updated_addresses],
        }


class VoteWeightReconciler:
    """Keeps the weight table consistent between Event Replay and Chain Read."""

    def __init__(
        self,
        db: DatabaseManager,
        chain_reader: ChainReadCalculator,
        *,
        decimals: int = 18,
        tolerance: Decimal = DEFAULT_TOLERANCE,
    ) -> None:
        self._db = db
        self._chain_reader = chain_reader
        self._decimals = decimals
        self._tolerance = tolerance

    async def merge_event_weights(self) -> MergeReport:
        """Write `eventCalcWeight` and delegator stats into every row.

        Existing rows keep their `weight`; rows with no events get zeroed
        replay fields; addresses seen only in events get a new row with
        `weight` 0.00.
        """
        report = MergeReport()
        async with self._db.get_async_session() as session:
            partitions = await EventStore(session).get_events(include_incomplete=True)
            replayed = replay_weights(partitions.complete, partitions.incomplete, decimals=self._decimals)
            weights = VoteWeightRepository(session)
            existing = {w.address.lower(): w for w in await weights.list_all()}

            rows: list[VoteWeightDTO] = []
            for address, current in existing.items():
                replay = replayed.get(address)
                rows.append(
                    VoteWeightDTO(
                        address=address,
                        weight=current.weight,
                        event_calc_weight=replay.weight if replay else ZERO_WEIGHT,
                        unique_delegators=replay.unique_delegators if replay else 0,
                        delegator_percent=replay.delegator_percent if replay else ZERO_WEIGHT,
                    )
                )
            report.updated_existing = len(rows)

            for address, replay in replayed.items():
                if address in existing:
                    continue
                rows.append(
                    VoteWeightDTO(
                        address=address,
                        weight=ZERO_WEIGHT,
                        event_calc_weight=replay.weight,
                        unique_delegators=replay.unique_delegators,
                        delegator_percent=replay.delegator_percent,
                    )
                )
                report.added_from_events += 1

            report.replayed_addresses = len(replayed)
            await weights.upsert_many(rows)

        logger.info(
            "Merged event weights: %d existing rows updated, %d added from events",
            report.updated_existing,
            report.added_from_events,
        )
        return report

    async def check_mismatches(self) -> MismatchReport:
        """Re-read chain state for rows whose `weight` disagrees with replay.

        Only mismatched rows are written; every other row is left verbatim.
        """
        report = MismatchReport()
        async with self._db.get_async_session() as session:
            partitions = await EventStore(session).get_events(include_incomplete=True)
            stored = await VoteWeightRepository(session).list_all()
        replayed = replay_weights(partitions.complete, partitions.incomplete, decimals=self._decimals)

        report.total_checked = len(stored)
        mismatched: list[tuple[VoteWeightDTO, Decimal]] = []
        for row in stored:
            replay = replayed.get(row.address.lower())
            replay_weight = replay.weight if replay else ZERO_WEIGHT
            if abs(row.weight - replay_weight) > self._tolerance:
                mismatched.append((row, replay_weight))
        report.mismatches_found = len(mismatched)

        if not mismatched:
            logger.info("No weight mismatches among %d rows", report.total_checked)
            return report

        logger.info("Found %d weight mismatches; re-reading on-chain votes", len(mismatched))
        fresh = await self._chain_reader.read_weights([row.address for row, _ in mismatched])

        corrected: list[VoteWeightDTO] = []
        for row, replay_weight in mismatched:
            weight = fresh.get(row.address.lower(), ZERO_WEIGHT)
            corrected.append(
                VoteWeightDTO(
                    address=row.address,
                    weight=weight,
                    event_calc_weight=replay_weight,
                    unique_delegators=row.unique_delegators,
                    delegator_percent=row.delegator_percent,
                )
            )
            report.updated_addresses.append(
                CorrectedWeight(
                    address=row.address,
                    previous_weight=row.weight,
                    weight=weight,
                    event_calc_weight=replay_weight,
                )
            )

        async with self._db.get_async_session() as session:
            await VoteWeightRepository(session).upsert_many(corrected)

        logger.info("Corrected %d mismatched weights", len(corrected))
        return report

    async def refresh_all_from_chain(self) -> list[VoteWeightDTO]:
        """Chain-read every known delegate and replace the weight table.

        Replay fields are reset; the next merge repopulates them.
        """
        async with self._db.get_async_session() as session:
            addresses = sorted(await DelegateRepository(session).addresses())

        logger.info("Fetching on-chain weights for %d delegates", len(addresses))
        fresh = await self._chain_reader.read_weights(addresses)
        rows = [VoteWeightDTO(address=a, weight=fresh.get(a, ZERO_WEIGHT)) for a in addresses]

        async with self._db.get_async_session() as session:
            await VoteWeightRepository(session).replace_all(rows)

        logger.info("Stored %d on-chain weights", len(rows))
        return rows
