"""Read-side views: leaderboard and inspection reports."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.storage.repos import (
    DelegateRepository,
    EventStore,
    VoteWeightRepository,
)
from delegate_vote_tracker.weights.precision import ZERO_WEIGHT, format_weight, percent

if TYPE_CHECKING:
    from delegate_vote_tracker.registry.merge import DelegateRegistry
    from delegate_vote_tracker.storage.database import DatabaseManager


@dataclass
class LeaderboardEntry:
    """One ranked delegate."""

    rank: int
    address: str
    name: str | None
    ens: str | None
    tally_profile: bool
    is_seeking_delegation: bool
    weight: Decimal
    voting_power_percent: Decimal
    unique_delegators: int
    delegator_percent: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "address": self.address,
            "name": self.name,
            "ens": self.ens,
            "tallyProfile": self.tally_profile,
            "isSeekingDelegation": self.is_seeking_delegation,
            "weight": f"{self.weight:.2f}",
            "votingPowerPercent": f"{self.voting_power_percent:.2f}",
            "uniqueDelegators": self.unique_delegators,
            "delegatorPercent": f"{self.delegator_percent:.2f}",
        }


async def build_leaderboard(
    db: DatabaseManager,
    *,
    limit: int | None = None,
    registry: DelegateRegistry | None = None,
) -> list[LeaderboardEntry]:
    """Delegates joined with their weights, heaviest first.

    With a `registry`, the delegate list is served from its cache.
    """
    cached = await registry.list_delegates() if registry is not None else None
    async with db.get_async_session() as session:
        delegates = cached if cached is not None else await DelegateRepository(session).list_all()
        weights = {w.address.lower(): w for w in await VoteWeightRepository(session).list_all()}

    total = sum((w.weight for w in weights.values()), ZERO_WEIGHT)
    rows: list[LeaderboardEntry] = []
    for delegate in delegates:
        weight = weights.get(delegate.address.lower())
        value = weight.weight if weight else ZERO_WEIGHT
        rows.append(
            LeaderboardEntry(
                rank=0,
                address=delegate.address,
                name=delegate.name,
                ens=delegate.ens,
                tally_profile=delegate.tally_profile,
                is_seeking_delegation=delegate.is_seeking_delegation,
                weight=value,
                voting_power_percent=percent(value, total),
                unique_delegators=(weight.unique_delegators or 0) if weight else 0,
                delegator_percent=(weight.delegator_percent or ZERO_WEIGHT) if weight else ZERO_WEIGHT,
            )
        )

    rows.sort(key=lambda r: (-r.weight, r.address))
    for rank, row in enumerate(rows, start=1):
        row.rank = rank
    return rows[:limit] if limit is not None else rows


async def inspect_vote_weights(db: DatabaseManager) -> dict[str, Any]:
    """Compare stored `weight` and `eventCalcWeight` row by row.

    Rows without an event weight are skipped. Mismatches are sorted by the
    absolute difference, largest first.
    """
    async with db.get_async_session() as session:
        weights = await VoteWeightRepository(session).list_all()

    matching = 0
    mismatches: list[dict[str, Any]] = []
    for row in weights:
        if row.event_calc_weight is None:
            continue
        if row.weight == row.event_calc_weight:
            matching += 1
            continue
        mismatches.append(
            {
                "address": row.address,
                "weight": f"{row.weight:.2f}",
                "eventCalcWeight": f"{row.event_calc_weight:.2f}",
                "difference": format_weight(row.weight - row.event_calc_weight),
            }
        )

    mismatches.sort(key=lambda m: abs(m["difference"]), reverse=True)
    for m in mismatches:
        m["difference"] = f"{m['difference']:.2f}"
    return {
        "totalAddresses": len(weights),
        "matchingWeights": matching,
        "mismatchedWeights": len(mismatches),
        "mismatches": mismatches,
    }


async def inspect_address(db: DatabaseManager, address: str) -> dict[str, Any]:
    """Everything known about one address: profile, weights and events."""
    normalized = address.lower()
    async with db.get_async_session() as session:
        delegate = await DelegateRepository(session).get(normalized)
        weight = await VoteWeightRepository(session).get(normalized)
        events = await EventStore(session).events_for_address(normalized)

    return {
        "address": address,
        "delegateInfo": (
            {"name": delegate.name, "ens": delegate.ens, "tallyProfile": delegate.tally_profile}
            if delegate
            else None
        ),
        "voteWeights": (
            {
                "weight": f"{weight.weight:.2f}",
                "eventCalcWeight": (
                    f"{weight.event_calc_weight:.2f}" if weight.event_calc_weight is not None else None
                ),
            }
            if weight
            else None
        ),
        "delegationEvents": {
            "complete": [e.to_dict() for e in events.complete],
            "incomplete": [e.to_dict() for e in events.incomplete],
        },
    }
