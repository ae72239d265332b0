"""Event Replay weight calculator.

Voting power is the sum of signed `amountDelegatedChanged` deltas over every
stored event (complete or incomplete) targeting an address. Delegator counts
come from complete events only, since only they carry a delegator.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any

from delegate_vote_tracker.chain.models import DelegationEvent
from delegate_vote_tracker.weights.precision import (
    SUM_PRECISION,
    from_base_units,
    percent,
    to_base_units,
)


@dataclass(frozen=True)
class ReplayWeight:
    """Event Replay result for one address."""

    address: str
    weight: Decimal
    unique_delegators: int
    delegator_percent: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "weight": f"{self.weight:.2f}",
            "uniqueDelegators": self.unique_delegators,
            "delegatorPercent": f"{self.delegator_percent:.2f}",
        }


def _finalize(total: Decimal, decimals: int) -> Decimal:
    # Round once to base units, then format.
    return from_base_units(to_base_units(total, decimals), decimals)


def event_replay_weight(events: Iterable[DelegationEvent], address: str, *, decimals: int = 18) -> Decimal:
    """Replay the deltas targeting `address` (case-insensitive) into a two-decimal weight."""
    target = address.lower()
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        total = Decimal(0)
        for event in events:
            if event.to_delegate.lower() == target and event.amount_delegated_changed is not None:
                total += event.amount_delegated_changed
    return _finalize(total, decimals)


def replay_weights(
    complete: Iterable[DelegationEvent],
    incomplete: Iterable[DelegationEvent],
    *,
    decimals: int = 18,
) -> dict[str, ReplayWeight]:
    """Replay every address seen in either partition in a single pass.

    Returns:
        Mapping of lowercased delegate address to its replayed weight and
        delegator statistics.
    """
    totals: dict[str, Decimal] = {}
    delegators_by_delegate: dict[str, set[str]] = {}
    all_delegators: set[str] = set()

    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        for event in complete:
            delegate = event.to_delegate.lower()
            totals[delegate] = totals.get(delegate, Decimal(0)) + (event.amount_delegated_changed or Decimal(0))
            if event.delegator:
                delegator = event.delegator.lower()
                delegators_by_delegate.setdefault(delegate, set()).add(delegator)
                all_delegators.add(delegator)
        for event in incomplete:
            delegate = event.to_delegate.lower()
            totals[delegate] = totals.get(delegate, Decimal(0)) + (event.amount_delegated_changed or Decimal(0))

    total_delegators = len(all_delegators)
    results: dict[str, ReplayWeight] = {}
    for delegate, total in totals.items():
        count = len(delegators_by_delegate.get(delegate, ()))
        results[delegate] = ReplayWeight(
            address=delegate,
            weight=_finalize(total, decimals),
            unique_delegators=count,
            delegator_percent=percent(count, total_delegators),
        )
    return results
