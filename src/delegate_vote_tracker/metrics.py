"""Dashboard metrics snapshot.

The snapshot is recomputed in full from the delegate, vote-weight and event
tables and cached in Redis as one JSON document. Readers get it back with
its age and a staleness flag.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.codec import decode_json_payload, encode_json_payload, require_int
from delegate_vote_tracker.storage.repos import (
    DelegateDTO,
    DelegateRepository,
    EventStore,
    VoteWeightDTO,
    VoteWeightRepository,
)
from delegate_vote_tracker.weights.precision import ZERO_WEIGHT, format_weight, percent

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from delegate_vote_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

METRICS_KEY = "delegate-metrics"
DEFAULT_FRESHNESS_SECONDS = 3600
MAX_FUTURE_SKEW_SECONDS = 24 * 3600
DEFAULT_SIGNIFICANT_PERCENT = Decimal("1")


@dataclass
class Metrics:
    """Aggregate figures shown above the leaderboard."""

    total_voting_power: Decimal
    total_delegates: int
    total_delegators: int
    tally_registered_delegates: int
    tally_voting_power_percentage: Decimal
    delegates_with_voting_power: int
    delegates_with_significant_power: int
    active_delegates: int
    timestamp: int  # epoch milliseconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalVotingPower": f"{self.total_voting_power:.2f}",
            "totalDelegates": self.total_delegates,
            "totalDelegators": self.total_delegators,
            "tallyRegisteredDelegates": self.tally_registered_delegates,
            "tallyVotingPowerPercentage": f"{self.tally_voting_power_percentage:.2f}",
            "delegatesWithVotingPower": self.delegates_with_voting_power,
            "delegatesWithSignificantPower": self.delegates_with_significant_power,
            "activeDelegates": self.active_delegates,
            "timestamp": self.timestamp,
        }


@dataclass
class MetricsSnapshot:
    """A cached snapshot as seen by a reader."""

    metrics: Metrics
    age_seconds: float
    is_stale: bool

    def to_dict(self) -> dict[str, Any]:
        return {**self.metrics.to_dict(), "ageSeconds": round(self.age_seconds, 1), "isStale": self.is_stale}


def decode_metrics(raw: Any) -> Metrics | None:
    """Typed decode of the cached snapshot; None if absent or invalid."""
    data = decode_json_payload(raw, what="metrics")
    if data is None:
        return None
    try:
        return Metrics(
            total_voting_power=Decimal(str(data["totalVotingPower"])),
            total_delegates=require_int(data, "totalDelegates"),
            total_delegators=require_int(data, "totalDelegators"),
            tally_registered_delegates=int(data.get("tallyRegisteredDelegates", 0)),
            tally_voting_power_percentage=Decimal(str(data.get("tallyVotingPowerPercentage", "0.00"))),
            delegates_with_voting_power=require_int(data, "delegatesWithVotingPower"),
            delegates_with_significant_power=require_int(data, "delegatesWithSignificantPower"),
            active_delegates=int(data.get("activeDelegates", 0)),
            timestamp=require_int(data, "timestamp"),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        logger.warning("Invalid metrics payload: %s", e)
        return None


def compute_metrics(
    delegates: Sequence[DelegateDTO],
    weights: Sequence[VoteWeightDTO],
    *,
    total_delegators: int,
    significant_percent: Decimal = DEFAULT_SIGNIFICANT_PERCENT,
    timestamp_ms: int,
) -> Metrics:
    """Compute the snapshot from the current table contents."""
    registered = {d.address.lower() for d in delegates if d.tally_profile}
    total = sum((w.weight for w in weights), ZERO_WEIGHT)
    with_power = [w for w in weights if w.weight > 0]
    significant = [w for w in with_power if total > 0 and w.weight / total * 100 >= significant_percent]
    registered_power = sum((w.weight for w in weights if w.address.lower() in registered), ZERO_WEIGHT)

    return Metrics(
        total_voting_power=format_weight(total),
        total_delegates=len(delegates),
        total_delegators=total_delegators,
        tally_registered_delegates=len(registered),
        tally_voting_power_percentage=percent(registered_power, total),
        delegates_with_voting_power=len(with_power),
        delegates_with_significant_power=len(significant),
        active_delegates=sum(1 for d in delegates if d.is_seeking_delegation),
        timestamp=timestamp_ms,
    )


def is_stale(
    metrics: Metrics | None,
    *,
    now: float,
    freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
) -> bool:
    """Whether a snapshot should trigger an update.

    Missing snapshots, timestamps far in the future and snapshots older than
    the freshness window are all stale.
    """
    if metrics is None or metrics.timestamp <= 0:
        return True
    age = now - metrics.timestamp / 1000.0
    if age < -MAX_FUTURE_SKEW_SECONDS:
        return True
    return age > freshness_seconds


async def build_metrics(
    db: DatabaseManager,
    redis: Redis,
    *,
    significant_percent: Decimal = DEFAULT_SIGNIFICANT_PERCENT,
    clock: Callable[[], float] = time.time,
) -> Metrics:
    """Recompute the snapshot and overwrite the cached one.

    The previous snapshot stays readable until the new one is stored; a
    failed rebuild leaves it in place.
    """
    async with db.get_async_session() as session:
        delegates = await DelegateRepository(session).list_all()
        weights = await VoteWeightRepository(session).list_all()
        total_delegators = await EventStore(session).count_distinct_delegators()

    metrics = compute_metrics(
        delegates,
        weights,
        total_delegators=total_delegators,
        significant_percent=significant_percent,
        timestamp_ms=int(clock() * 1000),
    )
    await redis.set(METRICS_KEY, encode_json_payload(metrics.to_dict()))
    logger.info(
        "Metrics rebuilt: total power %s, %d delegates, %d with power, %d significant",
        metrics.to_dict()["totalVotingPower"],
        metrics.total_delegates,
        metrics.delegates_with_voting_power,
        metrics.delegates_with_significant_power,
    )
    return metrics


async def read_metrics(
    redis: Redis,
    *,
    freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS,
    clock: Callable[[], float] = time.time,
) -> MetricsSnapshot | None:
    """Last computed snapshot with its age, or None if none is cached."""
    metrics = decode_metrics(await redis.get(METRICS_KEY))
    if metrics is None:
        return None
    now = clock()
    return MetricsSnapshot(
        metrics=metrics,
        age_seconds=max(0.0, now - metrics.timestamp / 1000.0),
        is_stale=is_stale(metrics, now=now, freshness_seconds=freshness_seconds),
    )


async def clear_metrics(redis: Redis) -> None:
    await redis.delete(METRICS_KEY)
    logger.info("Cleared metrics data")
