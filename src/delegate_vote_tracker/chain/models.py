"""Data models for decoded delegation events."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


def event_key(transaction_hash: str, to_delegate: str) -> tuple[str, str]:
    """Identity of a delegation event: (tx hash, lowercased delegate)."""
    return (transaction_hash.lower(), to_delegate.lower())


@dataclass(frozen=True)
class DelegationEvent:
    """One observed on-chain delegation change.

    The delegate-changed leg carries ``delegator``/``from_delegate``; the
    votes-changed leg carries ``amount_delegated_changed``. An event holding
    both legs is complete.
    """

    block_number: int
    transaction_hash: str
    to_delegate: str
    timestamp: int
    delegator: str | None = None
    from_delegate: str | None = None
    amount_delegated_changed: Decimal | None = None

    @property
    def key(self) -> tuple[str, str]:
        return event_key(self.transaction_hash, self.to_delegate)

    @property
    def has_delegate_leg(self) -> bool:
        return self.delegator is not None

    @property
    def has_votes_leg(self) -> bool:
        return self.amount_delegated_changed is not None

    @property
    def is_complete(self) -> bool:
        return self.has_delegate_leg and self.has_votes_leg

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "delegator": self.delegator,
            "fromDelegate": self.from_delegate,
            "toDelegate": self.to_delegate,
            "amountDelegatedChanged": (
                str(self.amount_delegated_changed) if self.amount_delegated_changed is not None else None
            ),
            "timestamp": self.timestamp,
        }


@dataclass
class EventStats:
    """Counters for one fetched block range (or an aggregate of several)."""

    from_block: int
    to_block: int
    total_delegate_changed_events: int = 0
    total_votes_changed_events: int = 0
    complete_sets: int = 0
    incomplete_sets: int = 0
    delegate_only_sets: int = 0
    processed_chunks: int = 0
    total_chunks: int = 1
    failed_chunks: int = 0

    @property
    def blocks_processed(self) -> int:
        return max(0, self.to_block - self.from_block + 1)

    @classmethod
    def empty(cls, from_block: int, to_block: int) -> EventStats:
        """Zeroed stats for a range that produced nothing."""
        return cls(from_block=from_block, to_block=to_block)

    def merge(self, other: EventStats) -> None:
        """Fold a chunk's counters into this aggregate."""
        self.total_delegate_changed_events += other.total_delegate_changed_events
        self.total_votes_changed_events += other.total_votes_changed_events
        self.complete_sets += other.complete_sets
        self.incomplete_sets += other.incomplete_sets
        self.delegate_only_sets += other.delegate_only_sets
        self.processed_chunks += other.processed_chunks
        self.failed_chunks += other.failed_chunks

    def to_dict(self) -> dict[str, int]:
        return {
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "blocksProcessed": self.blocks_processed,
            "totalDelegateChangedEvents": self.total_delegate_changed_events,
            "totalVotesChangedEvents": self.total_votes_changed_events,
            "completeSets": self.complete_sets,
            "incompleteSets": self.incomplete_sets,
            "delegateOnlySets": self.delegate_only_sets,
            "processedChunks": self.processed_chunks,
            "totalChunks": self.total_chunks,
            "failedChunks": self.failed_chunks,
        }


@dataclass
class FetchResult:
    """Decoded output of a block range: complete and incomplete partitions."""

    events: list[DelegationEvent] = field(default_factory=list)
    incomplete_events: list[DelegationEvent] = field(default_factory=list)
    stats: EventStats = field(default_factory=lambda: EventStats(from_block=0, to_block=-1))

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.incomplete_events
