"""Delegation event fetching and chunked ingestion.

This module implements:
- Decoding of the token's `DelegateChanged` / `DelegateVotesChanged` logs into
  `DelegationEvent`s keyed by (tx hash, delegate), folding both legs in any order.
- A log fetcher for one bounded block range that degrades to an empty result
  when the provider keeps failing.
- A chunked sync that resumes from the Event Store watermark and stores each
  chunk as soon as it is decoded.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.chain.client import BlockRangeTooLargeError, ChainClientError
from delegate_vote_tracker.chain.models import DelegationEvent, EventStats, FetchResult, event_key
from delegate_vote_tracker.storage.repos import EventStore

if TYPE_CHECKING:
    from delegate_vote_tracker.chain.client import EthereumClient
    from delegate_vote_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# DelegateChanged(address indexed delegator, address indexed fromDelegate, address indexed toDelegate)
DELEGATE_CHANGED_TOPIC = "0x3134e8a2e6d97e929a7e54011ea5485d7d196dd5f0ba4d4ef95803e8e3fc257f"
# DelegateVotesChanged(address indexed delegate, uint256 previousBalance, uint256 newBalance)
DELEGATE_VOTES_CHANGED_TOPIC = "0xdec2bacdd2f05b59de34da9b523dff8be42e5e38e818c82fdb0bae774387a724"

TRACKED_TOPICS = [DELEGATE_CHANGED_TOPIC, DELEGATE_VOTES_CHANGED_TOPIC]

# Resume gaps wider than this many chunks are reported; the min-of-partitions
# watermark can hold the resume point far behind the head.
REPROCESSING_WARNING_CHUNKS = 100


class MalformedLogError(ChainClientError):
    """Raised when a provider log cannot be decoded."""


def _to_hex(value: Any) -> str:
    # web3 hands back HexBytes; mocked or raw JSON-RPC logs carry strings.
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def _topic_to_address(topic: Any) -> str:
    hexed = _to_hex(topic)[2:]
    if len(hexed) != 64:
        raise MalformedLogError(f"Topic is not a 32-byte word: {topic!r}")
    return ("0x" + hexed[-40:]).lower()


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def decode_votes_delta(data: Any) -> int:
    """Decode `newBalance - previousBalance` from a votes-changed log body."""
    body = _to_hex(data)[2:]
    if len(body) < 128:
        raise MalformedLogError(f"Votes-changed data too short ({len(body) // 2} bytes)")
    previous_balance = int(body[0:64], 16)
    new_balance = int(body[64:128], 16)
    return new_balance - previous_balance


def scale_amount(raw_delta: int, decimals: int) -> Decimal:
    """Scale a signed base-unit delta down to token units (exact)."""
    return Decimal(raw_delta).scaleb(-decimals)


@dataclass
class _PartialEvent:
    block_number: int
    transaction_hash: str
    to_delegate: str
    delegator: str | None = None
    from_delegate: str | None = None
    amount_delegated_changed: Decimal | None = None
    has_delegate: bool = False
    has_votes: bool = False


def fold_logs(
    logs: list[dict[str, Any]],
    *,
    decimals: int,
    stats: EventStats | None = None,
) -> dict[tuple[str, str], _PartialEvent]:
    """Fold raw logs into partial events keyed by (tx hash, delegate).

    Both log kinds contribute fields to the same key regardless of order.
    """
    partials: dict[tuple[str, str], _PartialEvent] = {}
    for log in logs:
        topics = [_to_hex(t) for t in log.get("topics", [])]
        if not topics:
            continue
        try:
            block_number = _to_int(log["blockNumber"])
            tx_hash = _to_hex(log["transactionHash"])
        except (KeyError, ValueError) as e:
            raise MalformedLogError(f"Log is missing block/tx fields: {e}") from e

        if topics[0] == DELEGATE_CHANGED_TOPIC:
            if len(topics) < 4:
                raise MalformedLogError(f"DelegateChanged log in {tx_hash} has {len(topics)} topics")
            to_delegate = _topic_to_address(topics[3])
            partial = partials.setdefault(
                event_key(tx_hash, to_delegate),
                _PartialEvent(block_number=block_number, transaction_hash=tx_hash, to_delegate=to_delegate),
            )
            partial.delegator = _topic_to_address(topics[1])
            partial.from_delegate = _topic_to_address(topics[2])
            partial.has_delegate = True
            if stats is not None:
                stats.total_delegate_changed_events += 1
        elif topics[0] == DELEGATE_VOTES_CHANGED_TOPIC:
            if len(topics) < 2:
                raise MalformedLogError(f"DelegateVotesChanged log in {tx_hash} has no delegate topic")
            to_delegate = _topic_to_address(topics[1])
            partial = partials.setdefault(
                event_key(tx_hash, to_delegate),
                _PartialEvent(block_number=block_number, transaction_hash=tx_hash, to_delegate=to_delegate),
            )
            partial.amount_delegated_changed = scale_amount(decode_votes_delta(log.get("data", "0x")), decimals)
            partial.has_votes = True
            if stats is not None:
                stats.total_votes_changed_events += 1
    return partials


def partition_events(
    partials: dict[tuple[str, str], _PartialEvent],
    timestamps: dict[int, int],
    stats: EventStats,
) -> tuple[list[DelegationEvent], list[DelegationEvent]]:
    """Split folded events into (complete, incomplete).

    A delegate-changed leg with no votes-changed partner carries no amount
    and is dropped.
    """
    complete: list[DelegationEvent] = []
    incomplete: list[DelegationEvent] = []
    for partial in partials.values():
        timestamp = timestamps.get(partial.block_number, 0)
        if partial.has_delegate and partial.has_votes:
            complete.append(
                DelegationEvent(
                    block_number=partial.block_number,
                    transaction_hash=partial.transaction_hash,
                    to_delegate=partial.to_delegate,
                    timestamp=timestamp,
                    delegator=partial.delegator,
                    from_delegate=partial.from_delegate,
                    amount_delegated_changed=partial.amount_delegated_changed,
                )
            )
        elif partial.has_votes:
            incomplete.append(
                DelegationEvent(
                    block_number=partial.block_number,
                    transaction_hash=partial.transaction_hash,
                    to_delegate=partial.to_delegate,
                    timestamp=timestamp,
                    amount_delegated_changed=partial.amount_delegated_changed,
                )
            )
        else:
            stats.delegate_only_sets += 1
    stats.complete_sets = len(complete)
    stats.incomplete_sets = len(incomplete)
    return complete, incomplete


class DelegationLogFetcher:
    """Fetches and decodes delegation events for one block range."""

    def __init__(self, client: EthereumClient, *, decimals: int = 18) -> None:
        self._client = client
        self._decimals = decimals

    async def fetch_range(self, from_block: int, to_block: int) -> FetchResult:
        """Fetch and decode `[from_block, to_block]` (inclusive).

        The range must already fit the provider's eth_getLogs window.

        Returns:
            Complete/incomplete events and stats. After the client exhausts its
            retries the result is empty with zeroed stats.

        Raises:
            BlockRangeTooLargeError: If the provider rejects the window.
            MalformedLogError: If the provider returns an undecodable log.
        """
        if to_block < from_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")

        stats = EventStats(from_block=from_block, to_block=to_block, processed_chunks=1)
        try:
            logs = await self._client.get_logs(
                from_block=from_block,
                to_block=to_block,
                topics=TRACKED_TOPICS,
            )
            partials = fold_logs(logs, decimals=self._decimals, stats=stats)
            timestamps = await self._resolve_timestamps({p.block_number for p in partials.values()})
        except (BlockRangeTooLargeError, MalformedLogError):
            raise
        except ChainClientError as e:
            logger.warning(
                "Giving up on blocks %d-%d after retries, returning empty result: %s",
                from_block,
                to_block,
                e,
            )
            failed = EventStats.empty(from_block, to_block)
            failed.failed_chunks = 1
            return FetchResult(stats=failed)

        complete, incomplete = partition_events(partials, timestamps, stats)
        logger.info(
            "Blocks %d-%d: %d complete, %d incomplete, %d delegate-only",
            from_block,
            to_block,
            stats.complete_sets,
            stats.incomplete_sets,
            stats.delegate_only_sets,
        )
        return FetchResult(events=complete, incomplete_events=incomplete, stats=stats)

    async def _resolve_timestamps(self, block_numbers: set[int]) -> dict[int, int]:
        # One lookup per distinct block, each consuming a limiter slot.
        timestamps: dict[int, int] = {}
        for block_number in sorted(block_numbers):
            timestamps[block_number] = await self._client.get_block_timestamp(block_number)
        return timestamps


@dataclass
class SyncResult:
    """Outcome of a chunked event sync."""

    start_block: int
    end_block: int
    stats: EventStats
    stored_complete: int = 0
    stored_incomplete: int = 0
    watermark: int | None = None
    truncated: bool = False
    failed_block: int | None = None
    preview: list[DelegationEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startBlock": self.start_block,
            "endBlock": self.end_block,
            "stats": self.stats.to_dict(),
            "storedComplete": self.stored_complete,
            "storedIncomplete": self.stored_incomplete,
            "watermark": self.watermark,
            "truncated": self.truncated,
            "failedBlock": self.failed_block,
            "preview": [e.to_dict() for e in self.preview],
        }


class DelegationEventSync:
    """Chunked, resumable ingestion of delegation events into the Event Store."""

    def __init__(
        self,
        fetcher: DelegationLogFetcher,
        client: EthereumClient,
        db: DatabaseManager,
        *,
        blocks_per_query: int,
        deploy_block: int,
        max_duration_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self._client = client
        self._db = db
        self._chunk = blocks_per_query
        self._deploy_block = deploy_block
        self._max_duration = max_duration_seconds
        self._clock = clock

    async def sync(self, *, from_block: int | None = None, to_block: int | None = None) -> SyncResult:
        """Ingest events from the resume point (or `from_block`) up to the head.

        Each chunk is stored as soon as it is decoded, so a ceiling breach or a
        later failure keeps everything ingested so far. A chunk the provider
        keeps failing ends the sync there, so the watermark never passes it
        and the next sync resumes at that chunk.
        """
        started = self._clock()
        head = to_block if to_block is not None else await self._client.get_block_number()

        async with self._db.get_async_session() as session:
            watermark = await EventStore(session).get_latest_processed_block()

        if from_block is not None:
            start = from_block
        elif watermark is not None:
            start = watermark + 1
        else:
            start = self._deploy_block

        total_chunks = max(0, (head - start) // self._chunk + 1) if head >= start else 0
        aggregate = EventStats(from_block=start, to_block=head, total_chunks=total_chunks)
        result = SyncResult(start_block=start, end_block=head, stats=aggregate, watermark=watermark)

        if total_chunks == 0:
            logger.info("Event store is up to date (resume block %d, head %d)", start, head)
            return result

        if watermark is not None and from_block is None and total_chunks > REPROCESSING_WARNING_CHUNKS:
            logger.warning(
                "Resuming %d chunks behind head from watermark %d; check for excessive re-processing",
                total_chunks,
                watermark,
            )

        logger.info("Syncing delegation events %d-%d in %d chunks", start, head, total_chunks)
        for chunk_start in range(start, head + 1, self._chunk):
            if self._max_duration is not None and self._clock() - started >= self._max_duration:
                logger.warning(
                    "Event sync reached %.0fs ceiling after %d/%d chunks; returning partial result",
                    self._max_duration,
                    aggregate.processed_chunks,
                    total_chunks,
                )
                result.truncated = True
                break

            chunk_end = min(head, chunk_start + self._chunk - 1)
            fetched = await self._fetcher.fetch_range(chunk_start, chunk_end)
            aggregate.merge(fetched.stats)
            if fetched.stats.failed_chunks:
                logger.warning(
                    "Stopping event sync at failed chunk %d-%d; next sync resumes there",
                    chunk_start,
                    chunk_end,
                )
                result.end_block = chunk_start - 1
                result.failed_block = chunk_start
                break
            result.end_block = chunk_end

            if fetched.is_empty:
                continue

            async with self._db.get_async_session() as session:
                store = EventStore(session)
                outcome = await store.store_events(fetched.events, fetched.incomplete_events)
                result.watermark = outcome.watermark
            result.stored_complete += outcome.inserted_complete
            result.stored_incomplete += outcome.inserted_incomplete
            if len(result.preview) < 5:
                result.preview.extend((fetched.events + fetched.incomplete_events)[: 5 - len(result.preview)])

        logger.info(
            "Event sync stored %d complete and %d incomplete events (watermark=%s, failed chunks=%d)",
            result.stored_complete,
            result.stored_incomplete,
            result.watermark,
            aggregate.failed_chunks,
        )
        return result
