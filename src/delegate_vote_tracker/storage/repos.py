"""Repository pattern implementations for data access.

This module provides data access abstractions for the delegation Event
Store (with its watermark), the vote-weight table and the delegate table.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from delegate_vote_tracker.chain.models import DelegationEvent, event_key
from delegate_vote_tracker.storage.models import (
    DelegateModel,
    DelegationEventModel,
    SyncCursorModel,
    VoteWeightModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EVENT_PAGE_SIZE = 2000
INSERT_BATCH_SIZE = 1000
KEY_LOOKUP_BATCH_SIZE = 500
WATERMARK_CURSOR = "delegation_events"


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _batched(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


# ============================================================================
# Event Store
# ============================================================================


@dataclass
class EventPartitions:
    """Stored events split into the complete and incomplete partitions."""

    complete: list[DelegationEvent] = field(default_factory=list)
    incomplete: list[DelegationEvent] = field(default_factory=list)

    def all(self) -> list[DelegationEvent]:
        return [*self.complete, *self.incomplete]


@dataclass
class StoreOutcome:
    """Result of one `EventStore.store_events` call."""

    inserted_complete: int = 0
    inserted_incomplete: int = 0
    skipped_duplicates: int = 0
    watermark: int | None = None


def _event_from_model(model: DelegationEventModel) -> DelegationEvent:
    amount = Decimal(model.amount_delegated_changed) if model.amount_delegated_changed is not None else None
    return DelegationEvent(
        block_number=model.block_number,
        transaction_hash=model.tx_hash,
        to_delegate=model.to_delegate,
        timestamp=model.timestamp,
        delegator=model.delegator,
        from_delegate=model.from_delegate,
        amount_delegated_changed=amount,
    )


def _event_row(event: DelegationEvent, *, complete: bool, now: datetime) -> dict[str, Any]:
    return {
        "tx_hash": event.transaction_hash.lower(),
        "to_delegate": event.to_delegate.lower(),
        "block_number": event.block_number,
        "timestamp": event.timestamp,
        "delegator": event.delegator.lower() if event.delegator else None,
        "from_delegate": event.from_delegate.lower() if event.from_delegate else None,
        "amount_delegated_changed": (
            str(event.amount_delegated_changed) if event.amount_delegated_changed is not None else None
        ),
        "complete": complete,
        "created_at": now,
    }


class EventStore:
    """Append-only, deduplicated ledger of delegation events plus its watermark.

    Events are identified by (transaction hash, lowercased delegate) across
    both partitions; a key that is already stored is skipped, never updated.
    """

    def __init__(self, session: AsyncSession, *, page_size: int = EVENT_PAGE_SIZE) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            page_size: Rows fetched per query when reading events back.
        """
        self.session = session
        self._page_size = page_size

    async def get_latest_processed_block(self) -> int | None:
        """Get the watermark (highest fully-ingested block), if any."""
        result = await self.session.execute(
            select(SyncCursorModel.block_number).where(SyncCursorModel.name == WATERMARK_CURSOR)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def store_events(
        self,
        complete: Sequence[DelegationEvent],
        incomplete: Sequence[DelegationEvent],
    ) -> StoreOutcome:
        """Append events not already stored, then advance the watermark.

        Re-storing an overlapping range is a no-op for keys already present.
        """
        outcome = StoreOutcome()
        candidates: list[tuple[DelegationEvent, bool]] = [(e, True) for e in complete]
        candidates.extend((e, False) for e in incomplete)
        if not candidates:
            outcome.watermark = await self.get_latest_processed_block()
            return outcome

        existing = await self._existing_keys({e.key for e, _ in candidates})
        seen: set[tuple[str, str]] = set(existing)
        now = datetime.now(UTC)
        rows: list[dict[str, Any]] = []
        for event, is_complete in candidates:
            if event.key in seen:
                outcome.skipped_duplicates += 1
                continue
            seen.add(event.key)
            rows.append(_event_row(event, complete=is_complete, now=now))
            if is_complete:
                outcome.inserted_complete += 1
            else:
                outcome.inserted_incomplete += 1

        for batch in _batched(rows, INSERT_BATCH_SIZE):
            stmt = _insert_for(self.session, DelegationEventModel).values(list(batch))
            stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "to_delegate"])
            await self.session.execute(stmt)
        await self.session.flush()

        outcome.watermark = await self._advance_watermark()
        logger.info(
            "Stored %d complete and %d incomplete events (%d duplicates skipped, watermark=%s)",
            outcome.inserted_complete,
            outcome.inserted_incomplete,
            outcome.skipped_duplicates,
            outcome.watermark,
        )
        return outcome

    async def _existing_keys(self, keys: set[tuple[str, str]]) -> set[tuple[str, str]]:
        tx_hashes = sorted({tx for tx, _ in keys})
        found: set[tuple[str, str]] = set()
        for batch in _batched(tx_hashes, KEY_LOOKUP_BATCH_SIZE):
            result = await self.session.execute(
                select(DelegationEventModel.tx_hash, DelegationEventModel.to_delegate).where(
                    DelegationEventModel.tx_hash.in_(list(batch))
                )
            )
            found.update(event_key(tx, to) for tx, to in result.all())
        return found & keys

    async def _partition_max_block(self, *, complete: bool) -> int | None:
        result = await self.session.execute(
            select(func.max(DelegationEventModel.block_number)).where(
                DelegationEventModel.complete.is_(complete)
            )
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def _advance_watermark(self) -> int | None:
        # The lower of the two partition maxima; never moves backward.
        current = await self.get_latest_processed_block()
        maxima = [
            b
            for b in (
                await self._partition_max_block(complete=True),
                await self._partition_max_block(complete=False),
            )
            if b is not None
        ]
        if not maxima:
            return current
        candidate = min(maxima)
        if current is not None and candidate <= current:
            return current

        await self.session.merge(
            SyncCursorModel(name=WATERMARK_CURSOR, block_number=candidate, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return candidate

    async def iter_pages(
        self,
        *,
        complete: bool,
        to_delegate: str | None = None,
    ) -> AsyncIterator[list[DelegationEvent]]:
        """Yield one partition in bounded pages, keyset-paginated by id."""
        last_id = 0
        while True:
            stmt = (
                select(DelegationEventModel)
                .where(DelegationEventModel.complete.is_(complete))
                .where(DelegationEventModel.id > last_id)
                .order_by(DelegationEventModel.id.asc())
                .limit(self._page_size)
            )
            if to_delegate is not None:
                stmt = stmt.where(DelegationEventModel.to_delegate == to_delegate.lower())
            result = await self.session.execute(stmt)
            models = list(result.scalars().all())
            if not models:
                return
            last_id = models[-1].id
            yield [_event_from_model(m) for m in models]
            if len(models) < self._page_size:
                return

    async def get_events(self, include_incomplete: bool = False) -> EventPartitions:
        """Read stored events; the incomplete partition only when asked for."""
        partitions = EventPartitions()
        async for page in self.iter_pages(complete=True):
            partitions.complete.extend(page)
        if include_incomplete:
            async for page in self.iter_pages(complete=False):
                partitions.incomplete.extend(page)
        return partitions

    async def events_for_address(self, address: str) -> EventPartitions:
        """Both partitions, restricted to events targeting `address`."""
        partitions = EventPartitions()
        async for page in self.iter_pages(complete=True, to_delegate=address):
            partitions.complete.extend(page)
        async for page in self.iter_pages(complete=False, to_delegate=address):
            partitions.incomplete.extend(page)
        return partitions

    async def distinct_delegates(self) -> set[str]:
        """Every `to_delegate` seen in either partition."""
        result = await self.session.execute(select(DelegationEventModel.to_delegate).distinct())
        return {addr.lower() for addr in result.scalars().all()}

    async def count_distinct_delegators(self) -> int:
        """Distinct delegators across complete events."""
        result = await self.session.execute(
            select(func.count(DelegationEventModel.delegator.distinct())).where(
                DelegationEventModel.complete.is_(True)
            )
        )
        return int(result.scalar_one())

    async def count(self) -> dict[str, int]:
        result = await self.session.execute(
            select(DelegationEventModel.complete, func.count()).group_by(DelegationEventModel.complete)
        )
        counts = {"complete": 0, "incomplete": 0}
        for is_complete, n in result.all():
            counts["complete" if is_complete else "incomplete"] = int(n)
        return counts

    async def clear(self) -> None:
        """Delete both partitions and the watermark (full reset)."""
        await self.session.execute(delete(DelegationEventModel))
        await self.session.execute(delete(SyncCursorModel).where(SyncCursorModel.name == WATERMARK_CURSOR))
        await self.session.flush()
        logger.info("Cleared all delegation events and the watermark")


# ============================================================================
# Vote weights
# ============================================================================


@dataclass
class VoteWeightDTO:
    """Data transfer object for a vote-weight row."""

    address: str
    weight: Decimal
    event_calc_weight: Decimal | None = None
    unique_delegators: int | None = None
    delegator_percent: Decimal | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: VoteWeightModel) -> VoteWeightDTO:
        return cls(
            address=model.address,
            weight=model.weight,
            event_calc_weight=model.event_calc_weight,
            unique_delegators=model.unique_delegators,
            delegator_percent=model.delegator_percent,
            updated_at=model.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "weight": f"{self.weight:.2f}",
            "eventCalcWeight": f"{self.event_calc_weight:.2f}" if self.event_calc_weight is not None else None,
            "uniqueDelegators": self.unique_delegators,
            "delegatorPercent": f"{self.delegator_percent:.2f}" if self.delegator_percent is not None else None,
        }


def _weight_row(dto: VoteWeightDTO, now: datetime) -> dict[str, Any]:
    return {
        "address": dto.address.lower(),
        "weight": dto.weight,
        "event_calc_weight": dto.event_calc_weight,
        "unique_delegators": dto.unique_delegators,
        "delegator_percent": dto.delegator_percent,
        "updated_at": now,
    }


class VoteWeightRepository:
    """Repository for the per-address vote-weight table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_all(self) -> list[VoteWeightDTO]:
        result = await self.session.execute(
            select(VoteWeightModel).order_by(VoteWeightModel.weight.desc(), VoteWeightModel.address.asc())
        )
        return [VoteWeightDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, address: str) -> VoteWeightDTO | None:
        model = await self.session.get(VoteWeightModel, address.lower())
        return VoteWeightDTO.from_model(model) if model else None

    async def upsert_many(self, dtos: Sequence[VoteWeightDTO]) -> int:
        """Insert or overwrite the given rows; rows not passed are left as they are."""
        now = datetime.now(UTC)
        rows = [_weight_row(d, now) for d in dtos]
        for batch in _batched(rows, INSERT_BATCH_SIZE):
            stmt = _insert_for(self.session, VoteWeightModel).values(list(batch))
            stmt = stmt.on_conflict_do_update(
                index_elements=["address"],
                set_={
                    "weight": stmt.excluded.weight,
                    "event_calc_weight": stmt.excluded.event_calc_weight,
                    "unique_delegators": stmt.excluded.unique_delegators,
                    "delegator_percent": stmt.excluded.delegator_percent,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def replace_all(self, dtos: Sequence[VoteWeightDTO]) -> int:
        """Replace the whole table within the current transaction."""
        await self.session.execute(delete(VoteWeightModel))
        now = datetime.now(UTC)
        rows = [_weight_row(d, now) for d in dtos]
        for batch in _batched(rows, INSERT_BATCH_SIZE):
            await self.session.execute(_insert_for(self.session, VoteWeightModel).values(list(batch)))
        await self.session.flush()
        return len(rows)

    async def clear(self) -> None:
        await self.session.execute(delete(VoteWeightModel))
        await self.session.flush()


# ============================================================================
# Delegates
# ============================================================================


@dataclass
class DelegateDTO:
    """Data transfer object for a delegate profile."""

    address: str
    name: str | None = None
    ens: str | None = None
    tally_profile: bool = False
    is_seeking_delegation: bool = False

    @classmethod
    def from_model(cls, model: DelegateModel) -> DelegateDTO:
        return cls(
            address=model.address,
            name=model.name,
            ens=model.ens,
            tally_profile=model.tally_profile,
            is_seeking_delegation=model.is_seeking_delegation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "ens": self.ens,
            "tallyProfile": self.tally_profile,
            "isSeekingDelegation": self.is_seeking_delegation,
        }


class DelegateRepository:
    """Repository for delegate profiles."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_all(self) -> list[DelegateDTO]:
        result = await self.session.execute(select(DelegateModel).order_by(DelegateModel.address.asc()))
        return [DelegateDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, address: str) -> DelegateDTO | None:
        model = await self.session.get(DelegateModel, address.lower())
        return DelegateDTO.from_model(model) if model else None

    async def addresses(self) -> set[str]:
        result = await self.session.execute(select(DelegateModel.address))
        return {a.lower() for a in result.scalars().all()}

    async def add_many(self, dtos: Sequence[DelegateDTO]) -> int:
        """Insert delegates whose address is not yet known; existing rows are untouched."""
        known = await self.addresses()
        now = datetime.now(UTC)
        rows: list[dict[str, Any]] = []
        for dto in dtos:
            address = dto.address.lower()
            if address in known:
                continue
            known.add(address)
            rows.append(
                {
                    "address": address,
                    "name": dto.name,
                    "ens": dto.ens,
                    "tally_profile": dto.tally_profile,
                    "is_seeking_delegation": dto.is_seeking_delegation,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        for batch in _batched(rows, INSERT_BATCH_SIZE):
            stmt = _insert_for(self.session, DelegateModel).values(list(batch))
            stmt = stmt.on_conflict_do_nothing(index_elements=["address"])
            await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def update_profile(self, address: str, **fields: Any) -> None:
        """Overwrite the given profile fields of one delegate."""
        if not fields:
            return
        await self.session.execute(
            update(DelegateModel)
            .where(DelegateModel.address == address.lower())
            .values(**fields, updated_at=datetime.now(UTC))
        )

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(DelegateModel))
        return int(result.scalar_one())

    async def clear(self) -> None:
        await self.session.execute(delete(DelegateModel))
        await self.session.flush()
