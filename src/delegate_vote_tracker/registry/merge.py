"""Delegate Registry Merge.

Unifies the external registry's delegate list with addresses discovered only
through on-chain events into the canonical delegate table.

Field policy for a delegate matched in the registry:
- `tally_profile` becomes True.
- `name` is filled only when empty locally.
- `ens` and `is_seeking_delegation` always follow the registry, including
  clearing ENS when the registry no longer reports one.

A previously registry-linked delegate that disappears from the registry
keeps its row and `tally_profile`, and stops seeking delegation. That
demotion only runs after a complete registry fetch.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.registry.cache import DelegateListCache
from delegate_vote_tracker.storage.repos import DelegateDTO, DelegateRepository, EventStore

if TYPE_CHECKING:
    from delegate_vote_tracker.registry.tally import RegistryDelegate, TallyClient
    from delegate_vote_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    """One delegate field changed by a registry merge."""

    address: str
    field: str
    old: Any
    new: Any

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "field": self.field, "from": self.old, "to": self.new}


@dataclass
class RegistrySyncResult:
    """Outcome of a full registry sync."""

    existing_delegates: int = 0
    registry_delegates: int = 0
    registry_complete: bool = True
    new_delegates: list[DelegateDTO] = field(default_factory=list)
    changes: list[FieldChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "existingDelegates": self.existing_delegates,
            "tallyDelegates": self.registry_delegates,
            "tallyComplete": self.registry_complete,
            "newDelegatesFound": len(self.new_delegates),
            "newDelegates": [
                {"address": d.address, "ens": d.ens, "name": d.name} for d in self.new_delegates
            ],
            "changes": [c.to_dict() for c in self.changes],
        }


class DelegateRegistry:
    """Canonical delegate set backed by the delegate table."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        cache: DelegateListCache[list[DelegateDTO]] | None = None,
    ) -> None:
        self._db = db
        self._cache: DelegateListCache[list[DelegateDTO]] = cache or DelegateListCache(ttl_seconds=0)

    async def _load(self) -> list[DelegateDTO]:
        async with self._db.get_async_session() as session:
            return await DelegateRepository(session).list_all()

    async def list_delegates(self, *, force_refresh: bool = False) -> list[DelegateDTO]:
        """Known delegates, served from the cache while it is fresh."""
        return await self._cache.get(self._load, force_refresh=force_refresh)

    def invalidate_cache(self) -> None:
        self._cache.invalidate()

    async def add_delegates(self, new_ones: Sequence[DelegateDTO], *, tally_profile: bool = False) -> int:
        """Insert delegates not yet known; known addresses are skipped.

        New rows always start with `is_seeking_delegation=False`.
        """
        rows = [
            DelegateDTO(
                address=d.address.lower(),
                name=d.name,
                ens=d.ens,
                tally_profile=tally_profile,
                is_seeking_delegation=False,
            )
            for d in new_ones
        ]
        async with self._db.get_async_session() as session:
            added = await DelegateRepository(session).add_many(rows)
        if added:
            self.invalidate_cache()
            logger.info("Added %d new delegates", added)
        return added

    async def update_delegates_from_tally(
        self,
        registry_rows: Sequence[RegistryDelegate],
        *,
        demote_missing: bool = True,
    ) -> list[FieldChange]:
        """Apply the registry's current view to existing delegates.

        Args:
            registry_rows: Delegates reported by the registry.
            demote_missing: Stop seeking delegation for linked delegates not in
                `registry_rows`. Pass False when the rows are a partial list.
        """
        by_address = {r.address.lower(): r for r in registry_rows}
        changes: list[FieldChange] = []

        async with self._db.get_async_session() as session:
            repo = DelegateRepository(session)
            for delegate in await repo.list_all():
                address = delegate.address.lower()
                updates: dict[str, Any] = {}
                registry = by_address.get(address)

                if registry is not None:
                    if not delegate.tally_profile:
                        updates["tally_profile"] = True
                    if registry.name and not delegate.name:
                        updates["name"] = registry.name
                    if delegate.ens != registry.ens:
                        updates["ens"] = registry.ens
                    seeking = bool(registry.is_seeking_delegation)
                    if delegate.is_seeking_delegation != seeking:
                        updates["is_seeking_delegation"] = seeking
                elif demote_missing and delegate.tally_profile and delegate.is_seeking_delegation:
                    updates["is_seeking_delegation"] = False

                if not updates:
                    continue
                for field_name, value in updates.items():
                    changes.append(FieldChange(address, field_name, getattr(delegate, field_name), value))
                await repo.update_profile(address, **updates)

        if changes:
            self.invalidate_cache()
            logger.info("Updated %d delegate data points", len(changes))
            for change in changes:
                logger.debug("%s: %s changed from %r to %r", change.address, change.field, change.old, change.new)
        else:
            logger.info("No updates identified for delegate information")
        return changes

    async def add_event_delegates(self) -> list[str]:
        """Insert every event `to_delegate` address that has no delegate row.

        Returns:
            The addresses added, sorted.
        """
        async with self._db.get_async_session() as session:
            seen = await EventStore(session).distinct_delegates()
            known = await DelegateRepository(session).addresses()
        missing = sorted(seen - known)
        if not missing:
            logger.info("No new delegates found in events")
            return []
        await self.add_delegates([DelegateDTO(address=a) for a in missing], tally_profile=False)
        return missing

    async def sync_registry(self, tally: TallyClient) -> RegistrySyncResult:
        """Fetch the registry, add unseen delegates, then merge profile fields."""
        existing = await self.list_delegates(force_refresh=True)
        fetch = await tally.fetch_delegates()
        registry_rows = fetch.delegates

        result = RegistrySyncResult(
            existing_delegates=len(existing),
            registry_delegates=len(registry_rows),
            registry_complete=fetch.complete,
        )
        if not fetch.complete:
            logger.warning(
                "Registry fetch stopped early (%s); not demoting delegates missing from %d rows",
                fetch.stop_reason,
                len(registry_rows),
            )
        known = {d.address.lower() for d in existing}
        for row in registry_rows:
            if row.address.lower() not in known:
                known.add(row.address.lower())
                result.new_delegates.append(DelegateDTO(address=row.address.lower(), name=row.name, ens=row.ens))

        if result.new_delegates:
            await self.add_delegates(result.new_delegates)
        result.changes = await self.update_delegates_from_tally(registry_rows, demote_missing=fetch.complete)
        logger.info(
            "Registry sync: %d existing, %d from registry, %d new",
            result.existing_delegates,
            result.registry_delegates,
            len(result.new_delegates),
        )
        return result
