"""Tests for the Delegate Registry Merge and the delegate list cache."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from delegate_vote_tracker.registry.cache import DelegateListCache
from delegate_vote_tracker.registry.merge import DelegateRegistry
from delegate_vote_tracker.registry.tally import RegistryDelegate, RegistryFetch
from delegate_vote_tracker.storage.database import DatabaseManager
from delegate_vote_tracker.storage.repos import DelegateDTO, DelegateRepository, EventStore
from tests.factories import DELEGATE_A, DELEGATE_B, DELEGATE_C, FakeClock, complete_event, incomplete_event


async def _seed_delegates(db: DatabaseManager, *delegates: DelegateDTO) -> None:
    async with db.get_async_session() as session:
        await DelegateRepository(session).add_many(list(delegates))


async def _delegate(db: DatabaseManager, address: str) -> DelegateDTO:
    async with db.get_async_session() as session:
        delegate = await DelegateRepository(session).get(address)
    assert delegate is not None
    return delegate


class TestDelegateListCache:
    """Tests for DelegateListCache."""

    @pytest.mark.asyncio
    async def test_serves_fresh_value(self) -> None:
        clock = FakeClock(0.0)
        cache: DelegateListCache[int] = DelegateListCache(60, clock=clock)
        loader = AsyncMock(side_effect=[1, 2])

        assert await cache.get(loader) == 1
        clock.advance(59)
        assert await cache.get(loader) == 1
        assert loader.await_count == 1

    @pytest.mark.asyncio
    async def test_reloads_when_expired_or_forced(self) -> None:
        clock = FakeClock(0.0)
        cache: DelegateListCache[int] = DelegateListCache(60, clock=clock)
        loader = AsyncMock(side_effect=[1, 2, 3])

        await cache.get(loader)
        clock.advance(60)
        assert await cache.get(loader) == 2
        assert await cache.get(loader, force_refresh=True) == 3

    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        cache: DelegateListCache[int] = DelegateListCache(60, clock=FakeClock(0.0))
        loader = AsyncMock(side_effect=[5, 6])
        await cache.get(loader)
        assert cache.peek() is not None

        cache.invalidate()

        assert cache.peek() is None
        assert await cache.get(loader) == 6


class TestAddDelegates:
    """Tests for inserting delegates."""

    @pytest.mark.asyncio
    async def test_new_delegates_do_not_seek_delegation(self, db: DatabaseManager) -> None:
        registry = DelegateRegistry(db)

        added = await registry.add_delegates(
            [DelegateDTO(address=DELEGATE_A, is_seeking_delegation=True)],
            tally_profile=True,
        )

        delegate = await _delegate(db, DELEGATE_A)
        assert added == 1
        assert delegate.tally_profile is True
        assert delegate.is_seeking_delegation is False

    @pytest.mark.asyncio
    async def test_known_addresses_are_skipped(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A, name="Kept"))
        registry = DelegateRegistry(db)

        added = await registry.add_delegates([DelegateDTO(address=DELEGATE_A, name="Other")])

        assert added == 0
        assert (await _delegate(db, DELEGATE_A)).name == "Kept"


class TestUpdateDelegatesFromTally:
    """Tests for the per-field merge policy."""

    @pytest.mark.asyncio
    async def test_registry_fields_are_merged(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A, name="Local", ens="old.eth"))
        registry = DelegateRegistry(db)

        changes = await registry.update_delegates_from_tally(
            [RegistryDelegate(address=DELEGATE_A, ens=None, name="Remote", is_seeking_delegation=True)]
        )

        delegate = await _delegate(db, DELEGATE_A)
        assert delegate.tally_profile is True
        assert delegate.name == "Local"
        assert delegate.ens is None
        assert delegate.is_seeking_delegation is True
        assert {c.field for c in changes} == {"tally_profile", "ens", "is_seeking_delegation"}

    @pytest.mark.asyncio
    async def test_name_filled_when_empty(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A))
        registry = DelegateRegistry(db)

        await registry.update_delegates_from_tally([RegistryDelegate(address=DELEGATE_A, name="Remote")])

        assert (await _delegate(db, DELEGATE_A)).name == "Remote"

    @pytest.mark.asyncio
    async def test_delegate_missing_from_registry_stops_seeking(self, db: DatabaseManager) -> None:
        await _seed_delegates(
            db,
            DelegateDTO(address=DELEGATE_A, tally_profile=True, is_seeking_delegation=True),
            DelegateDTO(address=DELEGATE_B, tally_profile=False, is_seeking_delegation=True),
        )
        registry = DelegateRegistry(db)

        changes = await registry.update_delegates_from_tally([])

        demoted = await _delegate(db, DELEGATE_A)
        assert demoted.tally_profile is True
        assert demoted.is_seeking_delegation is False
        assert [(c.address, c.field, c.new) for c in changes] == [(DELEGATE_A, "is_seeking_delegation", False)]
        # Never registry-linked: left alone.
        assert (await _delegate(db, DELEGATE_B)).is_seeking_delegation is True

    @pytest.mark.asyncio
    async def test_no_changes(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A, name="A", ens="a.eth", tally_profile=True))
        registry = DelegateRegistry(db)

        changes = await registry.update_delegates_from_tally(
            [RegistryDelegate(address=DELEGATE_A, ens="a.eth", name="A", is_seeking_delegation=False)]
        )

        assert changes == []


class TestEventDelegatesAndSync:
    """Tests for event-sourced delegates and the full registry sync."""

    @pytest.mark.asyncio
    async def test_add_event_delegates(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A))
        async with db.get_async_session() as session:
            await EventStore(session).store_events(
                [complete_event(1, DELEGATE_A, "1")],
                [incomplete_event(2, DELEGATE_C, "1"), incomplete_event(3, DELEGATE_B, "1")],
            )
        registry = DelegateRegistry(db)

        added = await registry.add_event_delegates()
        again = await registry.add_event_delegates()

        assert added == [DELEGATE_B, DELEGATE_C]
        assert again == []
        delegate = await _delegate(db, DELEGATE_C)
        assert delegate.tally_profile is False
        assert delegate.is_seeking_delegation is False

    @pytest.mark.asyncio
    async def test_sync_registry_adds_and_merges(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A, name="Local"))
        tally = MagicMock()
        tally.fetch_delegates = AsyncMock(
            return_value=RegistryFetch(
                [
                    RegistryDelegate(address=DELEGATE_A, ens="a.eth", name="Remote", is_seeking_delegation=False),
                    RegistryDelegate(address=DELEGATE_B, ens="b.eth", name="Bob", is_seeking_delegation=True),
                ]
            )
        )
        registry = DelegateRegistry(db)

        result = await registry.sync_registry(tally)

        assert result.existing_delegates == 1
        assert result.registry_delegates == 2
        assert [d.address for d in result.new_delegates] == [DELEGATE_B]
        new = await _delegate(db, DELEGATE_B)
        assert new.tally_profile is True
        assert new.is_seeking_delegation is True
        assert new.ens == "b.eth"
        existing = await _delegate(db, DELEGATE_A)
        assert existing.name == "Local"
        assert existing.ens == "a.eth"
        assert result.to_dict()["newDelegatesFound"] == 1
        assert result.to_dict()["tallyComplete"] is True

    @pytest.mark.asyncio
    async def test_partial_fetch_does_not_demote(self, db: DatabaseManager) -> None:
        await _seed_delegates(
            db,
            DelegateDTO(address=DELEGATE_A, tally_profile=True, is_seeking_delegation=True),
            DelegateDTO(address=DELEGATE_B, tally_profile=True, is_seeking_delegation=True),
        )
        tally = MagicMock()
        tally.fetch_delegates = AsyncMock(
            return_value=RegistryFetch(
                [RegistryDelegate(address=DELEGATE_B, ens="b.eth", is_seeking_delegation=True)],
                complete=False,
                stop_reason="rate-limit",
            )
        )

        result = await DelegateRegistry(db).sync_registry(tally)

        assert result.registry_complete is False
        assert (await _delegate(db, DELEGATE_A)).is_seeking_delegation is True
        assert (await _delegate(db, DELEGATE_B)).ens == "b.eth"

    @pytest.mark.asyncio
    async def test_empty_partial_fetch_changes_nothing(self, db: DatabaseManager) -> None:
        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A, tally_profile=True, is_seeking_delegation=True))
        tally = MagicMock()
        tally.fetch_delegates = AsyncMock(return_value=RegistryFetch([], complete=False, stop_reason="rate-limit"))

        result = await DelegateRegistry(db).sync_registry(tally)

        assert result.changes == []
        assert (await _delegate(db, DELEGATE_A)).is_seeking_delegation is True

    @pytest.mark.asyncio
    async def test_list_is_cached_until_invalidated(self, db: DatabaseManager) -> None:
        registry = DelegateRegistry(db, cache=DelegateListCache(300, clock=FakeClock(0.0)))
        assert await registry.list_delegates() == []

        await _seed_delegates(db, DelegateDTO(address=DELEGATE_A))
        assert await registry.list_delegates() == []

        registry.invalidate_cache()
        assert [d.address for d in await registry.list_delegates()] == [DELEGATE_A]

    @pytest.mark.asyncio
    async def test_registry_writes_invalidate_cache(self, db: DatabaseManager) -> None:
        registry = DelegateRegistry(db, cache=DelegateListCache(300, clock=FakeClock(0.0)))
        assert await registry.list_delegates() == []

        await registry.add_delegates([DelegateDTO(address=DELEGATE_A)])

        assert len(await registry.list_delegates()) == 1
