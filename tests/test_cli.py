"""Tests for the command-line entry point."""

import argparse
from unittest.mock import MagicMock

import pytest

from delegate_vote_tracker import __main__ as cli
from delegate_vote_tracker.config import clear_settings_cache
from delegate_vote_tracker.lock import COOLDOWN_KEY, LOCK_KEY, CooldownGuard, UpdateLock
from delegate_vote_tracker.orchestrator import UpdateOrchestrator, UpdateServices
from delegate_vote_tracker.registry.merge import DelegateRegistry
from delegate_vote_tracker.storage.database import DatabaseManager
from tests.factories import FakeClock, FakeRedis


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    for name in ("DATABASE_URL", "ETH_RPC_URL", "ALCHEMY_API_KEY", "TALLY_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestParser:
    """Tests for argument parsing."""

    def test_update_force(self) -> None:
        args = cli.build_parser().parse_args(["update", "--force"])

        assert args.command == "update"
        assert args.force is True

    def test_step_choices(self) -> None:
        args = cli.build_parser().parse_args(["step", "check-mismatches"])

        assert args.name == "check-mismatches"
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["step", "not-a-step"])

    def test_sync_events_range(self) -> None:
        args = cli.build_parser().parse_args(["sync-events", "--from-block", "100", "--to-block", "200"])

        assert (args.from_block, args.to_block) == (100, 200)

    def test_clear_targets(self) -> None:
        assert cli.build_parser().parse_args(["clear", "lock"]).target == "lock"
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["clear", "everything"])


class TestRequirements:
    """Tests for per-command configuration requirements."""

    @pytest.mark.parametrize(
        ("argv", "expected"),
        [
            (["update"], "update"),
            (["sync-events"], "sync-events"),
            (["fetch-weights"], "fetch-weights"),
            (["step", "sync-registry"], "sync-registry"),
            (["step", "check-mismatches"], "reconcile"),
            (["step", "add-event-delegates"], "read-only"),
            (["step", "build-metrics"], "read-only"),
            (["leaderboard"], "read-only"),
            (["clear", "events"], "read-only"),
        ],
    )
    def test_requirement_for(self, argv: list[str], expected: str) -> None:
        args: argparse.Namespace = cli.build_parser().parse_args(argv)

        assert cli._requirement_for(args) == expected


class TestMain:
    """Tests for main()."""

    def test_invalid_configuration_exits_2(self) -> None:
        assert cli.main(["status"]) == 2

    def test_missing_rpc_for_update_exits_2(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

        assert cli.main(["update"]) == 2


class TestRun:
    """Tests for command dispatch against wired services."""

    @pytest.fixture
    def orchestrator(
        self, monkeypatch: pytest.MonkeyPatch, db: DatabaseManager, fake_redis: FakeRedis, clock: FakeClock
    ) -> UpdateOrchestrator:
        services = UpdateServices(db=db, redis=fake_redis, registry=DelegateRegistry(db))
        orchestrator = UpdateOrchestrator(
            services,
            UpdateLock(fake_redis, clock=clock),
            cooldown=CooldownGuard(fake_redis, 300, clock=clock),
            clock=clock,
        )
        monkeypatch.setattr(cli.UpdateOrchestrator, "from_settings", lambda settings: orchestrator)
        return orchestrator

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("argv", "component"),
        [(["sync-events"], "Event sync"), (["fetch-weights"], "reconciler")],
    )
    async def test_missing_chain_component_raises(
        self, orchestrator: UpdateOrchestrator, argv: list[str], component: str
    ) -> None:
        args = cli.build_parser().parse_args(argv)

        with pytest.raises(RuntimeError, match=component):
            await cli._run(args, MagicMock())

    @pytest.mark.asyncio
    async def test_clear_lock_also_clears_cooldown(
        self, orchestrator: UpdateOrchestrator, fake_redis: FakeRedis
    ) -> None:
        await orchestrator.lock.try_acquire()
        await orchestrator.cooldown.record_attempt()

        exit_code = await cli._run(cli.build_parser().parse_args(["clear", "lock"]), MagicMock())

        assert exit_code == 0
        assert LOCK_KEY not in fake_redis.store
        assert COOLDOWN_KEY not in fake_redis.store
