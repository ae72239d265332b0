"""Command-line entry point.

Usage:
    python -m delegate_vote_tracker update [--force]
    python -m delegate_vote_tracker step sync-events
    python -m delegate_vote_tracker leaderboard --limit 20

Every command prints JSON on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from delegate_vote_tracker.config import Command, Settings, get_settings
from delegate_vote_tracker.metrics import clear_metrics
from delegate_vote_tracker.orchestrator import (
    StepFailedError,
    StepOutcome,
    UpdateOrchestrator,
    UpdateStep,
    require_component,
)
from delegate_vote_tracker.reporting import build_leaderboard, inspect_address, inspect_vote_weights
from delegate_vote_tracker.storage.repos import DelegateRepository, EventStore, VoteWeightRepository

logger = logging.getLogger("delegate_vote_tracker")

_CLEAR_TARGETS = ("events", "delegates", "weights", "metrics", "lock")

# Config requirements per subcommand; anything not listed only needs DB/Redis.
_COMMAND_REQUIREMENTS: dict[str, Command] = {
    "update": "update",
    "sync-events": "sync-events",
    "fetch-weights": "fetch-weights",
}

_STEP_REQUIREMENTS: dict[UpdateStep, Command] = {
    UpdateStep.SYNC_REGISTRY: "sync-registry",
    UpdateStep.SYNC_EVENTS: "sync-events",
    UpdateStep.CALCULATE_WEIGHTS: "reconcile",
    UpdateStep.CHECK_MISMATCHES: "reconcile",
    UpdateStep.RECALCULATE_WEIGHTS: "reconcile",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, default=_json_default)
    sys.stdout.write("\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="delegate-vote-tracker",
        description="Track delegated governance-token voting power.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema.")

    update = sub.add_parser("update", help="Run the full update sequence if data is stale.")
    update.add_argument("--force", action="store_true", help="Run even if metrics are fresh.")

    step = sub.add_parser("step", help="Run one update step.")
    step.add_argument("name", choices=[s.value for s in UpdateStep])

    sub.add_parser("status", help="Show lock progress and metrics age.")
    sub.add_parser("metrics", help="Show the cached metrics snapshot.")

    leaderboard = sub.add_parser("leaderboard", help="Show delegates ranked by voting power.")
    leaderboard.add_argument("--limit", type=int, default=None)

    sync_events = sub.add_parser("sync-events", help="Ingest delegation events.")
    sync_events.add_argument("--from-block", type=int, default=None)
    sync_events.add_argument("--to-block", type=int, default=None)

    sub.add_parser("fetch-weights", help="Chain-read every delegate and replace the weight table.")
    sub.add_parser("inspect-weights", help="Compare stored and event-replayed weights.")

    inspect = sub.add_parser("inspect-address", help="Show everything stored for one address.")
    inspect.add_argument("address")

    clear = sub.add_parser("clear", help="Reset stored data.")
    clear.add_argument("target", choices=_CLEAR_TARGETS)
    return parser


def _requirement_for(args: argparse.Namespace) -> Command:
    if args.command == "step":
        return _STEP_REQUIREMENTS.get(UpdateStep(args.name), "read-only")
    return _COMMAND_REQUIREMENTS.get(args.command, "read-only")


async def _clear(orchestrator: UpdateOrchestrator, target: str) -> dict[str, Any]:
    services = orchestrator.services
    if target == "metrics":
        await clear_metrics(services.redis)
    elif target == "lock":
        await orchestrator.lock.release()
        await orchestrator.cooldown.clear()
    else:
        async with services.db.get_async_session() as session:
            if target == "events":
                await EventStore(session).clear()
            elif target == "delegates":
                await DelegateRepository(session).clear()
            else:
                await VoteWeightRepository(session).clear()
        if target == "delegates":
            services.registry.invalidate_cache()
    return {"cleared": target}


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    async with UpdateOrchestrator.from_settings(settings) as orchestrator:
        services = orchestrator.services
        command = args.command

        if command == "init-db":
            await services.db.init_schema_async()
            _emit({"initialized": True})
        elif command == "update":
            result = await orchestrator.run_update(force=args.force)
            _emit(result.to_dict())
            return 1 if result.outcome == StepOutcome.FAILED else 0
        elif command == "step":
            try:
                _emit(await orchestrator.run_step(UpdateStep(args.name)))
            except StepFailedError as e:
                logger.error("%s", e)
                _emit({"step": e.step.name, "error": str(e.cause)})
                return 1
        elif command == "status":
            _emit(await orchestrator.status())
        elif command == "metrics":
            snapshot = await orchestrator.read_metrics()
            _emit(snapshot.to_dict() if snapshot else None)
        elif command == "leaderboard":
            leaderboard = await build_leaderboard(services.db, limit=args.limit, registry=services.registry)
            _emit([e.to_dict() for e in leaderboard])
        elif command == "sync-events":
            event_sync = require_component(services.event_sync, "Event sync (ETH_RPC_URL)")
            sync_result = await event_sync.sync(from_block=args.from_block, to_block=args.to_block)
            _emit(sync_result.to_dict())
        elif command == "fetch-weights":
            reconciler = require_component(services.reconciler, "Vote-weight reconciler (ETH_RPC_URL)")
            rows = await reconciler.refresh_all_from_chain()
            _emit({"stored": len(rows), "weights": [r.to_dict() for r in rows]})
        elif command == "inspect-weights":
            _emit(await inspect_vote_weights(services.db))
        elif command == "inspect-address":
            _emit(await inspect_address(services.db, args.address))
        elif command == "clear":
            _emit(await _clear(orchestrator, args.target))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return 2
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        settings.validate_requirements(command=_requirement_for(args))
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        return 2

    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
