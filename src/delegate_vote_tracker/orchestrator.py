"""Update orchestrator for the Delegate Vote Tracker.

This module wires the chain, registry, weight and metrics components together
and runs them as one ordered, single-flight update sequence:

    SYNC_REGISTRY → SYNC_EVENTS → ADD_EVENT_DELEGATES → CALCULATE_WEIGHTS
    → CHECK_MISMATCHES → RECALCULATE_WEIGHTS → BUILD_METRICS

An update only starts when the metrics are stale, the shared cool-down has
passed and the distributed lock is free. A failing step stops the sequence
and leaves the lock to expire.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from delegate_vote_tracker.chain.client import EthereumClient
from delegate_vote_tracker.chain.events import DelegationEventSync, DelegationLogFetcher
from delegate_vote_tracker.config import Settings, get_settings
from delegate_vote_tracker.lock import CooldownGuard, LockInfo, UpdateLock
from delegate_vote_tracker.metrics import build_metrics, read_metrics
from delegate_vote_tracker.registry.cache import DelegateListCache
from delegate_vote_tracker.registry.merge import DelegateRegistry
from delegate_vote_tracker.registry.tally import TallyClient
from delegate_vote_tracker.storage.database import DatabaseManager
from delegate_vote_tracker.weights.onchain import ChainReadCalculator
from delegate_vote_tracker.weights.reconcile import VoteWeightReconciler

if TYPE_CHECKING:
    from delegate_vote_tracker.metrics import MetricsSnapshot

logger = logging.getLogger(__name__)


class UpdateStep(str, Enum):
    """Named steps of the update sequence, in execution order."""

    SYNC_REGISTRY = "sync-registry"
    SYNC_EVENTS = "sync-events"
    ADD_EVENT_DELEGATES = "add-event-delegates"
    CALCULATE_WEIGHTS = "calculate-weights"
    CHECK_MISMATCHES = "check-mismatches"
    RECALCULATE_WEIGHTS = "recalculate-weights"
    BUILD_METRICS = "build-metrics"


UPDATE_SEQUENCE: tuple[UpdateStep, ...] = tuple(UpdateStep)


class OrchestratorState(str, Enum):
    """Orchestrator lifecycle states."""

    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    RUNNING = "running"


class StepOutcome(str, Enum):
    """How an update request ended."""

    COMPLETED = "completed"
    FRESH = "fresh"
    COOLDOWN = "cooldown"
    LOCKED = "locked"
    FAILED = "failed"


class StepFailedError(Exception):
    """Raised when a step of the update sequence fails."""

    def __init__(self, step: UpdateStep, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Step {step.name} failed: {cause}")


@dataclass
class UpdateResult:
    """Outcome of one `run_update` call."""

    outcome: StepOutcome
    completed_steps: list[UpdateStep] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)
    failed_step: UpdateStep | None = None
    error: str | None = None
    lock_holder: LockInfo | None = None

    @property
    def success(self) -> bool:
        return self.outcome == StepOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "completedSteps": [s.name for s in self.completed_steps],
            "results": self.results,
            "failedStep": self.failed_step.name if self.failed_step else None,
            "error": self.error,
            "lockHolder": self.lock_holder.to_dict() if self.lock_holder else None,
        }


@dataclass
class UpdateServices:
    """Components the update steps run against.

    Chain and registry components are optional so read-only commands can run
    without an RPC endpoint or API key; a step that needs a missing component
    fails.
    """

    db: DatabaseManager
    redis: Redis
    registry: DelegateRegistry
    chain_client: EthereumClient | None = None
    event_sync: DelegationEventSync | None = None
    reconciler: VoteWeightReconciler | None = None
    tally: TallyClient | None = None
    significant_percent: Decimal = Decimal("1")

    @classmethod
    def from_settings(cls, settings: Settings) -> UpdateServices:
        """Build every component from application settings."""
        eth = settings.ethereum
        db = DatabaseManager(settings.database.url)
        redis = Redis.from_url(settings.redis.url)
        registry = DelegateRegistry(db, cache=DelegateListCache(settings.registry.cache_ttl_seconds))

        services = cls(
            db=db,
            redis=redis,
            registry=registry,
            significant_percent=settings.weights.significant_power_percent,
        )

        endpoint = eth.endpoint
        if endpoint:
            client = EthereumClient(
                endpoint,
                token_address=eth.token_address,
                max_requests_per_second=eth.max_requests_per_second,
                max_retries=eth.max_retries,
                retry_delay_seconds=eth.retry_delay_seconds,
                request_timeout=eth.request_timeout_seconds,
            )
            services.chain_client = client
            services.event_sync = DelegationEventSync(
                DelegationLogFetcher(client, decimals=eth.token_decimals),
                client,
                db,
                blocks_per_query=eth.blocks_per_query,
                deploy_block=eth.deploy_block,
                max_duration_seconds=eth.sync_max_duration_seconds,
            )
            services.reconciler = VoteWeightReconciler(
                db,
                ChainReadCalculator(
                    client,
                    decimals=eth.token_decimals,
                    batch_size=settings.weights.batch_size,
                    batch_pause_seconds=settings.weights.batch_pause_seconds,
                ),
                decimals=eth.token_decimals,
                tolerance=settings.weights.mismatch_tolerance,
            )

        reg = settings.registry
        if reg.api_key:
            services.tally = TallyClient(
                reg.api_key.get_secret_value(),
                api_url=reg.api_url,
                organization_id=reg.organization_id,
                page_size=reg.page_size,
                max_duration_seconds=reg.max_duration_seconds,
                request_timeout_seconds=reg.request_timeout_seconds,
            )
        return services

    async def aclose(self) -> None:
        """Release network and database resources."""
        if self.tally is not None:
            await self.tally.aclose()
        if self.chain_client is not None:
            await self.chain_client.aclose()
        await self.db.dispose_async()
        await self.redis.aclose()
        logger.debug("Resources cleaned up")


def require_component(component: Any, name: str) -> Any:
    if component is None:
        raise RuntimeError(f"{name} is not configured")
    return component


class UpdateOrchestrator:
    """Runs the update sequence under the distributed lock.

    Example:
        ```python
        async with UpdateOrchestrator.from_settings(get_settings()) as orchestrator:
            result = await orchestrator.run_update()
            print(result.outcome)
        ```
    """

    def __init__(
        self,
        services: UpdateServices,
        lock: UpdateLock,
        *,
        cooldown: CooldownGuard | None = None,
        freshness_seconds: float = 3600,
        step_pause_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            services: Components the steps run against.
            lock: Distributed update lock.
            cooldown: Shared guard against re-triggering right after an attempt.
            freshness_seconds: Metrics older than this are stale.
            step_pause_seconds: Pause between consecutive steps.
            clock: Wall clock in seconds.
            sleep: Awaitable sleep (tests).
        """
        self._services = services
        self._lock = lock
        self._cooldown = cooldown or CooldownGuard(services.redis, clock=clock)
        self._freshness = freshness_seconds
        self._step_pause = step_pause_seconds
        self._clock = clock
        self._sleep = sleep
        self._state = OrchestratorState.IDLE
        self._last_result: UpdateResult | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> UpdateOrchestrator:
        settings = settings or get_settings()
        services = UpdateServices.from_settings(settings)
        update = settings.update
        return cls(
            services,
            UpdateLock(services.redis, timeout_seconds=update.lock_timeout_seconds),
            cooldown=CooldownGuard(services.redis, update.cooldown_seconds),
            freshness_seconds=update.freshness_seconds,
            step_pause_seconds=update.step_pause_seconds,
        )

    @property
    def state(self) -> OrchestratorState:
        """Current orchestrator state."""
        return self._state

    @property
    def services(self) -> UpdateServices:
        return self._services

    @property
    def lock(self) -> UpdateLock:
        return self._lock

    @property
    def cooldown(self) -> CooldownGuard:
        return self._cooldown

    @property
    def last_result(self) -> UpdateResult | None:
        return self._last_result

    async def dispatch(self, step: UpdateStep) -> dict[str, Any]:
        """Run one step and return its JSON-ready result."""
        services = self._services
        if step is UpdateStep.SYNC_REGISTRY:
            tally = require_component(services.tally, "Tally API client (TALLY_API_KEY)")
            return (await services.registry.sync_registry(tally)).to_dict()
        if step is UpdateStep.SYNC_EVENTS:
            event_sync = require_component(services.event_sync, "Event sync (ETH_RPC_URL)")
            return (await event_sync.sync()).to_dict()
        if step is UpdateStep.ADD_EVENT_DELEGATES:
            added = await services.registry.add_event_delegates()
            return {"added": len(added), "delegates": added}
        if step in (UpdateStep.CALCULATE_WEIGHTS, UpdateStep.RECALCULATE_WEIGHTS):
            reconciler = require_component(services.reconciler, "Vote-weight reconciler (ETH_RPC_URL)")
            return (await reconciler.merge_event_weights()).to_dict()
        if step is UpdateStep.CHECK_MISMATCHES:
            reconciler = require_component(services.reconciler, "Vote-weight reconciler (ETH_RPC_URL)")
            return (await reconciler.check_mismatches()).to_dict()
        if step is UpdateStep.BUILD_METRICS:
            metrics = await build_metrics(
                services.db,
                services.redis,
                significant_percent=services.significant_percent,
                clock=self._clock,
            )
            return metrics.to_dict()
        raise ValueError(f"Unknown update step: {step!r}")

    async def run_step(self, step: UpdateStep) -> dict[str, Any]:
        """Run a single step outside the sequence (each step is safe to re-run).

        Raises:
            StepFailedError: If the step raises.
        """
        logger.info("Running step %s", step.name)
        try:
            return await self.dispatch(step)
        except Exception as e:
            raise StepFailedError(step, e) from e

    async def read_metrics(self) -> MetricsSnapshot | None:
        return await read_metrics(self._services.redis, freshness_seconds=self._freshness, clock=self._clock)

    async def is_stale(self) -> bool:
        snapshot = await self.read_metrics()
        return snapshot is None or snapshot.is_stale

    async def status(self) -> dict[str, Any]:
        """Lock progress plus the cached metrics' age, for polling callers."""
        snapshot = await self.read_metrics()
        return {
            "state": self._state.value,
            "lock": await self._lock.status(),
            "cooldownActive": await self._cooldown.is_active(),
            "metrics": snapshot.to_dict() if snapshot else None,
            "isStale": snapshot is None or snapshot.is_stale,
            "lastResult": self._last_result.to_dict() if self._last_result else None,
        }

    async def run_update(self, *, force: bool = False) -> UpdateResult:
        """Run the full sequence if the data is stale and nobody else is.

        Args:
            force: Run even when the metrics are still fresh.

        Returns:
            The outcome; contention and freshness are outcomes, not errors.
        """
        if not force and not await self.is_stale():
            logger.info("Metrics are fresh, skipping update")
            return self._finish(UpdateResult(outcome=StepOutcome.FRESH))

        if await self._cooldown.is_active():
            logger.info("Update attempted recently, skipping (cool-down)")
            return self._finish(UpdateResult(outcome=StepOutcome.COOLDOWN))
        await self._cooldown.record_attempt()

        self._state = OrchestratorState.ACQUIRING_LOCK
        if not await self._lock.try_acquire():
            holder = await self._lock.current_holder()
            return self._finish(UpdateResult(outcome=StepOutcome.LOCKED, lock_holder=holder))

        self._state = OrchestratorState.RUNNING
        result = UpdateResult(outcome=StepOutcome.COMPLETED)
        started = self._clock()
        logger.info("Starting update sequence (%s)", self._lock.instance_id)
        try:
            for index, step in enumerate(UPDATE_SEQUENCE):
                await self._lock.update_step(step.name)
                result.results[step.value] = await self.run_step(step)
                result.completed_steps.append(step)
                if index < len(UPDATE_SEQUENCE) - 1 and self._step_pause > 0:
                    await self._sleep(self._step_pause)
        except StepFailedError as e:
            logger.error("Update sequence stopped at %s: %s", e.step.name, e.cause)
            result.outcome = StepOutcome.FAILED
            result.failed_step = e.step
            result.error = str(e.cause)
        else:
            logger.info("Update sequence completed in %.1fs", self._clock() - started)
        return self._finish(result)

    def _finish(self, result: UpdateResult) -> UpdateResult:
        self._state = OrchestratorState.IDLE
        self._last_result = result
        return result

    async def aclose(self) -> None:
        await self._services.aclose()

    async def __aenter__(self) -> UpdateOrchestrator:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.aclose()
