"""Distributed update lock and cool-down over Redis.

The lock is a single key created with SET NX EX. It is held while
``now - timestamp < timeout``; expiry is the normal release path, so a
crashed holder never blocks the next update for longer than the timeout.

The cool-down is a separate key recording the last update attempt from any
process, so a fresh CLI run sees an attempt made by the previous one.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from delegate_vote_tracker.codec import (
    decode_json_payload,
    encode_json_payload,
    require_int,
    require_str,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LOCK_KEY = "data-update-lock"
COOLDOWN_KEY = "data-update-cooldown"
DEFAULT_LOCK_TIMEOUT_SECONDS = 600
DEFAULT_COOLDOWN_SECONDS = 300


@dataclass
class LockInfo:
    """Contents of the lock record."""

    timestamp: int
    instance: str
    step: str | None = None

    def is_held(self, now: int, timeout: int) -> bool:
        return now - self.timestamp < timeout

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "instance": self.instance}
        if self.step is not None:
            data["step"] = self.step
        return data


def decode_lock_info(raw: Any) -> LockInfo | None:
    """Typed decode of a stored lock record; None if absent or invalid."""
    data = decode_json_payload(raw, what="lock")
    if data is None:
        return None
    try:
        step = data.get("step")
        return LockInfo(
            timestamp=require_int(data, "timestamp"),
            instance=require_str(data, "instance"),
            step=step if isinstance(step, str) else None,
        )
    except (KeyError, TypeError) as e:
        logger.warning("Invalid lock data %r: %s", data, e)
        return None


def new_instance_id() -> str:
    return f"instance-{uuid.uuid4().hex[:10]}"


class UpdateLock:
    """Cluster-wide single-flight lock for the update sequence.

    Example:
        ```python
        lock = UpdateLock(redis)
        if await lock.try_acquire():
            await lock.update_step("SYNC_EVENTS")
        else:
            holder = await lock.current_holder()
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key: str = LOCK_KEY,
        timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
        instance_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the lock.

        Args:
            redis: Redis async client.
            key: Key holding the lock record.
            timeout_seconds: Lock lifetime (also the Redis TTL).
            instance_id: Identity written into the record when acquired.
            clock: Wall clock in seconds (shared across processes).
        """
        self._redis = redis
        self._key = key
        self._timeout = timeout_seconds
        self._instance = instance_id or new_instance_id()
        self._clock = clock

    @property
    def instance_id(self) -> str:
        return self._instance

    @property
    def timeout_seconds(self) -> int:
        return self._timeout

    def _now(self) -> int:
        return int(self._clock())

    async def _read(self) -> LockInfo | None:
        return decode_lock_info(await self._redis.get(self._key))

    async def current_holder(self) -> LockInfo | None:
        """The unexpired lock record, if any."""
        info = await self._read()
        if info is None or not info.is_held(self._now(), self._timeout):
            return None
        return info

    async def try_acquire(self) -> bool:
        """Create the lock if no unexpired holder exists.

        Returns:
            True if this instance now holds the lock, False on contention.
        """
        holder = await self.current_holder()
        if holder is not None:
            logger.info("Update lock is held by %s (step=%s)", holder.instance, holder.step)
            return False

        info = LockInfo(timestamp=self._now(), instance=self._instance)
        acquired = await self._redis.set(
            self._key,
            encode_json_payload(info.to_dict()),
            nx=True,
            ex=self._timeout,
        )
        logger.info("Lock acquisition attempt: %s", "successful" if acquired else "failed")
        return bool(acquired)

    async def update_step(self, step: str) -> bool:
        """Record the running step on a lock this instance holds.

        The key's remaining TTL is kept; a step update never extends the lock.
        """
        info = await self._read()
        if info is None:
            return False
        if info.instance != self._instance:
            logger.warning("Not updating step: lock is held by %s", info.instance)
            return False
        info.step = step
        updated = await self._redis.set(
            self._key,
            encode_json_payload(info.to_dict()),
            xx=True,
            keepttl=True,
        )
        if updated:
            logger.info("Lock step updated to: %s", step)
        return bool(updated)

    async def release(self) -> bool:
        """Delete the lock record (manual recovery only)."""
        deleted = await self._redis.delete(self._key)
        logger.info("Lock released")
        return int(deleted) > 0

    async def status(self) -> dict[str, Any]:
        holder = await self.current_holder()
        if holder is None:
            return {"locked": False}
        return {"locked": True, **holder.to_dict()}


class CooldownGuard:
    """Shared record of the last update attempt.

    Stored with an EX of the cool-down length; the timestamp is checked as
    well so an expiry that has not fired yet still reads as inactive.
    """

    def __init__(
        self,
        redis: Redis,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        *,
        key: str = COOLDOWN_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._cooldown = cooldown_seconds
        self._key = key
        self._clock = clock

    async def last_attempt(self) -> int | None:
        """Epoch seconds of the last recorded attempt, if any."""
        data = decode_json_payload(await self._redis.get(self._key), what="cooldown")
        if data is None:
            return None
        try:
            return require_int(data, "timestamp")
        except (KeyError, TypeError) as e:
            logger.warning("Invalid cooldown data %r: %s", data, e)
            return None

    async def is_active(self) -> bool:
        if self._cooldown <= 0:
            return False
        last = await self.last_attempt()
        if last is None:
            return False
        return self._clock() - last < self._cooldown

    async def record_attempt(self) -> None:
        if self._cooldown <= 0:
            return
        payload = encode_json_payload({"timestamp": int(self._clock())})
        await self._redis.set(self._key, payload, ex=self._cooldown)

    async def clear(self) -> None:
        await self._redis.delete(self._key)
        logger.info("Cooldown cleared")
