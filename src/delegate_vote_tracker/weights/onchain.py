"""Chain Read weight calculator.

Reads live voting power from the token's `getVotes` accessor in small
concurrent batches with a pause between batches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal
from typing import TYPE_CHECKING

from delegate_vote_tracker.chain.client import ChainClientError
from delegate_vote_tracker.weights.precision import ZERO_WEIGHT, from_base_units

if TYPE_CHECKING:
    from delegate_vote_tracker.chain.client import EthereumClient

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_PAUSE_SECONDS = 1.0


class ChainReadCalculator:
    """Authoritative per-address weights from live contract state."""

    def __init__(
        self,
        client: EthereumClient,
        *,
        decimals: int = 18,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_pause_seconds: float = DEFAULT_BATCH_PAUSE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the calculator.

        Args:
            client: Ethereum client used for `getVotes` calls.
            decimals: Token decimal places.
            batch_size: Addresses read concurrently per batch.
            batch_pause_seconds: Pause between consecutive batches.
            sleep: Awaitable sleep (injected in tests).
        """
        self._client = client
        self._decimals = decimals
        self._batch_size = max(1, batch_size)
        self._batch_pause = batch_pause_seconds
        self._sleep = sleep

    async def read_weight(self, address: str) -> Decimal:
        """Read one address's voting power; 0.00 when the call fails."""
        try:
            raw = await self._client.get_votes(address)
        except ChainClientError as e:
            # Addresses without delegated power commonly revert here.
            logger.debug("getVotes failed for %s, using 0.00: %s", address, e)
            return ZERO_WEIGHT
        return from_base_units(raw, self._decimals)

    async def read_weights(self, addresses: Sequence[str]) -> dict[str, Decimal]:
        """Read many addresses, batch by batch.

        Returns:
            Mapping of lowercased address to two-decimal weight.
        """
        unique = list(dict.fromkeys(a.lower() for a in addresses))
        weights: dict[str, Decimal] = {}
        for start in range(0, len(unique), self._batch_size):
            batch = unique[start : start + self._batch_size]
            results = await asyncio.gather(*(self.read_weight(a) for a in batch))
            weights.update(zip(batch, results, strict=True))
            logger.info("Read on-chain weights %d/%d", min(start + len(batch), len(unique)), len(unique))
            if start + self._batch_size < len(unique) and self._batch_pause > 0:
                await self._sleep(self._batch_pause)
        return weights
