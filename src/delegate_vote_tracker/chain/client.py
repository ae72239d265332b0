"""Ethereum JSON-RPC client for the tracked governance token.

This module provides the provider access used by the log fetcher and the
Chain Read calculator, with:
- A fixed-window rate limiter shared by every log/timestamp call
- Retry logic with exponential backoff on transient provider errors
- Fail-fast detection of "block range too large" rejections
- A separate, unthrottled path for `getVotes` contract reads
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_REQUEST_TIMEOUT = 30
RATE_LIMIT_WINDOW_SECONDS = 1.0

VOTES_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "getVotes",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Provider messages seen when an eth_getLogs window exceeds the plan limit.
_RANGE_TOO_LARGE_PATTERNS = (
    re.compile(r"\b(block )?range (is )?too (large|wide|big)", re.IGNORECASE),
    re.compile(r"\b\d[\d,]* block range\b", re.IGNORECASE),
    re.compile(r"limited to an? \d[\d,]* range", re.IGNORECASE),
    re.compile(r"range exceeds? \d+ blocks", re.IGNORECASE),
    re.compile(r"exceeds? (the )?max(imum)? block range", re.IGNORECASE),
    re.compile(r"query returned more than \d+ results", re.IGNORECASE),
)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call keeps failing after all retries."""


class BlockRangeTooLargeError(ChainClientError):
    """Raised when the provider rejects an eth_getLogs window as too large."""

    def __init__(self, from_block: int, to_block: int, detail: str) -> None:
        span = to_block - from_block + 1
        super().__init__(
            f"Provider rejected eth_getLogs range {from_block}-{to_block} ({span} blocks): {detail}. "
            "Lower ETH_BLOCKS_PER_QUERY to the provider's window limit and retry."
        )
        self.from_block = from_block
        self.to_block = to_block


class ContractCallError(ChainClientError):
    """Raised when a contract view call reverts or fails."""


def is_range_too_large(error: BaseException) -> bool:
    """Check whether a provider error is a block-window rejection."""
    message = str(error)
    return any(p.search(message) for p in _RANGE_TOO_LARGE_PATTERNS)


class FixedWindowRateLimiter:
    """Caps calls per rolling fixed window, blocking callers until a slot is free."""

    def __init__(
        self,
        max_requests: int,
        *,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests: Calls allowed per window.
            window_seconds: Window length in seconds.
            clock: Monotonic clock, injectable for tests.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._window_start: float | None = None
        self._count = 0
        self._lock = asyncio.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    async def acquire(self) -> None:
        """Wait until a request slot is available in the current window."""
        async with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self._window:
                self._window_start = now
                self._count = 0

            if self._count >= self._max_requests:
                wait_time = self._window - (now - self._window_start)
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                self._window_start = self._clock()
                self._count = 0

            self._count += 1


class EthereumClient:
    """Rate-limited Ethereum client for one token contract.

    Example:
        ```python
        client = EthereumClient(
            "https://eth-mainnet.g.alchemy.com/v2/KEY",
            token_address="0x0b010000b7624eb9b3dfbc279673c76e9d29d5f7",
        )
        head = await client.get_block_number()
        logs = await client.get_logs(from_block=head - 10, to_block=head, topics=[...])
        votes = await client.get_votes("0x...")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        token_address: str,
        max_requests_per_second: int = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        w3: AsyncWeb3[AsyncHTTPProvider] | None = None,
    ) -> None:
        """Initialize the Ethereum client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            token_address: Governance token contract address.
            max_requests_per_second: Log/timestamp calls per one-second window.
            max_retries: Maximum attempts per call on transient failure.
            retry_delay_seconds: Initial delay between retries.
            request_timeout: HTTP timeout in seconds.
            w3: Pre-built web3 instance (tests).
        """
        self._rpc_url = rpc_url
        self._token_address = token_address.lower()
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self._rate_limiter = FixedWindowRateLimiter(max_requests_per_second)
        self._contract: Any = None

    @property
    def token_address(self) -> str:
        return self._token_address

    @property
    def rate_limiter(self) -> FixedWindowRateLimiter:
        return self._rate_limiter

    async def _execute_with_retry(
        self,
        func_name: str,
        *args: Any,
        range_hint: tuple[int, int] | None = None,
    ) -> Any:
        """Execute a rate-limited web3.eth call with retry.

        Every attempt consumes one limiter slot.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.
            range_hint: Block window of an eth_getLogs call, for error reporting.

        Returns:
            Result from the RPC call.

        Raises:
            BlockRangeTooLargeError: If the provider rejects the log window.
            RPCError: If all retries fail.
        """
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            try:
                method = getattr(self._w3.eth, func_name)
                return await method(*args)
            except TRANSIENT_ERRORS as e:
                if range_hint is not None and is_range_too_large(e):
                    raise BlockRangeTooLargeError(range_hint[0], range_hint[1], str(e)) from e
                last_error = e
                logger.warning(
                    "RPC %s failed (attempt %d/%d): %s",
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_block_number(self) -> int:
        """Get the current chain head."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block's timestamp in seconds.

        Args:
            block_number: Block number.

        Returns:
            Unix timestamp of the block.
        """
        block = await self._execute_with_retry("get_block", block_number)
        return int(block["timestamp"])

    async def get_logs(
        self,
        *,
        from_block: int,
        to_block: int,
        topics: list[str],
    ) -> list[dict[str, Any]]:
        """Fetch token logs matching any of `topics` via `eth_getLogs`.

        Args:
            from_block: First block, inclusive.
            to_block: Last block, inclusive.
            topics: Topic-0 hashes, OR-ed together.

        Returns:
            Raw log dictionaries.
        """
        filter_params = {
            "address": AsyncWeb3.to_checksum_address(self._token_address),
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": [topics],
        }
        logs = await self._execute_with_retry(
            "get_logs",
            filter_params,
            range_hint=(from_block, to_block),
        )
        return [dict(log) for log in logs]

    def _token_contract(self) -> Any:
        if self._contract is None:
            self._contract = self._w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(self._token_address),
                abi=VOTES_ABI,
            )
        return self._contract

    async def get_votes(self, address: str) -> int:
        """Read an address's current voting power in base units.

        Not throttled by the log limiter; callers batch these reads themselves.

        Raises:
            ContractCallError: If the call reverts or the provider fails.
        """
        try:
            votes = await self._token_contract().functions.getVotes(
                AsyncWeb3.to_checksum_address(address)
            ).call()
        except (*TRANSIENT_ERRORS, ValueError) as e:
            raise ContractCallError(f"getVotes({address}) failed: {e}") from e
        return int(votes)

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close the async HTTP provider session to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
