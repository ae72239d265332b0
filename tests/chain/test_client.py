"""Tests for the Ethereum client and its rate limiter."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from web3.exceptions import Web3Exception

from delegate_vote_tracker.chain.client import (
    BlockRangeTooLargeError,
    ContractCallError,
    EthereumClient,
    FixedWindowRateLimiter,
    RPCError,
    is_range_too_large,
)
from tests.factories import DELEGATE_A, FakeClock

TOKEN = "0x0b010000b7624eb9b3dfbc279673c76e9d29d5f7"


@pytest.fixture
def mock_w3() -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_block_number = AsyncMock(return_value=21_000_000)
    w3.eth.get_block = AsyncMock(return_value={"timestamp": 1_700_000_000})
    w3.eth.get_logs = AsyncMock(return_value=[])
    return w3


@pytest.fixture
def client(mock_w3: MagicMock) -> EthereumClient:
    return EthereumClient(
        "http://localhost:8545",
        token_address=TOKEN,
        max_retries=3,
        retry_delay_seconds=0,
        w3=mock_w3,
    )


class TestFixedWindowRateLimiter:
    """Tests for FixedWindowRateLimiter."""

    def test_rejects_non_positive_limit(self) -> None:
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(0)

    @pytest.mark.asyncio
    async def test_calls_within_window_do_not_wait(self) -> None:
        clock = FakeClock(100.0)
        limiter = FixedWindowRateLimiter(3, clock=clock)

        with patch("delegate_vote_tracker.chain.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            for _ in range(3):
                await limiter.acquire()

        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_call_over_limit_waits_for_window_remainder(self) -> None:
        clock = FakeClock(100.0)
        limiter = FixedWindowRateLimiter(3, clock=clock)

        with patch("delegate_vote_tracker.chain.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            for _ in range(3):
                await limiter.acquire()
            clock.advance(0.25)
            await limiter.acquire()

        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_new_window_resets_count(self) -> None:
        clock = FakeClock(100.0)
        limiter = FixedWindowRateLimiter(2, clock=clock)

        with patch("delegate_vote_tracker.chain.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await limiter.acquire()
            await limiter.acquire()
            clock.advance(1.0)
            await limiter.acquire()
            await limiter.acquire()

        sleep.assert_not_awaited()


class TestRangeDetection:
    """Tests for provider block-range rejection detection."""

    @pytest.mark.parametrize(
        "message",
        [
            "Log response size exceeded. You can make eth_getLogs requests with up to a 500 block range",
            "query returned more than 10000 results",
            "block range is too wide",
            "eth_getLogs is limited to a 10,000 range",
            "eth_getLogs is limited to a 500 block range",
            "exceed maximum block range: 10000",
            "requested range exceeds 2000 blocks",
        ],
    )
    def test_recognizes_range_errors(self, message: str) -> None:
        assert is_range_too_large(Exception(message))

    @pytest.mark.parametrize(
        "message",
        [
            "connection reset by peer",
            "Too Many Requests: exceeded max requests per second",
            "rate limit exceeded for block range queries",
            "project ID request rate exceeded the limit",
        ],
    )
    def test_ignores_other_errors(self, message: str) -> None:
        assert not is_range_too_large(Exception(message))


class TestEthereumClient:
    """Tests for EthereumClient."""

    @pytest.mark.asyncio
    async def test_get_block_number(self, client: EthereumClient) -> None:
        assert await client.get_block_number() == 21_000_000

    @pytest.mark.asyncio
    async def test_get_block_timestamp(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        assert await client.get_block_timestamp(123) == 1_700_000_000
        mock_w3.eth.get_block.assert_awaited_once_with(123)

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        mock_w3.eth.get_block_number = AsyncMock(side_effect=[Web3Exception("upstream timeout"), 42])

        assert await client.get_block_number() == 42
        assert mock_w3.eth.get_block_number.await_count == 2

    @pytest.mark.asyncio
    async def test_raises_after_all_retries(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        mock_w3.eth.get_block_number = AsyncMock(side_effect=Web3Exception("upstream timeout"))

        with pytest.raises(RPCError):
            await client.get_block_number()
        assert mock_w3.eth.get_block_number.await_count == 3

    @pytest.mark.asyncio
    async def test_get_logs_builds_filter(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        mock_w3.eth.get_logs = AsyncMock(return_value=[{"blockNumber": 10}])

        logs = await client.get_logs(from_block=10, to_block=20, topics=["0xaa", "0xbb"])

        assert logs == [{"blockNumber": 10}]
        filter_params = mock_w3.eth.get_logs.await_args.args[0]
        assert filter_params["fromBlock"] == hex(10)
        assert filter_params["toBlock"] == hex(20)
        assert filter_params["topics"] == [["0xaa", "0xbb"]]
        assert filter_params["address"].lower() == TOKEN

    @pytest.mark.asyncio
    async def test_range_too_large_fails_fast(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        mock_w3.eth.get_logs = AsyncMock(
            side_effect=Web3Exception("eth_getLogs is limited to a 500 block range")
        )

        with pytest.raises(BlockRangeTooLargeError) as exc_info:
            await client.get_logs(from_block=0, to_block=9_999, topics=["0xaa"])

        assert mock_w3.eth.get_logs.await_count == 1
        assert exc_info.value.from_block == 0
        assert exc_info.value.to_block == 9_999
        assert "ETH_BLOCKS_PER_QUERY" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_get_votes(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        contract = MagicMock()
        contract.functions.getVotes.return_value.call = AsyncMock(return_value=5 * 10**18)
        mock_w3.eth.contract.return_value = contract

        assert await client.get_votes(DELEGATE_A) == 5 * 10**18

    @pytest.mark.asyncio
    async def test_get_votes_wraps_failures(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        contract = MagicMock()
        contract.functions.getVotes.return_value.call = AsyncMock(
            side_effect=Web3Exception("execution reverted")
        )
        mock_w3.eth.contract.return_value = contract

        with pytest.raises(ContractCallError):
            await client.get_votes(DELEGATE_A)

    @pytest.mark.asyncio
    async def test_health_check(self, client: EthereumClient, mock_w3: MagicMock) -> None:
        assert await client.health_check() is True

        mock_w3.eth.get_block_number = AsyncMock(side_effect=Web3Exception("down"))
        assert await client.health_check() is False
