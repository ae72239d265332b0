"""Chain layer - rate-limited RPC access and delegation event decoding."""

from delegate_vote_tracker.chain.client import (
    BlockRangeTooLargeError,
    ChainClientError,
    ContractCallError,
    EthereumClient,
    FixedWindowRateLimiter,
    RPCError,
)
from delegate_vote_tracker.chain.models import DelegationEvent, EventStats, FetchResult

__all__ = [
    "BlockRangeTooLargeError",
    "ChainClientError",
    "ContractCallError",
    "DelegationEvent",
    "EthereumClient",
    "EventStats",
    "FetchResult",
    "FixedWindowRateLimiter",
    "RPCError",
]
