"""Tally GraphQL client for the external delegate registry.

This module provides paged retrieval of the organization's delegates with:
- An adaptive inter-page delay that backs off on rate limits and slowly
  recovers after consecutive successes
- A bounded number of rate-limit retries and a wall-clock ceiling, both of
  which end the fetch with the delegates collected so far
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.tally.xyz/query"
DEFAULT_ORGANIZATION_ID = "2413388957975839812"
DEFAULT_PAGE_SIZE = 20
DEFAULT_MAX_DURATION_SECONDS = 300.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RATE_LIMIT_RETRIES = 5

DELEGATES_QUERY = """
query GetDelegates($input: DelegatesInput!) {
  delegates(input: $input) {
    nodes {
      ... on Delegate {
        account {
          address
          ens
          name
        }
        statement {
          isSeekingDelegation
        }
      }
    }
    pageInfo {
      firstCursor
      lastCursor
      count
    }
  }
}
"""


class TallyError(Exception):
    """Base exception for registry API errors."""


class TallyRateLimitError(TallyError):
    """Raised when the API answers 429."""

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        suffix = f" (retry after {retry_after:g}s)" if retry_after is not None else ""
        super().__init__(f"Tally API rate limit hit{suffix}")


class TallyResponseError(TallyError):
    """Raised on a non-JSON body, an HTTP error status or GraphQL errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class RegistryDelegate:
    """Identity record for one delegate as reported by the registry."""

    address: str
    ens: str | None = None
    name: str | None = None
    is_seeking_delegation: bool | None = None

    @classmethod
    def from_node(cls, node: dict[str, Any]) -> RegistryDelegate:
        account = node.get("account") or {}
        statement = node.get("statement") or {}
        address = account.get("address")
        if not address:
            raise TallyResponseError("Delegate node is missing account.address")
        return cls(
            address=str(address).lower(),
            ens=account.get("ens") or None,
            name=account.get("name") or None,
            is_seeking_delegation=statement.get("isSeekingDelegation"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "ens": self.ens,
            "name": self.name,
            "isSeekingDelegation": self.is_seeking_delegation,
        }


@dataclass
class RegistryFetch:
    """Delegates returned by one paged fetch.

    `complete` is False when the fetch stopped before the list ended, so a
    delegate absent from `delegates` may still be registered.
    """

    delegates: list[RegistryDelegate]
    complete: bool = True
    stop_reason: str | None = None


@dataclass
class AdaptiveDelay:
    """Inter-request delay in milliseconds, tuned by request outcomes."""

    min_ms: int = 600
    max_ms: int = 2000
    increase_ms: int = 200
    decrease_ms: int = 10
    successes_before_decrease: int = 3

    def __post_init__(self) -> None:
        self.current_ms: float = float(self.min_ms)
        self.consecutive_successes = 0

    @property
    def seconds(self) -> float:
        return self.current_ms / 1000.0

    def record_success(self) -> None:
        self.consecutive_successes += 1
        if self.consecutive_successes >= self.successes_before_decrease:
            self.current_ms = max(float(self.min_ms), self.current_ms - self.decrease_ms)

    def record_rate_limit(self, retry_after: float | None) -> None:
        self.consecutive_successes = 0
        if retry_after is not None:
            self.current_ms = max(self.current_ms, retry_after * 1000.0)
        else:
            self.current_ms = min(float(self.max_ms), self.current_ms + self.increase_ms)

    def record_error(self) -> None:
        self.consecutive_successes = 0


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class TallyClient:
    """Async client for the organization's delegate list.

    Example:
        ```python
        async with TallyClient(api_key) as tally:
            delegates = await tally.get_delegates()
        ```
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        organization_id: str = DEFAULT_ORGANIZATION_ID,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Tally API key (sent as the Api-Key header).
            api_url: GraphQL endpoint.
            organization_id: Organization whose delegates are listed.
            page_size: Delegates per page.
            max_duration_seconds: Ceiling for one `get_delegates` call.
            request_timeout_seconds: HTTP timeout per request.
            max_rate_limit_retries: Consecutive 429s tolerated before giving up.
            http_client: Pre-built httpx client (tests).
            clock: Monotonic clock (tests).
            sleep: Awaitable sleep (tests).
        """
        self._api_key = api_key
        self._api_url = api_url
        self._organization_id = organization_id
        self._page_size = page_size
        self._max_duration = max_duration_seconds
        self._max_rate_limit_retries = max_rate_limit_retries
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout_seconds)
        self._timeout = request_timeout_seconds
        self._clock = clock
        self._sleep = sleep

    async def __aenter__(self) -> TallyClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _query(self, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._api_url,
                json={"query": DELEGATES_QUERY, "variables": variables},
                headers={"Content-Type": "application/json", "Api-Key": self._api_key},
            )
        except httpx.TimeoutException as e:
            raise TallyError(f"Request timeout after {self._timeout:g} seconds") from e
        except httpx.HTTPError as e:
            raise TallyError(f"Tally request failed: {e}") from e

        if response.status_code == 429:
            raise TallyRateLimitError(_parse_retry_after(response.headers.get("retry-after")))

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error(
                "Tally returned non-JSON response (status=%d, content-type=%s)",
                response.status_code,
                content_type or "(none)",
            )
            raise TallyResponseError(
                f"API returned non-JSON response with status {response.status_code}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TallyResponseError("API returned an unparseable JSON body", response.status_code) from e

        errors = data.get("errors") if isinstance(data, dict) else None
        if response.is_error or errors:
            message = errors[0].get("message") if errors else response.reason_phrase
            raise TallyResponseError(
                f"Tally API error: {response.status_code} - {message}",
                response.status_code,
            )
        return data

    def _variables(self, cursor: str | None) -> dict[str, Any]:
        return {
            "input": {
                "filters": {"organizationId": self._organization_id},
                "page": {"limit": self._page_size, "afterCursor": cursor},
            }
        }

    async def get_delegates(self) -> list[RegistryDelegate]:
        """Fetch every delegate page; see `fetch_delegates`."""
        return (await self.fetch_delegates()).delegates

    async def fetch_delegates(self) -> RegistryFetch:
        """Fetch every delegate page until the list ends.

        Returns:
            All delegates collected. Marked incomplete when the duration
            ceiling or the rate-limit retry budget is exhausted, or when a
            later page fails.

        Raises:
            TallyError: If the very first delegates could not be fetched.
        """
        delegates: list[RegistryDelegate] = []
        cursor: str | None = None
        delay = AdaptiveDelay()
        rate_limit_retries = 0
        last_error: Exception | None = None
        pages = 0
        started = self._clock()

        while True:
            if self._clock() - started > self._max_duration:
                logger.warning(
                    "Reached maximum duration of %.0fs, returning %d delegates%s",
                    self._max_duration,
                    len(delegates),
                    f" (last error: {last_error})" if last_error else "",
                )
                return RegistryFetch(delegates, complete=False, stop_reason="duration")

            try:
                data = await self._query(self._variables(cursor))
                try:
                    connection = data["data"]["delegates"]
                    nodes = connection["nodes"] or []
                    last_cursor = (connection.get("pageInfo") or {}).get("lastCursor")
                except (KeyError, TypeError) as e:
                    raise TallyResponseError(f"Unexpected delegates payload: {e}") from e
                page = [RegistryDelegate.from_node(n) for n in nodes if n]
            except TallyRateLimitError as e:
                last_error = e
                rate_limit_retries += 1
                delay.record_rate_limit(e.retry_after)
                if rate_limit_retries > self._max_rate_limit_retries:
                    logger.warning(
                        "Reached maximum retries (%d) for rate limits, returning %d delegates",
                        self._max_rate_limit_retries,
                        len(delegates),
                    )
                    return RegistryFetch(delegates, complete=False, stop_reason="rate-limit")
                logger.info(
                    "Rate limit hit (attempt %d/%d), delay now %.0fms",
                    rate_limit_retries,
                    self._max_rate_limit_retries,
                    delay.current_ms,
                )
                await self._sleep(delay.seconds)
                continue
            except TallyError as e:
                delay.record_error()
                if delegates:
                    logger.error("Error fetching delegates, returning %d collected: %s", len(delegates), e)
                    return RegistryFetch(delegates, complete=False, stop_reason="error")
                raise

            rate_limit_retries = 0
            last_error = None
            pages += 1
            delay.record_success()
            delegates.extend(page)
            logger.debug("Page %d: %d delegates (total %d)", pages, len(page), len(delegates))

            if not page or not last_cursor or last_cursor == cursor:
                logger.info("Fetched %d registry delegates in %d pages", len(delegates), pages)
                return RegistryFetch(delegates)

            cursor = last_cursor
            await self._sleep(delay.seconds)
