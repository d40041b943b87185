"""USD/BTC price feed and the cached oracle used for payment validation."""
import asyncio
import logging
import time
from typing import Callable, Protocol

import requests

from .models import PriceSample

logger = logging.getLogger(__name__)


class PriceFeedError(Exception):
    """Raised when the price feed returns an error or unusable data."""

    pass


class PriceUnavailable(Exception):
    """Raised when no USD/BTC rate has ever been obtained."""

    pass


class PriceFeed(Protocol):
    def get_usd_per_btc(self) -> float:
        ...


class HttpPriceFeed:
    """Fetches the USD/BTC rate from a JSON endpoint returning ``{"usd": <rate>}``.

    Args:
        url: Price endpoint
        timeout: Request timeout in seconds
        session: Optional requests session (tests inject a mock)
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_usd_per_btc(self) -> float:
        """Fetch the current rate.

        Raises:
            PriceFeedError: On HTTP errors or a malformed body
        """
        try:
            response = self._session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise PriceFeedError(f"Failed to fetch BTC rate: {e}") from e

        rate = data.get("usd") if isinstance(data, dict) else None
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
            raise PriceFeedError(f"Invalid exchange rate data received: {data!r}")
        return float(rate)


class PriceOracle:
    """Cached USD/BTC rate.

    The cache is shared by concurrent validations without a lock: two callers
    that both find it stale will both fetch and both store a sample.

    Args:
        feed: Source of fresh rates
        ttl_seconds: How long a fetched rate is served without refetching
        clock: Returns the current Unix time in seconds
    """

    def __init__(
        self,
        feed: PriceFeed,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        self._feed = feed
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sample: PriceSample | None = None

    @property
    def sample(self) -> PriceSample | None:
        """Last successfully fetched sample, fresh or not."""
        return self._sample

    def seed(self, rate: float, fetched_at: float | None = None) -> None:
        """Store a known rate without calling the feed."""
        at = self._clock() if fetched_at is None else fetched_at
        self._sample = PriceSample(rate=rate, fetched_at=at)

    async def get(self) -> float:
        """Return the USD/BTC rate, fetching if the cached one is stale.

        Falls back to the last known rate if the fetch fails.

        Raises:
            PriceUnavailable: If the fetch fails and no rate was ever fetched
        """
        sample = self._sample
        if sample and sample.is_fresh(self._clock(), self.ttl_seconds):
            return sample.rate

        try:
            rate = await asyncio.to_thread(self._feed.get_usd_per_btc)
        except Exception as e:
            logger.error("Failed to fetch BTC rate: %s", e)
            if self._sample:
                logger.warning(
                    "Using stale BTC rate: $%s (fetched %.0fs ago)",
                    f"{self._sample.rate:,.2f}",
                    self._clock() - self._sample.fetched_at,
                )
                return self._sample.rate
            raise PriceUnavailable("No BTC rate available") from e

        self._sample = PriceSample(rate=rate, fetched_at=self._clock())
        logger.info("Updated BTC/USD rate: $%s", f"{rate:,.2f}")
        return rate
