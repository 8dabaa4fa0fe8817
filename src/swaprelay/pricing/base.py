"""Abstract price feed interface and oracle value types."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from swaprelay.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"


class FeedError(TransientInfrastructureError):
    """A price feed could not serve the request."""


class FeedThrottledError(FeedError):
    """The feed answered 429 Too Many Requests."""

    def __init__(self, feed: str, retry_after: Optional[float] = None):
        self.feed = feed
        self.retry_after = retry_after
        super().__init__(f"{feed} throttled (retry after {retry_after}s)")


class FeedUnavailableError(FeedError):
    """Timeout, connection error, bad status or unusable payload."""


@dataclass(frozen=True)
class FeedQuote:
    """USD price of one asset as reported by a feed."""

    asset: str
    usd_price: Decimal
    source: str
    timestamp: float


@dataclass(frozen=True)
class CachedRate:
    """Cross rate from_asset -> to_asset with its provenance."""

    from_asset: str
    to_asset: str
    rate: Decimal
    source: str
    fetched_at: float

    @property
    def pair(self) -> tuple[str, str]:
        return (self.from_asset, self.to_asset)

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE


@dataclass(frozen=True)
class Conversion:
    """Result of converting an amount between assets."""

    from_asset: str
    to_asset: str
    amount_in: Decimal
    amount_out: Decimal
    rate: Decimal
    source: str

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE


@dataclass(frozen=True)
class FeeBreakdown:
    """Bridge fee taken from an amount."""

    gross: Decimal
    fee: Decimal
    net: Decimal
    fee_rate_bps: int


@dataclass(frozen=True)
class PriceQuote:
    """Conversion followed by the bridge fee on the converted amount."""

    conversion: Conversion
    fee: FeeBreakdown

    @property
    def net_amount(self) -> Decimal:
        return self.fee.net

    @property
    def source(self) -> str:
        return self.conversion.source


class PriceFeed(ABC):
    """Abstract base class for market data feeds."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Feed name identifier."""
        pass

    @abstractmethod
    async def fetch_usd_prices(self, assets: list[str]) -> dict[str, FeedQuote]:
        """
        Fetch USD prices for a set of assets in one request.

        Args:
            assets: Asset symbols (e.g., ["ETH", "TRX"])

        Returns:
            Mapping of asset symbol to quote, containing every requested asset

        Raises:
            FeedThrottledError: The feed rate limited us
            FeedUnavailableError: Any other failure
        """
        pass


class HttpPriceFeed(PriceFeed):
    """Shared HTTP plumbing for JSON feeds."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_json(
        self,
        path: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ):
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.get(
                    url, params=params, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise FeedUnavailableError(f"{self.name} timed out: {e}")
        except httpx.HTTPError as e:
            raise FeedUnavailableError(f"{self.name} request failed: {e}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_seconds = None
            raise FeedThrottledError(self.name, retry_seconds)

        if response.status_code != 200:
            raise FeedUnavailableError(f"{self.name} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise FeedUnavailableError(f"{self.name} returned invalid JSON: {e}")

    @staticmethod
    def _positive_decimal(value, feed: str, asset: str) -> Decimal:
        try:
            price = Decimal(str(value))
        except (ArithmeticError, ValueError, TypeError):
            raise FeedUnavailableError(f"{feed} returned malformed price for {asset}: {value!r}")
        if not price.is_finite() or price <= 0:
            raise FeedUnavailableError(f"{feed} returned non-positive price for {asset}: {value!r}")
        return price
