"""CoinGecko simple-price feed."""

import logging
import time
from typing import Optional

import httpx

from swaprelay.chains import chain_for_asset
from swaprelay.pricing.base import FeedQuote, FeedUnavailableError, HttpPriceFeed

logger = logging.getLogger(__name__)

COINGECKO_API = "https://api.coingecko.com/api/v3"


class CoinGeckoFeed(HttpPriceFeed):
    """Primary feed: one /simple/price call for all requested assets."""

    def __init__(
        self,
        base_url: str = COINGECKO_API,
        api_key: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, timeout=timeout, client=client)
        self.api_key = api_key

    @property
    def name(self) -> str:
        return "coingecko"

    async def fetch_usd_prices(self, assets: list[str]) -> dict[str, FeedQuote]:
        ids: dict[str, str] = {}
        for asset in assets:
            chain = chain_for_asset(asset)
            if chain is None:
                raise FeedUnavailableError(f"coingecko has no id for {asset}")
            ids[asset] = chain.coingecko_id

        headers = {"x-cg-pro-api-key": self.api_key} if self.api_key else None
        data = await self._get_json(
            "/simple/price",
            params={"ids": ",".join(sorted(set(ids.values()))), "vs_currencies": "usd"},
            headers=headers,
        )
        if not isinstance(data, dict):
            raise FeedUnavailableError("coingecko returned unexpected payload")

        now = time.time()
        quotes = {}
        for asset, coin_id in ids.items():
            entry = data.get(coin_id)
            usd = entry.get("usd") if isinstance(entry, dict) else None
            if usd is None:
                raise FeedUnavailableError(f"coingecko returned no price for {asset}")
            quotes[asset] = FeedQuote(
                asset=asset,
                usd_price=self._positive_decimal(usd, self.name, asset),
                source=self.name,
                timestamp=now,
            )
        logger.debug(f"coingecko returned prices for {sorted(quotes)}")
        return quotes
