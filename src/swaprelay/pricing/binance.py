"""Binance ticker feed, used as backup. USDT pairs stand in for USD."""

import json
import logging
import time
from typing import Optional

import httpx

from swaprelay.chains import chain_for_asset
from swaprelay.pricing.base import FeedQuote, FeedUnavailableError, HttpPriceFeed

logger = logging.getLogger(__name__)

BINANCE_API = "https://api.binance.com/api/v3"


class BinanceFeed(HttpPriceFeed):
    """Backup feed reading /ticker/price for the XXXUSDT symbols."""

    def __init__(
        self,
        base_url: str = BINANCE_API,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, timeout=timeout, client=client)

    @property
    def name(self) -> str:
        return "binance"

    async def fetch_usd_prices(self, assets: list[str]) -> dict[str, FeedQuote]:
        symbols: dict[str, str] = {}
        for asset in assets:
            chain = chain_for_asset(asset)
            if chain is None:
                raise FeedUnavailableError(f"binance has no symbol for {asset}")
            symbols[chain.binance_symbol] = asset

        data = await self._get_json(
            "/ticker/price",
            params={"symbols": json.dumps(sorted(symbols), separators=(",", ":"))},
        )
        if not isinstance(data, list):
            raise FeedUnavailableError("binance returned unexpected payload")

        now = time.time()
        quotes = {}
        for entry in data:
            asset = symbols.get(entry.get("symbol")) if isinstance(entry, dict) else None
            if asset is None:
                continue
            quotes[asset] = FeedQuote(
                asset=asset,
                usd_price=self._positive_decimal(entry.get("price"), self.name, asset),
                source=self.name,
                timestamp=now,
            )

        missing = set(symbols.values()) - set(quotes)
        if missing:
            raise FeedUnavailableError(f"binance returned no price for {sorted(missing)}")
        return quotes
