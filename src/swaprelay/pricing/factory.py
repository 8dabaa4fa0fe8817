"""Factory for building the price oracle from settings."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from swaprelay.config import Settings, get_settings
from swaprelay.pricing.auction import DutchAuctionPricer
from swaprelay.pricing.base import PriceFeed
from swaprelay.pricing.cache import RateCache
from swaprelay.pricing.limiter import RateLimiter
from swaprelay.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)


def create_feed(
    name: str,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[PriceFeed]:
    """Create a price feed by name ("coingecko" or "binance")."""
    settings = settings or get_settings()

    if name == "coingecko":
        from swaprelay.pricing.coingecko import CoinGeckoFeed
        return CoinGeckoFeed(
            base_url=settings.coingecko_api_url,
            api_key=settings.coingecko_api_key,
            timeout=settings.feed_timeout_seconds,
            client=client,
        )
    if name == "binance":
        from swaprelay.pricing.binance import BinanceFeed
        return BinanceFeed(
            base_url=settings.binance_api_url,
            timeout=settings.feed_timeout_seconds,
            client=client,
        )

    logger.warning(f"Unknown price feed {name!r} - skipped")
    return None


def create_price_oracle(
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
    monotonic: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PriceOracle:
    """Create the oracle with feeds in the configured priority order."""
    settings = settings or get_settings()
    feeds = [
        feed
        for feed in (create_feed(name, settings, client) for name in settings.feed_names)
        if feed is not None
    ]
    if not feeds:
        logger.warning("No price feeds configured - every quote will use fallback prices")

    return PriceOracle(
        feeds=feeds,
        cache=RateCache(ttl_seconds=settings.rate_cache_ttl_seconds, clock=monotonic),
        limiter=RateLimiter(
            min_interval=settings.feed_min_interval_seconds,
            backoff_base=settings.retry_base_delay,
            backoff_max=settings.feed_backoff_max_seconds,
            clock=monotonic,
            sleep=sleep,
        ),
        fallback_prices=settings.fallback_usd_prices,
        fallback_ttl_seconds=settings.fallback_ttl_seconds,
        max_attempts=settings.feed_max_attempts,
        fee_rate_bps=settings.fee_rate_bps,
        clock=clock,
    )


def create_auction_pricer(
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> DutchAuctionPricer:
    settings = settings or get_settings()
    return DutchAuctionPricer(
        decay_seconds=settings.auction_decay_seconds,
        max_discount_bps=settings.auction_max_discount_bps,
        clock=clock,
    )
