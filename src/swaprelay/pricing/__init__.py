"""Pricing: feeds, rate cache, limiter, oracle and Dutch auction."""

from swaprelay.pricing.auction import DutchAuctionPricer, current_price
from swaprelay.pricing.base import (
    FALLBACK_SOURCE,
    CachedRate,
    Conversion,
    FeeBreakdown,
    FeedQuote,
    FeedThrottledError,
    FeedUnavailableError,
    PriceFeed,
    PriceQuote,
)
from swaprelay.pricing.cache import RateCache
from swaprelay.pricing.limiter import RateLimiter
from swaprelay.pricing.oracle import PriceOracle

__all__ = [
    "FALLBACK_SOURCE",
    "CachedRate",
    "Conversion",
    "DutchAuctionPricer",
    "FeeBreakdown",
    "FeedQuote",
    "FeedThrottledError",
    "FeedUnavailableError",
    "PriceFeed",
    "PriceOracle",
    "PriceQuote",
    "RateCache",
    "RateLimiter",
    "current_price",
]
