"""Price oracle sizing counter-legs.

Rates are cross rates built from USD prices: rate(A, B) = usd(A) / usd(B).
Feeds are queried in priority order through the rate limiter. When every feed
fails the oracle answers from the configured fallback table and tags the
result "fallback" instead of raising.
"""

import logging
import time
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, localcontext
from typing import Callable, Optional

from swaprelay.chains import CHAINS, chain_for_asset
from swaprelay.errors import TransientInfrastructureError, ValidationError
from swaprelay.pricing.base import (
    FALLBACK_SOURCE,
    CachedRate,
    Conversion,
    FeeBreakdown,
    FeedError,
    FeedThrottledError,
    PriceFeed,
    PriceQuote,
)
from swaprelay.pricing.cache import RateCache
from swaprelay.pricing.limiter import RateLimiter

logger = logging.getLogger(__name__)

# Enough digits for 24-decimal NEAR amounts times any realistic rate
PRECISION = 60
DEFAULT_FEE_DECIMALS = 18
BPS = Decimal("10000")


def resolve_asset(name: str) -> str:
    """Accept a chain name ("near") or an asset symbol ("NEAR")."""
    if not name:
        raise ValidationError("Asset is required")
    chain = CHAINS.get(name.lower())
    if chain is not None:
        return chain.asset
    asset = name.upper()
    if chain_for_asset(asset) is None:
        raise ValidationError(f"Unsupported asset: {name!r}")
    return asset


def asset_decimals(asset: str) -> int:
    chain = chain_for_asset(asset)
    return chain.decimals if chain else DEFAULT_FEE_DECIMALS


class PriceOracle:
    """Fetches, caches and applies cross-asset rates."""

    def __init__(
        self,
        feeds: list[PriceFeed],
        cache: Optional[RateCache] = None,
        limiter: Optional[RateLimiter] = None,
        fallback_prices: Optional[dict[str, Decimal]] = None,
        fallback_ttl_seconds: float = 5.0,
        max_attempts: int = 3,
        fee_rate_bps: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.feeds = list(feeds)
        self.cache = cache or RateCache()
        self.limiter = limiter or RateLimiter()
        self.fallback_prices = {k.upper(): Decimal(v) for k, v in (fallback_prices or {}).items()}
        self.fallback_ttl_seconds = fallback_ttl_seconds
        self.max_attempts = max(1, max_attempts)
        self.fee_rate_bps = fee_rate_bps
        self._clock = clock

    async def get_rate(self, from_asset: str, to_asset: str) -> CachedRate:
        """Get the rate converting from_asset into to_asset.

        Served from cache while fresh. Otherwise the feeds are queried and both
        the pair and its inverse are cached.
        """
        from_asset = resolve_asset(from_asset)
        to_asset = resolve_asset(to_asset)
        now = self._clock()

        if from_asset == to_asset:
            return CachedRate(from_asset, to_asset, Decimal("1"), "identity", now)

        cached = self.cache.get(from_asset, to_asset)
        if cached is not None:
            return cached

        prices, source = await self._fetch_usd_prices([from_asset, to_asset])
        with localcontext() as ctx:
            ctx.prec = PRECISION
            rate = prices[from_asset] / prices[to_asset]
            inverse = prices[to_asset] / prices[from_asset]

        ttl = self.fallback_ttl_seconds if source == FALLBACK_SOURCE else None
        result = CachedRate(from_asset, to_asset, rate, source, now)
        self.cache.put(result, ttl)
        self.cache.put(CachedRate(to_asset, from_asset, inverse, source, now), ttl)
        logger.debug(f"Rate {from_asset}/{to_asset} = {rate:.10f} ({source})")
        return result

    async def _fetch_usd_prices(self, assets: list[str]) -> tuple[dict[str, Decimal], str]:
        """Query feeds in priority order, falling back to the static table."""
        for feed in self.feeds:
            for attempt in range(self.max_attempts):
                await self.limiter.acquire(feed.name)
                try:
                    quotes = await feed.fetch_usd_prices(assets)
                except FeedThrottledError as e:
                    logger.warning(f"{feed.name} throttled (attempt {attempt + 1}/{self.max_attempts})")
                    self.limiter.penalize(feed.name, e.retry_after)
                    continue
                except FeedError as e:
                    logger.warning(
                        f"{feed.name} failed (attempt {attempt + 1}/{self.max_attempts}): {e}"
                    )
                    self.limiter.penalize(feed.name)
                    continue

                self.limiter.succeeded(feed.name)
                return {asset: quotes[asset].usd_price for asset in assets}, feed.name

        missing = [a for a in assets if a not in self.fallback_prices]
        if missing:
            raise TransientInfrastructureError(
                f"All price feeds failed and no fallback price for {missing}"
            )
        logger.error(f"All price feeds failed for {assets}; serving fallback prices")
        return {asset: self.fallback_prices[asset] for asset in assets}, FALLBACK_SOURCE

    async def convert(self, amount: Decimal, from_asset: str, to_asset: str) -> Conversion:
        """Convert an amount, truncating to the destination asset's precision."""
        amount = Decimal(amount)
        if amount < 0:
            raise ValidationError("Amount must not be negative")
        rate = await self.get_rate(from_asset, to_asset)
        quantum = Decimal(1).scaleb(-asset_decimals(rate.to_asset))
        with localcontext() as ctx:
            ctx.prec = PRECISION
            amount_out = (amount * rate.rate).quantize(quantum, rounding=ROUND_DOWN)
        return Conversion(
            from_asset=rate.from_asset,
            to_asset=rate.to_asset,
            amount_in=amount,
            amount_out=amount_out,
            rate=rate.rate,
            source=rate.source,
        )

    def calculate_fee(
        self,
        amount: Decimal,
        fee_rate_bps: Optional[int] = None,
        asset: Optional[str] = None,
    ) -> FeeBreakdown:
        """Deterministic bridge fee.

        Args:
            amount: Gross amount
            fee_rate_bps: Fee in basis points (defaults to the configured rate)
            asset: Asset of the amount; its decimals set the fee precision

        Returns:
            FeeBreakdown with fee rounded half-up and net = gross - fee
        """
        bps = self.fee_rate_bps if fee_rate_bps is None else fee_rate_bps
        if bps < 0 or bps > 10000:
            raise ValidationError(f"Fee rate out of range: {bps} bps")
        amount = Decimal(amount)
        decimals = asset_decimals(resolve_asset(asset)) if asset else DEFAULT_FEE_DECIMALS
        quantum = Decimal(1).scaleb(-decimals)
        with localcontext() as ctx:
            ctx.prec = PRECISION
            fee = (amount * Decimal(bps) / BPS).quantize(quantum, rounding=ROUND_HALF_UP)
            net = amount - fee
        return FeeBreakdown(gross=amount, fee=fee, net=net, fee_rate_bps=bps)

    async def quote(self, amount: Decimal, from_asset: str, to_asset: str) -> PriceQuote:
        """Convert and take the bridge fee from the converted amount."""
        conversion = await self.convert(amount, from_asset, to_asset)
        fee = self.calculate_fee(conversion.amount_out, asset=conversion.to_asset)
        return PriceQuote(conversion=conversion, fee=fee)

    def fallback_usd_value(self, amount: Decimal, asset: str) -> Optional[Decimal]:
        """USD value of an amount by the fallback table, if the asset is listed."""
        price = self.fallback_prices.get(resolve_asset(asset))
        if price is None:
            return None
        return Decimal(amount) * price
