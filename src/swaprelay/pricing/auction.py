"""Dutch auction pricing for resolver incentives.

The amount offered on the destination leg starts at the live quote and
decays linearly to a floor. Resolvers fill once the price reaches a level
that is profitable for them.
"""

import time
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional

BPS = Decimal("10000")


def current_price(
    start_price: Decimal,
    floor_price: Decimal,
    elapsed: float,
    decay_duration: float,
) -> Decimal:
    """Linearly interpolate from start_price to floor_price.

    Returns start_price at elapsed <= 0 and floor_price at elapsed >=
    decay_duration. Never increases with elapsed time.
    """
    start_price = Decimal(start_price)
    floor_price = Decimal(floor_price)
    if floor_price > start_price:
        raise ValueError("Floor price must not exceed start price")
    if decay_duration <= 0 or elapsed >= decay_duration:
        return floor_price
    if elapsed <= 0:
        return start_price
    fraction = Decimal(str(elapsed)) / Decimal(str(decay_duration))
    return start_price - (start_price - floor_price) * fraction


class DutchAuctionPricer:
    """Auction window parameters plus quantized price lookups."""

    def __init__(
        self,
        decay_seconds: float = 300,
        max_discount_bps: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        if not 0 <= max_discount_bps < 10000:
            raise ValueError("max_discount_bps must be within [0, 10000)")
        self.decay_seconds = decay_seconds
        self.max_discount_bps = max_discount_bps
        self._clock = clock

    def start_price_for(self, quote: Decimal, decimals: int) -> Decimal:
        """Auction opening amount: the live quote truncated to chain precision."""
        quantum = Decimal(1).scaleb(-decimals)
        return Decimal(quote).quantize(quantum, rounding=ROUND_DOWN)

    def floor_price_for(self, start_price: Decimal, decimals: int) -> Decimal:
        """Lowest amount the auction may reach for a given start."""
        quantum = Decimal(1).scaleb(-decimals)
        floor = Decimal(start_price) * (BPS - Decimal(self.max_discount_bps)) / BPS
        return floor.quantize(quantum, rounding=ROUND_DOWN)

    def price_at(
        self,
        start_price: Decimal,
        floor_price: Decimal,
        started_at: float,
        decimals: int,
        now: Optional[float] = None,
    ) -> Decimal:
        """Auction price at `now`, truncated to the chain's precision."""
        if now is None:
            now = self._clock()
        price = current_price(start_price, floor_price, now - started_at, self.decay_seconds)
        quantum = Decimal(1).scaleb(-decimals)
        return max(price.quantize(quantum, rounding=ROUND_DOWN), Decimal(floor_price))
