"""Tests for the price oracle, feeds, cache, limiter and auction."""

import json
from decimal import Decimal

import httpx
import pytest

from conftest import FakeClock, StaticFeed, fast_sleep
from swaprelay.errors import TransientInfrastructureError, ValidationError
from swaprelay.pricing.auction import DutchAuctionPricer, current_price
from swaprelay.pricing.base import FeedThrottledError, FeedUnavailableError
from swaprelay.pricing.binance import BinanceFeed
from swaprelay.pricing.cache import RateCache
from swaprelay.pricing.coingecko import CoinGeckoFeed
from swaprelay.pricing.limiter import RateLimiter
from swaprelay.pricing.oracle import PriceOracle, resolve_asset


def make_oracle(feeds, clock=None, **kwargs) -> PriceOracle:
    clock = clock or FakeClock()
    return PriceOracle(
        feeds,
        cache=RateCache(ttl_seconds=30, clock=clock),
        limiter=RateLimiter(min_interval=0, clock=clock, sleep=fast_sleep),
        fallback_prices={"ETH": "3900", "TRX": "0.27", "NEAR": "7.20"},
        clock=clock,
        **kwargs,
    )


class TestPriceOracle:
    """Tests for rates, conversion and fees."""

    @pytest.mark.asyncio
    async def test_cross_rate(self):
        oracle = make_oracle([StaticFeed()])

        rate = await oracle.get_rate("ethereum", "tron")

        assert rate.rate == Decimal("12000")
        assert rate.source == "static"

    @pytest.mark.asyncio
    async def test_identity_rate(self):
        feed = StaticFeed()
        oracle = make_oracle([feed])

        rate = await oracle.get_rate("ETH", "ethereum")

        assert rate.rate == Decimal("1")
        assert feed.calls == 0

    @pytest.mark.asyncio
    async def test_rate_cached_until_stale(self):
        clock = FakeClock()
        feed = StaticFeed()
        oracle = make_oracle([feed], clock=clock)

        await oracle.get_rate("ETH", "TRX")
        await oracle.get_rate("ETH", "TRX")
        await oracle.get_rate("TRX", "ETH")  # inverse cached too
        assert feed.calls == 1

        clock.advance(31)
        await oracle.get_rate("ETH", "TRX")
        assert feed.calls == 2

    @pytest.mark.asyncio
    async def test_convert_truncates_to_destination_precision(self):
        oracle = make_oracle([StaticFeed({"ETH": Decimal("3000"), "TRX": Decimal("0.3")})])

        conversion = await oracle.convert(Decimal("0.0000001"), "ETH", "TRX")

        # 0.0000001 * 10000 = 0.001 TRX, exactly representable in 6 decimals
        assert conversion.amount_out == Decimal("0.001000")
        conversion = await oracle.convert(Decimal("1"), "TRX", "ETH")
        assert conversion.amount_out == Decimal("0.000100000000000000")

    @pytest.mark.asyncio
    async def test_round_trip_within_tolerance(self):
        oracle = make_oracle([StaticFeed()])
        amount = Decimal("1.234567")

        there = await oracle.convert(amount, "NEAR", "TRX")
        back = await oracle.convert(there.amount_out, "TRX", "NEAR")

        assert abs(back.amount_out - amount) <= Decimal("0.000001") * Decimal("20")

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self):
        oracle = make_oracle([StaticFeed()])

        with pytest.raises(ValidationError):
            await oracle.convert(Decimal("-1"), "ETH", "TRX")

    @pytest.mark.asyncio
    async def test_unknown_asset_rejected(self):
        oracle = make_oracle([StaticFeed()])

        with pytest.raises(ValidationError):
            await oracle.get_rate("DOGE", "ETH")

    def test_fee_is_deterministic_and_rounded_half_up(self):
        oracle = make_oracle([StaticFeed()], fee_rate_bps=30)

        fee = oracle.calculate_fee(Decimal("1"), asset="TRX")

        assert fee.fee == Decimal("0.003000")
        assert fee.net == Decimal("0.997000")
        assert oracle.calculate_fee(Decimal("0.000100"), asset="TRX").fee == Decimal("0.000000")
        assert oracle.calculate_fee(Decimal("0.000167"), asset="TRX").fee == Decimal("0.000001")

    def test_fee_rate_out_of_range(self):
        oracle = make_oracle([StaticFeed()])

        with pytest.raises(ValidationError):
            oracle.calculate_fee(Decimal("1"), fee_rate_bps=10001)

    @pytest.mark.asyncio
    async def test_quote_takes_fee_from_converted_amount(self):
        oracle = make_oracle([StaticFeed()], fee_rate_bps=30)

        quote = await oracle.quote(Decimal("1"), "ETH", "TRX")

        assert quote.conversion.amount_out == Decimal("12000")
        assert quote.fee.fee == Decimal("36")
        assert quote.net_amount == Decimal("11964")

    @pytest.mark.asyncio
    async def test_falls_through_to_next_feed(self):
        broken = StaticFeed(name="broken", error=FeedUnavailableError("down"))
        backup = StaticFeed(name="backup")
        oracle = make_oracle([broken, backup], max_attempts=2)

        rate = await oracle.get_rate("ETH", "NEAR")

        assert rate.source == "backup"
        assert broken.calls == 2
        assert oracle.limiter.current_backoff("broken") > 0

    @pytest.mark.asyncio
    async def test_all_feeds_failing_serves_fallback(self):
        feeds = [
            StaticFeed(name="a", error=FeedThrottledError("a", retry_after=2)),
            StaticFeed(name="b", error=FeedUnavailableError("b down")),
        ]
        oracle = make_oracle(feeds)

        conversion = await oracle.convert(Decimal("1"), "ETH", "TRX")

        assert conversion.source == "fallback"
        assert conversion.is_fallback
        assert conversion.amount_out == (Decimal("3900") / Decimal("0.27")).quantize(
            Decimal("0.000001"), rounding="ROUND_DOWN"
        )

    @pytest.mark.asyncio
    async def test_fallback_missing_asset_raises(self):
        oracle = make_oracle([StaticFeed(error=FeedUnavailableError("down"))])
        oracle.fallback_prices.pop("NEAR")

        with pytest.raises(TransientInfrastructureError):
            await oracle.get_rate("ETH", "NEAR")

    @pytest.mark.asyncio
    async def test_fallback_rate_expires_quickly(self):
        clock = FakeClock()
        feed = StaticFeed(error=FeedUnavailableError("down"))
        oracle = make_oracle([feed], clock=clock, max_attempts=1)

        assert (await oracle.get_rate("ETH", "TRX")).is_fallback
        feed.error = None
        clock.advance(6)

        assert (await oracle.get_rate("ETH", "TRX")).source == "static"

    def test_resolve_asset(self):
        assert resolve_asset("near") == "NEAR"
        assert resolve_asset("trx") == "TRX"
        with pytest.raises(ValidationError):
            resolve_asset("")


class TestHttpFeeds:
    """Tests for the CoinGecko and Binance feeds over a mock transport."""

    @pytest.mark.asyncio
    async def test_coingecko_parses_prices(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/simple/price")
            assert request.url.params["vs_currencies"] == "usd"
            return httpx.Response(200, json={"ethereum": {"usd": 3000.5}, "tron": {"usd": 0.25}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            feed = CoinGeckoFeed(base_url="https://cg.test/api/v3", client=client)
            quotes = await feed.fetch_usd_prices(["ETH", "TRX"])

        assert quotes["ETH"].usd_price == Decimal("3000.5")
        assert quotes["TRX"].usd_price == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_coingecko_throttled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "7"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            feed = CoinGeckoFeed(base_url="https://cg.test/api/v3", client=client)
            with pytest.raises(FeedThrottledError) as exc_info:
                await feed.fetch_usd_prices(["ETH"])

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_binance_parses_prices(self):
        def handler(request: httpx.Request) -> httpx.Response:
            symbols = json.loads(request.url.params["symbols"])
            assert symbols == ["NEARUSDT", "TRXUSDT"]
            return httpx.Response(
                200,
                json=[
                    {"symbol": "NEARUSDT", "price": "5.10"},
                    {"symbol": "TRXUSDT", "price": "0.2500"},
                ],
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            feed = BinanceFeed(base_url="https://bn.test/api/v3", client=client)
            quotes = await feed.fetch_usd_prices(["TRX", "NEAR"])

        assert quotes["NEAR"].usd_price == Decimal("5.10")

    @pytest.mark.asyncio
    async def test_binance_rejects_non_positive_price(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"symbol": "ETHUSDT", "price": "0"}])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            feed = BinanceFeed(base_url="https://bn.test/api/v3", client=client)
            with pytest.raises(FeedUnavailableError):
                await feed.fetch_usd_prices(["ETH"])

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            feed = BinanceFeed(base_url="https://bn.test/api/v3", client=client)
            with pytest.raises(FeedUnavailableError):
                await feed.fetch_usd_prices(["ETH"])

    @pytest.mark.asyncio
    async def test_oracle_falls_back_when_http_feeds_fail(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            oracle = make_oracle(
                [
                    CoinGeckoFeed(base_url="https://cg.test", client=client),
                    BinanceFeed(base_url="https://bn.test", client=client),
                ]
            )
            conversion = await oracle.convert(Decimal("2"), "NEAR", "ETH")

        assert conversion.source == "fallback"
        assert conversion.amount_out > 0


class TestRateCacheAndLimiter:
    """Tests for the injected cache and limiter."""

    def test_cache_never_serves_stale(self):
        from swaprelay.pricing.base import CachedRate

        clock = FakeClock()
        cache = RateCache(ttl_seconds=10, clock=clock)
        cache.put(CachedRate("ETH", "TRX", Decimal("1"), "x", 0))

        assert cache.get("ETH", "TRX") is not None
        clock.advance(10)
        assert cache.get("ETH", "TRX") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_limiter_spaces_calls(self):
        clock = FakeClock()
        waits = []

        async def sleep(seconds):
            waits.append(seconds)
            clock.advance(seconds)

        limiter = RateLimiter(min_interval=1.2, clock=clock, sleep=sleep)
        await limiter.acquire("coingecko")
        await limiter.acquire("coingecko")
        await limiter.acquire("binance")

        assert waits == [pytest.approx(1.2)]

    def test_penalty_doubles_and_caps(self):
        limiter = RateLimiter(backoff_base=1, backoff_max=5, clock=FakeClock())

        delays = [limiter.penalize("feed") for _ in range(5)]

        assert delays == [1, 2, 4, 5, 5]
        limiter.succeeded("feed")
        assert limiter.current_backoff("feed") == 0

    def test_penalty_honours_retry_after(self):
        limiter = RateLimiter(backoff_base=1, backoff_max=30, clock=FakeClock())

        assert limiter.penalize("feed", retry_after=12) == 12


class TestDutchAuction:
    """Tests for auction pricing."""

    def test_endpoints_and_midpoint(self):
        start, floor = Decimal("100"), Decimal("90")

        assert current_price(start, floor, 0, 300) == start
        assert current_price(start, floor, -5, 300) == start
        assert current_price(start, floor, 150, 300) == Decimal("95")
        assert current_price(start, floor, 300, 300) == floor
        assert current_price(start, floor, 10_000, 300) == floor

    def test_never_increases(self):
        start, floor = Decimal("12000"), Decimal("11880")
        prices = [current_price(start, floor, t, 300) for t in range(0, 400, 7)]

        assert all(a >= b for a, b in zip(prices, prices[1:]))

    def test_floor_above_start_rejected(self):
        with pytest.raises(ValueError):
            current_price(Decimal("1"), Decimal("2"), 0, 300)

    def test_pricer_quantizes_to_chain(self):
        clock = FakeClock(1000)
        pricer = DutchAuctionPricer(decay_seconds=300, max_discount_bps=100, clock=clock)

        start = pricer.start_price_for(Decimal("11964.1234567"), 6)
        floor = pricer.floor_price_for(start, 6)

        assert start == Decimal("11964.123456")
        assert floor == Decimal("11844.482221")
        assert pricer.price_at(start, floor, started_at=1000, decimals=6) == start
        clock.advance(300)
        assert pricer.price_at(start, floor, started_at=1000, decimals=6) == floor
