"""Pytest configuration and fixtures."""

import asyncio
import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"

from swaprelay.adapters.simulated import SimulatedChainAdapter
from swaprelay.chains import CHAINS
from swaprelay.config import Settings
from swaprelay.ledger.models import Base
from swaprelay.ledger.registry import SwapRegistry
from swaprelay.monitor.normalize import normalize
from swaprelay.pricing.auction import DutchAuctionPricer
from swaprelay.pricing.base import FeedQuote, FeedUnavailableError, PriceFeed
from swaprelay.pricing.cache import RateCache
from swaprelay.pricing.limiter import RateLimiter
from swaprelay.pricing.oracle import PriceOracle
from swaprelay.relayer.orchestrator import RelayerOrchestrator
from swaprelay.services.bridge_service import BridgeService

NOW = 1_700_000_000

ETH_ADDRESS = "0x" + "a" * 40
TRON_ADDRESS = "T" + "A" * 33
NEAR_ADDRESS = "alice.near"

# USD prices served by the static feed
USD_PRICES = {"ETH": Decimal("3000"), "TRX": Decimal("0.25"), "NEAR": Decimal("5")}


class FakeClock:
    """Controllable unix clock."""

    def __init__(self, start: float = NOW):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def fast_sleep(seconds: float) -> None:
    """Yield to the loop without waiting."""
    await asyncio.sleep(0)


class StaticFeed(PriceFeed):
    """Feed serving fixed prices, optionally failing."""

    def __init__(self, prices=None, name: str = "static", error: Exception = None):
        self.prices = dict(prices or USD_PRICES)
        self._name = name
        self.error = error
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def fetch_usd_prices(self, assets):
        self.calls += 1
        if self.error is not None:
            raise self.error
        missing = [a for a in assets if a not in self.prices]
        if missing:
            raise FeedUnavailableError(f"no price for {missing}")
        return {a: FeedQuote(a, self.prices[a], self._name, 0.0) for a in assets}


def make_settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        dry_run=True,
        retry_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        adapter_timeout_seconds=5,
        fee_rate_bps=30,
        destination_timelock_margin_seconds=1800,
        max_refund_attempts=3,
        max_withdraw_attempts=3,
        worker_count=2,
        fallback_usd_prices={"ETH": "3900", "TRX": "0.27", "NEAR": "7.20"},
    )
    values.update(overrides)
    return Settings(**values)


def events_of(raw):
    """Normalize a raw event emitted by a simulated adapter."""
    return normalize(raw)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    yield async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def registry(session_factory, clock) -> SwapRegistry:
    return SwapRegistry(session_factory, clock=clock)


@pytest.fixture
def adapters(clock) -> dict[str, SimulatedChainAdapter]:
    return {name: SimulatedChainAdapter(name, clock=clock) for name in CHAINS}


@pytest.fixture
def feed() -> StaticFeed:
    return StaticFeed()


@pytest.fixture
def oracle(feed, clock, settings) -> PriceOracle:
    return PriceOracle(
        [feed],
        cache=RateCache(ttl_seconds=30, clock=clock),
        limiter=RateLimiter(min_interval=0, clock=clock, sleep=fast_sleep),
        fallback_prices=settings.fallback_usd_prices,
        fee_rate_bps=settings.fee_rate_bps,
        clock=clock,
    )


@pytest.fixture
def auction(clock) -> DutchAuctionPricer:
    return DutchAuctionPricer(decay_seconds=300, max_discount_bps=100, clock=clock)


@pytest.fixture
def orchestrator(registry, adapters, oracle, auction, settings, clock) -> RelayerOrchestrator:
    return RelayerOrchestrator(
        registry,
        adapters,
        oracle,
        auction,
        settings=settings,
        clock=clock,
        sleep=fast_sleep,
    )


@pytest.fixture
def service(registry, oracle, auction, orchestrator, settings, clock) -> BridgeService:
    return BridgeService(
        registry, oracle, auction, orchestrator=orchestrator, settings=settings, clock=clock
    )
