"""Wiring of the relayer components.

Builds adapters, pricing, the registry, the event monitor, the
orchestrator and the bridge service from settings, and starts or stops
them as one unit.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from swaprelay.adapters.base import ChainAdapter
from swaprelay.adapters.factory import create_adapters
from swaprelay.config import Settings, get_settings
from swaprelay.ledger.database import get_session_factory
from swaprelay.ledger.registry import SwapRegistry
from swaprelay.monitor.monitor import CrossChainEventMonitor
from swaprelay.notifications.alerts import OperatorAlerter
from swaprelay.notifications.telegram import TelegramNotifier, close_bot
from swaprelay.pricing.auction import DutchAuctionPricer
from swaprelay.pricing.factory import create_auction_pricer, create_price_oracle
from swaprelay.pricing.oracle import PriceOracle
from swaprelay.relayer.orchestrator import RelayerOrchestrator
from swaprelay.services.bridge_service import BridgeService

logger = logging.getLogger(__name__)


@dataclass
class Relayer:
    """All long-lived components of one relayer process."""

    settings: Settings
    registry: SwapRegistry
    adapters: dict[str, ChainAdapter]
    oracle: PriceOracle
    auction: DutchAuctionPricer
    monitor: CrossChainEventMonitor
    orchestrator: RelayerOrchestrator
    service: BridgeService
    http_client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()
        for adapter in self.adapters.values():
            await adapter.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        await close_bot()


def build_relayer(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    adapters: Optional[dict[str, ChainAdapter]] = None,
    oracle: Optional[PriceOracle] = None,
    clock: Callable[[], float] = time.time,
) -> Relayer:
    """Assemble a relayer from settings.

    Args:
        settings: Application settings (defaults to the cached settings)
        session_factory: Database sessions (defaults to the configured database)
        adapters: Chain adapters (defaults to one per chain, per dry_run)
        oracle: Price oracle (defaults to the configured feeds)
        clock: Wall clock in unix seconds
    """
    settings = settings or get_settings()
    registry = SwapRegistry(session_factory or get_session_factory(), clock=clock)
    adapters = adapters if adapters is not None else create_adapters(settings, clock=clock)

    http_client = None
    if oracle is None:
        http_client = httpx.AsyncClient(timeout=settings.feed_timeout_seconds)
        oracle = create_price_oracle(settings, client=http_client, clock=clock)
    auction = create_auction_pricer(settings, clock=clock)

    notifier = TelegramNotifier(chat_ids=settings.alert_chats) if settings.telegram_bot_token else None
    alerter = OperatorAlerter(registry, notifier)

    monitor = CrossChainEventMonitor(
        adapters.values(),
        registry,
        backoff_base=settings.monitor_backoff_base,
        backoff_max=settings.monitor_backoff_max,
    )
    orchestrator = RelayerOrchestrator(
        registry,
        adapters,
        oracle,
        auction,
        monitor=monitor,
        alerter=alerter,
        settings=settings,
        clock=clock,
    )
    service = BridgeService(
        registry, oracle, auction, orchestrator=orchestrator, settings=settings, clock=clock
    )
    return Relayer(
        settings=settings,
        registry=registry,
        adapters=adapters,
        oracle=oracle,
        auction=auction,
        monitor=monitor,
        orchestrator=orchestrator,
        service=service,
        http_client=http_client,
    )
