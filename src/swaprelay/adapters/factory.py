"""Factory for creating chain adapters.

Creates gateway adapters when not in dry-run mode, otherwise simulated
in-memory ledgers.
"""

import logging
import time
from typing import Callable, Optional

from swaprelay.adapters.base import ChainAdapter
from swaprelay.chains import CHAINS
from swaprelay.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_adapter(
    chain: str,
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> ChainAdapter:
    """Create the adapter for one chain."""
    settings = settings or get_settings()

    if not settings.dry_run:
        rpc_url = settings.get_rpc_url(chain)
        if rpc_url:
            from swaprelay.adapters.jsonrpc import JsonRpcChainAdapter
            return JsonRpcChainAdapter(
                chain=chain,
                rpc_url=rpc_url,
                contract=settings.get_escrow_contract(chain),
                api_key=settings.get_api_key(chain),
                timeout=settings.adapter_timeout_seconds,
            )
        logger.warning(f"No gateway URL for {chain} - using simulated ledger")

    from swaprelay.adapters.simulated import SimulatedChainAdapter
    return SimulatedChainAdapter(chain, clock=clock)


def create_adapters(
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> dict[str, ChainAdapter]:
    """Create one adapter per supported chain."""
    settings = settings or get_settings()
    adapters = {name: create_adapter(name, settings, clock) for name in CHAINS}
    mode = "simulated" if settings.dry_run else "gateway"
    logger.info(f"Chain adapters ready ({mode}): {', '.join(adapters)}")
    return adapters
