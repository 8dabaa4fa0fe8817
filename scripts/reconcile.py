#!/usr/bin/env python3
"""Escrow Reconciliation Script.

Compares every open escrow in the registry with its on-chain state.
Useful after an outage, when withdrawal or refund events may have been
missed by the monitor.

Usage:
    python scripts/reconcile.py [--chain tron] [--fix]

Options:
    --chain  Only reconcile one chain (default: all)
    --fix    Mark escrows closed on chain as closed in the registry
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from swaprelay.adapters.base import EscrowNotFound, EscrowState
from swaprelay.adapters.factory import create_adapters
from swaprelay.config import get_settings
from swaprelay.errors import TransientInfrastructureError
from swaprelay.ledger.database import close_db, get_session_factory, init_db
from swaprelay.ledger.models import EscrowStatus, SwapStatus
from swaprelay.ledger.registry import SwapRegistry

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Statuses whose escrows can still be open
OPEN_STATUSES = [SwapStatus.CREATED, SwapStatus.LOCKED, SwapStatus.EXPIRED, SwapStatus.FAILED]


async def reconcile(chain_filter: str = None, fix: bool = False) -> int:
    """Check open escrows against the chains.

    Returns:
        Number of mismatches found
    """
    settings = get_settings()
    if settings.dry_run:
        logger.warning("DRY_RUN is set: simulated ledgers start empty, every escrow will be missing")

    await init_db()
    registry = SwapRegistry(get_session_factory())
    adapters = create_adapters(settings)
    mismatches = 0

    try:
        for status in OPEN_STATUSES:
            for swap in await registry.list_swaps(status=status, limit=10000):
                for escrow in swap.open_escrows:
                    if chain_filter and escrow.chain != chain_filter:
                        continue
                    adapter = adapters[escrow.chain]
                    label = f"{escrow.chain}:{escrow.escrow_reference}"
                    try:
                        info = await adapter.get_escrow(escrow.escrow_reference)
                    except EscrowNotFound:
                        logger.error(f"Swap {swap.id}: escrow {label} not found on chain")
                        mismatches += 1
                        continue
                    except TransientInfrastructureError as e:
                        logger.warning(f"Swap {swap.id}: could not query {label}: {e}")
                        continue

                    if info.amount != escrow.amount or info.hashlock != swap.hashlock:
                        logger.error(
                            f"Swap {swap.id}: escrow {label} holds {info.amount} under "
                            f"{info.hashlock[:12]}..., registry expects {escrow.amount}"
                        )
                        mismatches += 1

                    if info.status == EscrowState.OPEN:
                        continue

                    mismatches += 1
                    logger.warning(
                        f"Swap {swap.id} ({swap.status.value}): escrow {label} is "
                        f"{info.status.value} on chain but open in the registry"
                    )
                    if fix:
                        await registry.mark_escrow(
                            escrow.chain, escrow.escrow_reference, EscrowStatus(info.status.value)
                        )
                        logger.info(f"Marked {label} {info.status.value}")
    finally:
        for adapter in adapters.values():
            await adapter.close()
        await close_db()

    if mismatches:
        logger.warning(f"Reconciliation found {mismatches} mismatch(es)")
    else:
        logger.info("Registry matches on-chain state")
    return mismatches


def main():
    parser = argparse.ArgumentParser(description="Reconcile registry escrows with the chains")
    parser.add_argument("--chain", type=str, help="Only reconcile this chain")
    parser.add_argument("--fix", action="store_true", help="Close escrows closed on chain")
    args = parser.parse_args()

    mismatches = asyncio.run(reconcile(args.chain, args.fix))
    sys.exit(1 if mismatches and not args.fix else 0)


if __name__ == "__main__":
    main()
