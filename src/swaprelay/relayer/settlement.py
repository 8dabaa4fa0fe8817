"""Outbound escrow operations.

Wraps the adapter calls the relayer makes on its own behalf (counter-escrow
creation, withdrawals and refunds) in bounded retries, and records each
confirmed result in the registry.
"""

import asyncio
import logging
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from swaprelay.adapters.base import (
    AlreadyRefunded,
    AlreadyWithdrawn,
    ChainAdapter,
    EscrowNotFound,
    EscrowState,
    TimelockNotExpired,
)
from swaprelay.chains import require_chain
from swaprelay.errors import (
    ConsistencyViolation,
    IrrecoverableLedgerError,
    TransientInfrastructureError,
)
from swaprelay.ledger.models import EscrowSide, EscrowStatus
from swaprelay.ledger.registry import SwapRegistry
from swaprelay.ledger.snapshots import EscrowSnapshot, SwapSnapshot
from swaprelay.notifications import alerts
from swaprelay.notifications.alerts import OperatorAlerter
from swaprelay.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    WITHDRAWN = "withdrawn"
    NOT_YET = "not_yet"
    FAILED = "failed"


def split_amount(total: Decimal, max_chunk: Optional[Decimal], decimals: int) -> list[Decimal]:
    """Split an amount into chunks no larger than max_chunk.

    Chunks are truncated to the chain's precision and always sum to total.
    """
    total = Decimal(total)
    if total <= 0:
        return []
    if max_chunk is None or max_chunk <= 0 or total <= max_chunk:
        return [total]

    quantum = Decimal(1).scaleb(-decimals)
    chunk = Decimal(max_chunk).quantize(quantum, rounding=ROUND_DOWN)
    if chunk <= 0:
        return [total]

    chunks = []
    remaining = total
    while remaining > chunk:
        chunks.append(chunk)
        remaining -= chunk
    chunks.append(remaining)
    return chunks


class LegSettler:
    """Creates, withdraws and refunds escrows with retries."""

    def __init__(
        self,
        adapters: dict[str, ChainAdapter],
        registry: SwapRegistry,
        alerter: OperatorAlerter,
        policy: Optional[RetryPolicy] = None,
        max_escrow_amounts: Optional[dict[str, Decimal]] = None,
        max_refund_attempts: int = 5,
        max_withdraw_attempts: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = adapters
        self.registry = registry
        self.alerter = alerter
        self.policy = policy or RetryPolicy()
        self.max_escrow_amounts = {
            k.lower(): Decimal(v) for k, v in (max_escrow_amounts or {}).items()
        }
        self.max_refund_attempts = max_refund_attempts
        self.max_withdraw_attempts = max_withdraw_attempts
        self._sleep = sleep

    def adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise IrrecoverableLedgerError(f"No adapter configured for chain {chain}")
        return adapter

    async def _retry(self, operation, description: str):
        return await retry_async(operation, self.policy, description, sleep=self._sleep)

    # ======================
    # Counter-escrows
    # ======================

    async def create_counter_escrows(self, swap: SwapSnapshot) -> SwapSnapshot:
        """Lock the counter amount on the destination chain.

        Amounts above the chain's escrow cap are split into several escrows
        sharing the swap's hashlock. Coverage already escrowed is not
        created again, and a creation that landed on chain without an answer
        is adopted rather than repeated.

        Raises:
            TransientInfrastructureError: Retries exhausted
            IrrecoverableLedgerError: The ledger rejected an escrow
        """
        chain = swap.destination_chain
        adapter = self.adapter(chain)
        config = require_chain(chain)
        remaining = swap.counter_amount - swap.destination_coverage
        chunks = split_amount(remaining, self.max_escrow_amounts.get(chain), config.decimals)
        if len(chunks) > 1:
            logger.info(f"Swap {swap.id}: splitting {remaining} {config.asset} into {len(chunks)} escrows")

        known = {e.escrow_reference for e in swap.destination_escrows}
        for amount in chunks:
            escrow_ref = await self._create_escrow(adapter, swap, amount, known)
            known.add(escrow_ref)
            swap = await self.registry.add_escrow(
                swap.id,
                chain,
                EscrowSide.DESTINATION,
                escrow_ref,
                amount,
                swap.destination_timelock,
                owned=True,
            )
        return swap

    async def _create_escrow(
        self, adapter: ChainAdapter, swap: SwapSnapshot, amount: Decimal, known: set[str]
    ) -> str:
        description = f"create {adapter.chain} escrow for swap {swap.id}"
        attempted = False

        async def attempt() -> str:
            nonlocal attempted
            if attempted:
                landed = await self._find_landed_escrow(adapter, swap, amount, known)
                if landed is not None:
                    return landed
            attempted = True
            return await adapter.create_escrow(
                swap.hashlock, swap.destination_timelock, swap.beneficiary_address, amount
            )

        try:
            return await self._retry(attempt, description)
        except TransientInfrastructureError:
            landed = await self._find_landed_escrow(adapter, swap, amount, known)
            if landed is None:
                raise
            return landed

    async def _find_landed_escrow(
        self, adapter: ChainAdapter, swap: SwapSnapshot, amount: Decimal, known: set[str]
    ) -> Optional[str]:
        """Reference of an untracked open escrow matching this creation, if any."""
        for info in await adapter.find_escrows(swap.hashlock):
            if (
                info.escrow_ref not in known
                and info.status == EscrowState.OPEN
                and info.amount == amount
                and info.timelock == swap.destination_timelock
                and info.beneficiary == swap.beneficiary_address
            ):
                logger.warning(
                    f"Swap {swap.id}: adopting {adapter.chain} escrow {info.escrow_ref} "
                    f"created by an unanswered attempt"
                )
                return info.escrow_ref
        return None

    # ======================
    # Withdrawals
    # ======================

    async def withdraw(self, escrow: EscrowSnapshot, secret: str) -> bool:
        """Withdraw one escrow with the revealed secret.

        Failed rounds are counted on the escrow and the operator is alerted
        on the first one only. After max_withdraw_attempts rounds the escrow
        is left for the expiry sweep to refund.

        Returns:
            True once the escrow is closed as withdrawn (including by someone
            else), False if retries ran out or the ledger refused
        """
        label = f"{escrow.chain}:{escrow.escrow_reference}"
        if escrow.withdraw_attempts >= self.max_withdraw_attempts:
            logger.debug(f"Withdrawal of {label} given up after {escrow.withdraw_attempts} attempts")
            return False

        adapter = self.adapter(escrow.chain)
        try:
            tx_ref = await self._retry(
                lambda: adapter.withdraw(escrow.escrow_reference, secret),
                f"withdraw {label}",
            )
        except AlreadyWithdrawn:
            logger.info(f"Escrow {label} was already withdrawn")
            tx_ref = None
        except AlreadyRefunded:
            logger.error(f"Escrow {label} was refunded before withdrawal")
            await self.registry.mark_escrow(
                escrow.chain, escrow.escrow_reference, EscrowStatus.REFUNDED
            )
            return False
        except (TransientInfrastructureError, IrrecoverableLedgerError, ConsistencyViolation) as e:
            updated = await self.registry.bump_withdraw_attempts(escrow.id)
            logger.warning(
                f"Withdrawal of {label} failed ({updated.withdraw_attempts}/{self.max_withdraw_attempts}): {e}"
            )
            if updated.withdraw_attempts == 1:
                await self.alerter.alert(
                    alerts.WITHDRAW_FAILED,
                    f"Withdrawal of {label} failed: {e}",
                    swap_id=escrow.swap_id,
                    chain=escrow.chain,
                )
            return False

        await self.registry.mark_escrow(
            escrow.chain, escrow.escrow_reference, EscrowStatus.WITHDRAWN, tx_ref
        )
        return True

    # ======================
    # Refunds
    # ======================

    async def refund(self, escrow: EscrowSnapshot, now: int) -> RefundOutcome:
        """Refund one open escrow whose timelock has passed.

        Failed attempts are counted on the escrow. Once the count reaches
        max_refund_attempts the operator is alerted a single time and the
        escrow is no longer retried.
        """
        if escrow.alerted:
            return RefundOutcome.FAILED
        if now < escrow.timelock:
            return RefundOutcome.NOT_YET

        adapter = self.adapter(escrow.chain)
        label = f"{escrow.chain}:{escrow.escrow_reference}"
        try:
            tx_ref = await self._retry(
                lambda: adapter.refund(escrow.escrow_reference), f"refund {label}"
            )
        except TimelockNotExpired:
            logger.info(f"Escrow {label} not refundable yet")
            return RefundOutcome.NOT_YET
        except AlreadyRefunded:
            await self.registry.mark_escrow(escrow.chain, escrow.escrow_reference, EscrowStatus.REFUNDED)
            return RefundOutcome.REFUNDED
        except AlreadyWithdrawn:
            logger.warning(f"Escrow {label} was withdrawn before it could be refunded")
            await self.registry.mark_escrow(escrow.chain, escrow.escrow_reference, EscrowStatus.WITHDRAWN)
            return RefundOutcome.WITHDRAWN
        except (TransientInfrastructureError, IrrecoverableLedgerError) as e:
            if isinstance(e, EscrowNotFound):
                logger.error(f"Escrow {label} not found on chain: {e}")
            updated = await self.registry.bump_refund_attempts(escrow.id)
            logger.warning(
                f"Refund of {label} failed ({updated.refund_attempts}/{self.max_refund_attempts}): {e}"
            )
            if updated.refund_attempts >= self.max_refund_attempts:
                await self.alerter.alert(
                    alerts.REFUND_EXHAUSTED,
                    f"Refund of {label} failed {updated.refund_attempts} times: {e}",
                    swap_id=escrow.swap_id,
                    chain=escrow.chain,
                )
                await self.registry.mark_alerted(escrow.id)
            return RefundOutcome.FAILED

        await self.registry.mark_escrow(
            escrow.chain, escrow.escrow_reference, EscrowStatus.REFUNDED, tx_ref
        )
        logger.info(f"Escrow {label} refunded in {tx_ref}")
        return RefundOutcome.REFUNDED
