"""Relayer orchestrator.

Consumes canonical chain events and drives each swap through its state
machine:

    EscrowCreated (source)      -> price the counter leg, create the swap,
                                   lock the counter-escrow(s)
    EscrowCreated (destination) -> register a resolver escrow
    SecretRevealed              -> withdraw both legs, record fills
    EscrowCompleted / Refunded  -> close the leg

A periodic sweep expires swaps whose timelocks have passed and refunds
their open legs. Events for the same hashlock are handled by the same
worker, and the sweep takes the same per-hashlock lock.
"""

import asyncio
import logging
import time
import zlib
from collections import Counter
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from swaprelay.adapters.base import ChainAdapter
from swaprelay.chains import require_chain, validate_address
from swaprelay.config import Settings, get_settings
from swaprelay.errors import (
    ConsistencyViolation,
    DuplicateSwapError,
    IllegalTransitionError,
    IrrecoverableLedgerError,
    SwapNotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from swaprelay.ledger.models import EscrowSide, EscrowStatus, SwapStatus
from swaprelay.ledger.registry import NewSwap, SwapRegistry
from swaprelay.ledger.snapshots import IntentSnapshot, SwapSnapshot
from swaprelay.monitor.events import (
    EscrowCompleted,
    EscrowCreated,
    EscrowRefunded,
    MonitorEvent,
    SecretRevealed,
)
from swaprelay.monitor.monitor import CrossChainEventMonitor
from swaprelay.notifications import alerts
from swaprelay.notifications.alerts import OperatorAlerter
from swaprelay.pricing.auction import DutchAuctionPricer
from swaprelay.pricing.base import FALLBACK_SOURCE
from swaprelay.pricing.oracle import PriceOracle
from swaprelay.relayer.scheduler import Scheduler
from swaprelay.relayer.settlement import LegSettler, RefundOutcome
from swaprelay.utils.locks import SwapLockRegistry
from swaprelay.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RelayerOrchestrator:
    """Event-driven swap lifecycle driver."""

    def __init__(
        self,
        registry: SwapRegistry,
        adapters: dict[str, ChainAdapter],
        oracle: PriceOracle,
        auction: DutchAuctionPricer,
        monitor: Optional[CrossChainEventMonitor] = None,
        alerter: Optional[OperatorAlerter] = None,
        settings: Optional[Settings] = None,
        locks: Optional[SwapLockRegistry] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            registry: Durable swap registry
            adapters: Adapter per chain name
            oracle: Prices counter legs
            auction: Dutch auction pricer for intents
            monitor: Event source (optional when events are fed directly)
            alerter: Operator alerter (defaults to log + registry only)
            settings: Relayer settings
            locks: Per-hashlock locks shared with other callers
            clock: Wall clock in unix seconds (injectable for tests)
            sleep: Sleep function for retries and periodic tasks
        """
        self.settings = settings or get_settings()
        self.registry = registry
        self.adapters = adapters
        self.oracle = oracle
        self.auction = auction
        self.monitor = monitor
        self.alerter = alerter or OperatorAlerter(registry)
        self.locks = locks or SwapLockRegistry()
        self._clock = clock
        self._sleep = sleep
        self.settler = LegSettler(
            adapters,
            registry,
            self.alerter,
            policy=RetryPolicy.from_settings(self.settings),
            max_escrow_amounts=self.settings.max_escrow_amounts,
            max_refund_attempts=self.settings.max_refund_attempts,
            max_withdraw_attempts=self.settings.max_withdraw_attempts,
            sleep=sleep,
        )
        self.scheduler = Scheduler(sleep=sleep)
        self._queues: list[asyncio.Queue] = []
        self._tasks: list[asyncio.Task] = []
        self.handled: Counter[str] = Counter()

    def _now(self) -> int:
        return int(self._clock())

    # ======================
    # Lifecycle
    # ======================

    async def start(self) -> None:
        """Start workers, the dispatcher, periodic jobs and the monitor."""
        if self._tasks:
            return
        worker_count = max(1, self.settings.worker_count)
        self._queues = [asyncio.Queue() for _ in range(worker_count)]
        for index, queue in enumerate(self._queues):
            self._tasks.append(asyncio.create_task(self._worker(queue), name=f"relayer-worker-{index}"))

        self.scheduler.every("sweep", self.settings.sweep_interval_seconds, self.sweep)
        self.scheduler.every("purge", self.settings.purge_interval_seconds, self.purge)
        self.scheduler.start()

        if self.monitor is not None:
            self._tasks.append(asyncio.create_task(self._dispatch(), name="relayer-dispatcher"))
            await self.monitor.start()

        logger.info(
            f"Relayer started: {worker_count} worker(s), sweep every "
            f"{self.settings.sweep_interval_seconds}s, self_fill={self.settings.self_fill}"
        )

    async def stop(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        await self.scheduler.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queues = []
        logger.info("Relayer stopped")

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        if self.monitor is not None:
            await self.monitor.events.join()
        for queue in self._queues:
            await queue.join()

    def submit(self, event: MonitorEvent) -> None:
        """Route an event to the worker owning its hashlock."""
        if not self._queues:
            raise RuntimeError("Relayer is not started")
        index = zlib.crc32(event.partition_key.encode()) % len(self._queues)
        self._queues[index].put_nowait(event)

    async def _dispatch(self) -> None:
        while True:
            event = await self.monitor.events.get()
            try:
                self.submit(event)
            finally:
                self.monitor.events.task_done()

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                try:
                    await self.handle_event(event)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Failed handling {type(event).__name__} {event.chain}:{event.escrow_ref}: {e}",
                        exc_info=True,
                    )
                if self.monitor is not None:
                    await self.monitor.acknowledge(event)
            finally:
                queue.task_done()

    # ======================
    # Event handling
    # ======================

    async def handle_event(self, event: MonitorEvent) -> None:
        """Apply one canonical event."""
        self.handled[type(event).__name__] += 1

        if isinstance(event, EscrowCompleted):
            await self._on_escrow_closed(event, EscrowStatus.WITHDRAWN)
            return
        if isinstance(event, EscrowRefunded):
            await self._on_escrow_closed(event, EscrowStatus.REFUNDED)
            return

        async with self.locks.hold(event.hashlock, operation=type(event).__name__):
            if isinstance(event, EscrowCreated):
                await self._on_escrow_created(event)
            elif isinstance(event, SecretRevealed):
                await self._on_secret_revealed(event)

    async def _on_escrow_created(self, event: EscrowCreated) -> None:
        existing = await self.registry.get_by_hashlock(event.hashlock)
        if existing is None:
            try:
                await self._open_swap(event)
            except ValidationError as e:
                logger.warning(
                    f"Ignoring {event.chain} escrow {event.escrow_ref}: {e}"
                )
            return

        if existing.escrow(event.chain, event.escrow_ref) is not None:
            logger.debug(f"Escrow {event.chain}:{event.escrow_ref} already known")
            return

        if event.chain == existing.destination_chain:
            await self._register_resolver_escrow(existing, event)
        else:
            logger.warning(
                f"SECURITY: second {event.chain} escrow {event.escrow_ref} reuses hashlock "
                f"of swap {existing.id}; ignored"
            )

    async def _open_swap(self, event: EscrowCreated) -> Optional[SwapSnapshot]:
        """Create a swap from a newly observed source escrow and lock its counter leg."""
        intent = await self.registry.get_intent_by_hashlock(event.hashlock)
        if intent is not None:
            if intent.source_chain != event.chain:
                raise ValidationError(
                    f"Intent {intent.id} expects a {intent.source_chain} source escrow"
                )
            destination_chain = intent.destination_chain
            beneficiary = intent.beneficiary_address
        else:
            destination_chain = event.destination_chain
            beneficiary = event.destination_beneficiary
            if not destination_chain or not beneficiary:
                raise ValidationError("No intent and no destination routing in payload")

        if destination_chain == event.chain:
            raise ValidationError("Source and destination chains must differ")
        destination = require_chain(destination_chain)
        beneficiary = validate_address(destination_chain, str(beneficiary))

        now = self._now()
        destination_timelock = event.timelock - self.settings.destination_timelock_margin_seconds
        if destination_timelock <= now:
            raise ValidationError(
                f"Source timelock {event.timelock} leaves no room for a destination leg"
            )

        try:
            quote = await self.oracle.quote(event.amount, event.chain, destination_chain)
        except TransientInfrastructureError as e:
            await self.alerter.alert(
                alerts.COUNTER_LEG_FAILED,
                f"Cannot price {event.chain} escrow {event.escrow_ref}: {e}",
            )
            return None

        counter_amount = quote.net_amount
        failure = None
        if intent is not None:
            counter_amount, failure = self._apply_auction(intent, event, counter_amount, destination.decimals, now)

        if failure is None and quote.source == FALLBACK_SOURCE:
            usd_value = self.oracle.fallback_usd_value(event.amount, event.chain)
            if usd_value is not None and usd_value > self.settings.fallback_max_quote_usd:
                failure = (
                    f"fallback-priced swap worth ${usd_value:.2f} exceeds "
                    f"${self.settings.fallback_max_quote_usd}"
                )

        if counter_amount <= 0:
            raise ValidationError(f"Escrow amount {event.amount} is too small to quote")

        try:
            swap = await self.registry.create(
                NewSwap(
                    hashlock=event.hashlock,
                    source_chain=event.chain,
                    destination_chain=destination_chain,
                    principal_amount=event.amount,
                    counter_amount=counter_amount,
                    initiator_address=event.initiator,
                    beneficiary_address=beneficiary,
                    source_timelock=event.timelock,
                    destination_timelock=destination_timelock,
                    source_escrow_reference=event.escrow_ref,
                    rate_source=quote.source,
                    id=intent.id if intent is not None else None,
                )
            )
        except DuplicateSwapError:
            logger.debug(f"Swap for hashlock {event.hashlock[:12]}... already created")
            return None

        if failure is not None:
            logger.warning(f"Swap {swap.id} refused: {failure}")
            return await self.registry.transition(
                swap.id, SwapStatus.CREATED, SwapStatus.FAILED, {"failure_reason": failure}
            )

        if not self.settings.self_fill:
            logger.info(f"Swap {swap.id} waiting for resolvers to cover {counter_amount}")
            return swap

        return await self._lock_counter_leg(swap)

    def _apply_auction(
        self,
        intent: IntentSnapshot,
        event: EscrowCreated,
        quoted: Decimal,
        decimals: int,
        now: int,
    ) -> tuple[Decimal, Optional[str]]:
        """Cap a live quote by the intent's auction price."""
        if event.amount != intent.amount:
            logger.warning(
                f"Intent {intent.id} expected {intent.amount}, escrow holds {event.amount}; "
                f"pricing from the live quote"
            )
            return quoted, None
        if quoted < intent.auction_floor:
            return quoted, f"live quote {quoted} below auction floor {intent.auction_floor}"
        started_at = intent.created_at.timestamp() if intent.created_at else now
        price = self.auction.price_at(
            intent.auction_start, intent.auction_floor, started_at, decimals, now=now
        )
        return min(quoted, price), None

    async def _lock_counter_leg(self, swap: SwapSnapshot) -> SwapSnapshot:
        try:
            swap = await self.settler.create_counter_escrows(swap)
        except (TransientInfrastructureError, IrrecoverableLedgerError, ConsistencyViolation) as e:
            reason = f"counter leg failed: {e}"
            await self.alerter.alert(alerts.COUNTER_LEG_FAILED, reason, swap_id=swap.id)
            return await self.registry.transition(
                swap.id, SwapStatus.CREATED, SwapStatus.FAILED, {"failure_reason": reason}
            )
        return await self.registry.transition(swap.id, SwapStatus.CREATED, SwapStatus.LOCKED)

    async def _register_resolver_escrow(self, swap: SwapSnapshot, event: EscrowCreated) -> None:
        if event.beneficiary and event.beneficiary != swap.beneficiary_address:
            logger.error(
                f"SECURITY: resolver escrow {event.escrow_ref} pays {event.beneficiary}, "
                f"swap {swap.id} expects {swap.beneficiary_address}"
            )
            return
        try:
            swap = await self.registry.add_escrow(
                swap.id,
                event.chain,
                EscrowSide.DESTINATION,
                event.escrow_ref,
                event.amount,
                event.timelock,
                owned=False,
            )
        except ConsistencyViolation as e:
            logger.error(f"SECURITY: rejected resolver escrow {event.chain}:{event.escrow_ref}: {e}")
            await self.alerter.alert(
                alerts.CONSISTENCY_VIOLATION,
                f"Untracked {event.chain} escrow {event.escrow_ref} rejected: {e}",
                swap_id=swap.id,
                chain=event.chain,
            )
            return

        if swap.status == SwapStatus.CREATED and swap.destination_coverage == swap.counter_amount:
            await self.registry.transition(swap.id, SwapStatus.CREATED, SwapStatus.LOCKED)

    async def _on_secret_revealed(self, event: SecretRevealed) -> None:
        swap = await self.registry.get_by_hashlock(event.hashlock)
        if swap is None:
            logger.debug(f"Secret revealed for unknown hashlock {event.hashlock[:12]}...")
            return
        if swap.status == SwapStatus.COMPLETED:
            logger.debug(f"Swap {swap.id} already completed; reveal ignored")
            return

        try:
            swap = await self.registry.reveal_secret(swap.id, event.secret)
        except ConsistencyViolation as e:
            logger.error(f"SECURITY: {e} (revealed on {event.chain} in {event.tx_ref})")
            return

        if swap.status == SwapStatus.LOCKED:
            await self._settle(swap)
        else:
            logger.warning(f"Secret revealed for swap {swap.id} in status {swap.status.value}")

    async def _settle(self, swap: SwapSnapshot) -> SwapSnapshot:
        """Withdraw every open leg with the known secret, then record the fills.

        Destination escrows go first and the source escrow last. Fills are
        recorded only after the source withdrawal is confirmed. On failure
        the swap stays LOCKED with its secret for the sweep to retry.
        """
        for escrow in swap.destination_escrows + swap.source_escrows:
            if escrow.is_open and not await self.settler.withdraw(escrow, swap.secret):
                logger.warning(f"Swap {swap.id}: settlement incomplete, will retry")
                return swap

        swap = await self.registry.get(swap.id)
        for escrow in swap.destination_escrows:
            if escrow.status != EscrowStatus.WITHDRAWN:
                continue
            try:
                swap = await self.registry.record_fill(swap.id, escrow.escrow_reference, escrow.amount)
            except ConsistencyViolation as e:
                await self.alerter.alert(alerts.CONSISTENCY_VIOLATION, str(e), swap_id=swap.id)
                return swap
        return swap

    async def _on_escrow_closed(self, event: MonitorEvent, status: EscrowStatus) -> None:
        try:
            swap = await self.registry.mark_escrow(event.chain, event.escrow_ref, status, event.tx_ref)
        except ConsistencyViolation as e:
            logger.error(f"SECURITY: {e}")
            return
        if swap is None or swap.status != SwapStatus.EXPIRED or swap.open_escrows:
            return
        async with self.locks.hold(swap.hashlock, operation="close_expired"):
            await self._finish_refund(swap.id)

    async def _finish_refund(self, swap_id: str) -> Optional[SwapSnapshot]:
        swap = await self.registry.get(swap_id)
        if swap is None or swap.status != SwapStatus.EXPIRED or swap.open_escrows:
            return swap
        try:
            return await self.registry.transition(swap.id, SwapStatus.EXPIRED, SwapStatus.REFUNDED)
        except IllegalTransitionError as e:
            logger.debug(f"{e}")
            return await self.registry.get(swap_id)

    # ======================
    # Secret submitted off-chain
    # ======================

    async def reveal_secret(self, swap_id: str, secret: str) -> SwapSnapshot:
        """Record a secret handed to the relayer directly and settle the swap.

        Raises:
            SwapNotFoundError: Unknown swap
            ConsistencyViolation: The secret does not match the hashlock
        """
        swap = await self.registry.get(swap_id)
        if swap is None:
            raise SwapNotFoundError(f"Swap {swap_id} not found")
        async with self.locks.hold(swap.hashlock, operation="reveal_secret"):
            swap = await self.registry.reveal_secret(swap_id, secret)
            if swap.status == SwapStatus.LOCKED:
                swap = await self._settle(swap)
        return swap

    # ======================
    # Periodic jobs
    # ======================

    async def sweep(self, now: Optional[int] = None) -> dict[str, int]:
        """Expire overdue swaps, refund open legs and retry pending settlements.

        Returns:
            Counters of the actions taken
        """
        now = self._now() if now is None else now
        stats: Counter[str] = Counter()

        for candidate in await self.registry.sweep_expired(now):
            async with self.locks.hold(candidate.hashlock, operation="sweep"):
                swap = await self.registry.get(candidate.id)
                if swap is None or swap.destination_timelock > now:
                    continue
                if swap.secret is not None:
                    stranded = [e for e in swap.destination_escrows if e.is_open and e.timelock <= now]
                    if not stranded:
                        continue
                    logger.warning(
                        f"Swap {swap.id}: secret known but {len(stranded)} destination escrow(s) "
                        f"still open past their timelock; expiring"
                    )
                try:
                    if swap.status == SwapStatus.CREATED:
                        await self.registry.transition(
                            swap.id,
                            SwapStatus.CREATED,
                            SwapStatus.FAILED,
                            {"failure_reason": "expired before the counter leg was locked"},
                        )
                        stats["failed"] += 1
                    elif swap.status == SwapStatus.LOCKED:
                        await self.registry.transition(swap.id, SwapStatus.LOCKED, SwapStatus.EXPIRED)
                        stats["expired"] += 1
                except IllegalTransitionError as e:
                    logger.info(f"Sweep skipped swap {swap.id}: {e}")

        for candidate in await self.registry.pending_refunds():
            async with self.locks.hold(candidate.hashlock, operation="refund"):
                swap = await self.registry.get(candidate.id)
                if swap is None or swap.status not in (SwapStatus.EXPIRED, SwapStatus.FAILED):
                    continue
                refunded = await self._refund_open_legs(swap, now)
                if refunded:
                    stats["refunded_legs"] += refunded
                if swap.status == SwapStatus.EXPIRED:
                    finished = await self._finish_refund(swap.id)
                    if finished is not None and finished.status == SwapStatus.REFUNDED:
                        stats["refunded"] += 1

        for candidate in await self.registry.pending_settlements():
            async with self.locks.hold(candidate.hashlock, operation="settle"):
                swap = await self.registry.get(candidate.id)
                if swap is None or swap.status != SwapStatus.LOCKED or swap.secret is None:
                    continue
                swap = await self._settle(swap)
                if swap.status == SwapStatus.COMPLETED:
                    stats["settled"] += 1

        if stats:
            logger.info(f"Sweep: {dict(stats)}")
        return dict(stats)

    async def _refund_open_legs(self, swap: SwapSnapshot, now: int) -> int:
        """Refund open legs, destination first.

        The source leg is only refunded once every destination leg is
        closed, since an open destination escrow can still be withdrawn.
        """
        refunded = 0
        for escrow in swap.destination_escrows:
            if escrow.is_open and await self.settler.refund(escrow, now) == RefundOutcome.REFUNDED:
                refunded += 1

        swap = await self.registry.get(swap.id)
        if any(e.is_open for e in swap.destination_escrows):
            return refunded

        for escrow in swap.source_escrows:
            if escrow.is_open and await self.settler.refund(escrow, now) == RefundOutcome.REFUNDED:
                refunded += 1
        return refunded

    async def purge(self, now: Optional[float] = None) -> int:
        """Drop terminal swaps older than the audit retention window."""
        return await self.registry.purge(self.settings.audit_retention_seconds, now=now)
