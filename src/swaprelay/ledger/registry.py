"""Durable swap registry.

The registry is the only writer of swap state. Each public method is one
unit of work: it opens a session, applies its change, commits and returns
frozen snapshots, so no caller ever holds a live ORM object. Status changes
are compare-and-set on both the expected status and the row version.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from swaprelay.chains import require_chain
from swaprelay.crypto import normalize_hex, verify_secret
from swaprelay.errors import (
    ConsistencyViolation,
    DuplicateSwapError,
    IllegalTransitionError,
    SwapNotFoundError,
    ValidationError,
)
from swaprelay.ledger.models import (
    EscrowRecord,
    EscrowSide,
    EscrowStatus,
    PartialFill,
    Swap,
    SwapIntent,
    SwapStatus,
)
from swaprelay.ledger.repository import LedgerRepository
from swaprelay.ledger.snapshots import (
    AlertSnapshot,
    EscrowSnapshot,
    IntentSnapshot,
    SwapSnapshot,
)
from swaprelay.ledger.state import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    can_transition,
)

logger = logging.getLogger(__name__)

# Fields a transition may change alongside the status
MUTABLE_FIELDS = frozenset({"failure_reason"})


@dataclass(frozen=True)
class NewSwap:
    """Values for a swap about to be created from an observed source escrow."""

    hashlock: str
    source_chain: str
    destination_chain: str
    principal_amount: Decimal
    counter_amount: Decimal
    initiator_address: str
    beneficiary_address: str
    source_timelock: int
    destination_timelock: int
    source_escrow_reference: str
    rate_source: str = "unknown"
    id: Optional[str] = None


class SwapRegistry:
    """Atomic operations over swaps, fills, escrows, intents and cursors."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock
        # Serializes units of work in this process; version_id_col guards the rest
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncGenerator[LedgerRepository, None]:
        async with self._lock:
            async with self._session_factory() as session:
                try:
                    yield LedgerRepository(session)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    async def _require(repo: LedgerRepository, swap_id: str) -> Swap:
        swap = await repo.get_swap(swap_id)
        if swap is None:
            raise SwapNotFoundError(f"Swap {swap_id} not found")
        return swap

    # ======================
    # Swap lifecycle
    # ======================

    async def create(self, new: NewSwap) -> SwapSnapshot:
        """Create a swap in CREATED status together with its source escrow.

        Raises:
            ValidationError: Same chain on both legs, non-positive amounts or a
                destination timelock not strictly before the source timelock
            DuplicateSwapError: The hashlock is already registered
        """
        hashlock = normalize_hex(new.hashlock)
        require_chain(new.source_chain)
        require_chain(new.destination_chain)
        if new.source_chain == new.destination_chain:
            raise ValidationError("Source and destination chains must differ")
        if new.principal_amount <= 0 or new.counter_amount <= 0:
            raise ValidationError("Swap amounts must be positive")
        if new.destination_timelock >= new.source_timelock:
            raise ValidationError(
                f"Destination timelock {new.destination_timelock} must be before "
                f"source timelock {new.source_timelock}"
            )

        now = self._now()
        swap_id = new.id or uuid.uuid4().hex
        try:
            async with self._unit_of_work() as repo:
                if await repo.get_swap_by_hashlock(hashlock) is not None:
                    raise DuplicateSwapError(hashlock)

                source_escrow = EscrowRecord(
                    chain=new.source_chain,
                    side=EscrowSide.SOURCE.value,
                    escrow_reference=new.source_escrow_reference,
                    amount=new.principal_amount,
                    timelock=new.source_timelock,
                    status=EscrowStatus.OPEN.value,
                    owned=False,
                    refund_attempts=0,
                    withdraw_attempts=0,
                    alerted=False,
                    created_at=now,
                    updated_at=now,
                )
                swap = Swap(
                    id=swap_id,
                    hashlock=hashlock,
                    source_chain=new.source_chain,
                    destination_chain=new.destination_chain,
                    principal_amount=new.principal_amount,
                    counter_amount=new.counter_amount,
                    initiator_address=new.initiator_address,
                    beneficiary_address=new.beneficiary_address,
                    source_timelock=new.source_timelock,
                    destination_timelock=new.destination_timelock,
                    status=SwapStatus.CREATED.value,
                    rate_source=new.rate_source,
                    created_at=now,
                    updated_at=now,
                    fills=[],
                    escrows=[source_escrow],
                )
                await repo.add_swap(swap)
                snapshot = SwapSnapshot.from_model(swap)
        except IntegrityError:
            raise DuplicateSwapError(hashlock)

        logger.info(
            f"Swap {swap_id} created: {new.principal_amount} {new.source_chain} -> "
            f"{new.counter_amount} {new.destination_chain} (hashlock {hashlock[:12]}...)"
        )
        return snapshot

    async def transition(
        self,
        swap_id: str,
        from_status: SwapStatus,
        to_status: SwapStatus,
        mutation: Optional[dict[str, Any]] = None,
    ) -> SwapSnapshot:
        """Atomically move a swap from one status to another.

        Args:
            swap_id: Swap to update
            from_status: Status the caller believes the swap is in
            to_status: Target status
            mutation: Extra fields to set in the same write (failure_reason only)

        Raises:
            IllegalTransitionError: The state machine forbids the move, or the
                swap is no longer in from_status (current_status is attached)
            ConsistencyViolation: The mutation touches an immutable field
        """
        from_status = SwapStatus(from_status)
        to_status = SwapStatus(to_status)
        if not can_transition(from_status, to_status):
            raise IllegalTransitionError(swap_id, from_status, to_status)

        mutation = dict(mutation or {})
        forbidden = set(mutation) - MUTABLE_FIELDS
        if forbidden:
            raise ConsistencyViolation(
                f"Refusing to mutate immutable swap fields {sorted(forbidden)} on {swap_id}"
            )

        try:
            async with self._unit_of_work() as repo:
                swap = await self._require(repo, swap_id)
                current = SwapStatus(swap.status)
                if current != from_status:
                    raise IllegalTransitionError(
                        swap_id, from_status, to_status, current_status=current
                    )
                swap.status = to_status.value
                for field_name, value in mutation.items():
                    setattr(swap, field_name, value)
                swap.updated_at = self._now()
                await repo.session.flush()
                snapshot = SwapSnapshot.from_model(swap)
        except StaleDataError:
            raise IllegalTransitionError(swap_id, from_status, to_status)

        logger.info(f"Swap {swap_id}: {from_status.value} -> {to_status.value}")
        return snapshot

    async def reveal_secret(self, swap_id: str, secret: str) -> SwapSnapshot:
        """Record the preimage of a swap's hashlock.

        A secret that does not hash to the hashlock is rejected and the swap is
        left untouched. Recording the same secret twice is a no-op.

        Raises:
            ConsistencyViolation: sha256(secret) != hashlock
        """
        secret = normalize_hex(secret)
        async with self._unit_of_work() as repo:
            swap = await self._require(repo, swap_id)
            if not verify_secret(secret, swap.hashlock):
                logger.warning(f"SECURITY: secret for swap {swap_id} does not match hashlock")
                raise ConsistencyViolation(f"Secret does not match hashlock of swap {swap_id}")
            if swap.secret is None:
                swap.secret = secret
                swap.updated_at = self._now()
                await repo.session.flush()
                logger.info(f"Secret recorded for swap {swap_id}")
            return SwapSnapshot.from_model(swap)

    async def record_fill(self, swap_id: str, escrow_reference: str, amount: Decimal) -> SwapSnapshot:
        """Append a partial fill and complete the swap once fully covered.

        Idempotent per escrow reference. The swap flips LOCKED -> COMPLETED in
        the same write that brings the filled amount up to the counter amount.

        Raises:
            ValidationError: Non-positive amount
            ConsistencyViolation: The fill would exceed the counter amount, the
                swap is not LOCKED, or the escrow was already filled with a
                different amount
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Fill amount must be positive")

        async with self._unit_of_work() as repo:
            swap = await self._require(repo, swap_id)
            for fill in swap.fills:
                if fill.escrow_reference == escrow_reference:
                    if fill.amount != amount:
                        raise ConsistencyViolation(
                            f"Escrow {escrow_reference} already filled {fill.amount} on swap "
                            f"{swap_id}, got {amount}"
                        )
                    return SwapSnapshot.from_model(swap)

            if SwapStatus(swap.status) != SwapStatus.LOCKED:
                raise ConsistencyViolation(
                    f"Cannot record fill on swap {swap_id} in status {swap.status}"
                )

            new_total = swap.filled_amount + amount
            if new_total > swap.counter_amount:
                logger.error(
                    f"SECURITY: fill {escrow_reference} of {amount} would bring swap {swap_id} "
                    f"to {new_total}, above counter amount {swap.counter_amount}"
                )
                raise ConsistencyViolation(
                    f"Fill-sum {new_total} exceeds counter amount {swap.counter_amount}"
                )

            now = self._now()
            swap.fills.append(
                PartialFill(escrow_reference=escrow_reference, amount=amount, created_at=now)
            )
            if new_total == swap.counter_amount:
                swap.status = SwapStatus.COMPLETED.value
                logger.info(f"Swap {swap_id}: locked -> completed ({len(swap.fills)} fill(s))")
            swap.updated_at = now
            await repo.session.flush()
            return SwapSnapshot.from_model(swap)

    # ======================
    # Escrows
    # ======================

    async def add_escrow(
        self,
        swap_id: str,
        chain: str,
        side: EscrowSide,
        escrow_reference: str,
        amount: Decimal,
        timelock: int,
        owned: bool = False,
    ) -> SwapSnapshot:
        """Attach an on-chain escrow to a swap.

        Destination escrows must not push coverage above the counter amount
        and must expire before the source leg.

        Raises:
            ConsistencyViolation: Wrong chain, over-coverage, a timelock that
                outlives the source leg, or the reference belongs to another swap
        """
        side = EscrowSide(side)
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Escrow amount must be positive")

        async with self._unit_of_work() as repo:
            swap = await self._require(repo, swap_id)
            existing = await repo.get_escrow(chain, escrow_reference)
            if existing is not None:
                if existing.swap_id != swap_id:
                    raise ConsistencyViolation(
                        f"Escrow {chain}:{escrow_reference} already belongs to swap {existing.swap_id}"
                    )
                return SwapSnapshot.from_model(swap)

            expected_chain = swap.source_chain if side == EscrowSide.SOURCE else swap.destination_chain
            if chain != expected_chain:
                raise ConsistencyViolation(
                    f"{side.value} escrow for swap {swap_id} must be on {expected_chain}, got {chain}"
                )

            if side == EscrowSide.DESTINATION:
                if SwapStatus(swap.status) not in ACTIVE_STATUSES:
                    raise ConsistencyViolation(
                        f"Swap {swap_id} is {swap.status}; not accepting destination escrows"
                    )
                coverage = sum(
                    (e.amount for e in swap.escrows if e.side == EscrowSide.DESTINATION.value),
                    Decimal("0"),
                )
                if coverage + amount > swap.counter_amount:
                    raise ConsistencyViolation(
                        f"Escrow {escrow_reference} would cover {coverage + amount}, above "
                        f"counter amount {swap.counter_amount} of swap {swap_id}"
                    )
                if timelock >= swap.source_timelock:
                    raise ConsistencyViolation(
                        f"Destination escrow {escrow_reference} expires at {timelock}, not before "
                        f"source timelock {swap.source_timelock}"
                    )

            now = self._now()
            swap.escrows.append(
                EscrowRecord(
                    chain=chain,
                    side=side.value,
                    escrow_reference=escrow_reference,
                    amount=amount,
                    timelock=timelock,
                    status=EscrowStatus.OPEN.value,
                    owned=owned,
                    refund_attempts=0,
                    withdraw_attempts=0,
                    alerted=False,
                    created_at=now,
                    updated_at=now,
                )
            )
            swap.updated_at = now
            await repo.session.flush()
            logger.info(f"Swap {swap_id}: {side.value} escrow {chain}:{escrow_reference} ({amount})")
            return SwapSnapshot.from_model(swap)

    async def mark_escrow(
        self,
        chain: str,
        escrow_reference: str,
        status: EscrowStatus,
        tx_ref: Optional[str] = None,
    ) -> Optional[SwapSnapshot]:
        """Record that an escrow was withdrawn or refunded.

        Returns None when the escrow is not known to the registry.

        Raises:
            ConsistencyViolation: The escrow was already closed the other way
        """
        status = EscrowStatus(status)
        async with self._unit_of_work() as repo:
            escrow = await repo.get_escrow(chain, escrow_reference)
            if escrow is None:
                return None
            current = EscrowStatus(escrow.status)
            if current != status:
                if current != EscrowStatus.OPEN:
                    raise ConsistencyViolation(
                        f"Escrow {chain}:{escrow_reference} is {current.value}, cannot mark {status.value}"
                    )
                now = self._now()
                escrow.status = status.value
                escrow.tx_ref = tx_ref or escrow.tx_ref
                escrow.updated_at = now
                swap = await self._require(repo, escrow.swap_id)
                swap.updated_at = now
                await repo.session.flush()
                logger.info(f"Escrow {chain}:{escrow_reference} marked {status.value}")
            else:
                swap = await self._require(repo, escrow.swap_id)
            return SwapSnapshot.from_model(swap)

    async def bump_refund_attempts(self, escrow_id: int) -> EscrowSnapshot:
        """Count one more failed refund attempt for an escrow."""
        async with self._unit_of_work() as repo:
            escrow = await repo.get_escrow_by_id(escrow_id)
            if escrow is None:
                raise SwapNotFoundError(f"Escrow {escrow_id} not found")
            escrow.refund_attempts = (escrow.refund_attempts or 0) + 1
            escrow.updated_at = self._now()
            await repo.session.flush()
            return EscrowSnapshot.from_model(escrow)

    async def bump_withdraw_attempts(self, escrow_id: int) -> EscrowSnapshot:
        """Count one more failed withdrawal attempt for an escrow."""
        async with self._unit_of_work() as repo:
            escrow = await repo.get_escrow_by_id(escrow_id)
            if escrow is None:
                raise SwapNotFoundError(f"Escrow {escrow_id} not found")
            escrow.withdraw_attempts = (escrow.withdraw_attempts or 0) + 1
            escrow.updated_at = self._now()
            await repo.session.flush()
            return EscrowSnapshot.from_model(escrow)

    async def mark_alerted(self, escrow_id: int) -> EscrowSnapshot:
        """Flag an escrow whose refund has been escalated to an operator."""
        async with self._unit_of_work() as repo:
            escrow = await repo.get_escrow_by_id(escrow_id)
            if escrow is None:
                raise SwapNotFoundError(f"Escrow {escrow_id} not found")
            escrow.alerted = True
            escrow.updated_at = self._now()
            await repo.session.flush()
            return EscrowSnapshot.from_model(escrow)

    # ======================
    # Queries
    # ======================

    async def get(self, swap_id: str) -> Optional[SwapSnapshot]:
        async with self._unit_of_work() as repo:
            swap = await repo.get_swap(swap_id)
            return SwapSnapshot.from_model(swap) if swap else None

    async def get_by_hashlock(self, hashlock: str) -> Optional[SwapSnapshot]:
        hashlock = normalize_hex(hashlock)
        async with self._unit_of_work() as repo:
            swap = await repo.get_swap_by_hashlock(hashlock)
            return SwapSnapshot.from_model(swap) if swap else None

    async def list_swaps(
        self, status: Optional[SwapStatus] = None, limit: int = 100, offset: int = 0
    ) -> list[SwapSnapshot]:
        async with self._unit_of_work() as repo:
            swaps = await repo.list_swaps(status=status, limit=limit, offset=offset)
            return [SwapSnapshot.from_model(s) for s in swaps]

    async def sweep_expired(self, now: Optional[int] = None) -> list[SwapSnapshot]:
        """Get CREATED/LOCKED swaps whose destination timelock has passed."""
        if now is None:
            now = int(self._clock())
        async with self._unit_of_work() as repo:
            swaps = await repo.get_swaps_past_deadline(ACTIVE_STATUSES, now)
            return [SwapSnapshot.from_model(s) for s in swaps]

    async def pending_refunds(self) -> list[SwapSnapshot]:
        """Get EXPIRED/FAILED swaps that still have an open escrow."""
        async with self._unit_of_work() as repo:
            swaps = await repo.get_swaps_with_open_escrows(
                [SwapStatus.EXPIRED, SwapStatus.FAILED]
            )
            return [SwapSnapshot.from_model(s) for s in swaps]

    async def pending_settlements(self) -> list[SwapSnapshot]:
        """Get LOCKED swaps whose secret is known but which are not yet completed."""
        async with self._unit_of_work() as repo:
            swaps = await repo.get_locked_swaps_with_secret()
            return [SwapSnapshot.from_model(s) for s in swaps]

    async def purge(self, retention_seconds: int, now: Optional[float] = None) -> int:
        """Delete terminal swaps older than the retention window.

        Swaps that still have an open escrow (a FAILED swap whose source leg
        has not been refunded yet) are kept.

        Returns:
            Number of swaps deleted
        """
        if now is None:
            now = self._clock()
        cutoff = datetime.fromtimestamp(now, tz=timezone.utc) - timedelta(seconds=retention_seconds)
        deleted = 0
        async with self._unit_of_work() as repo:
            swaps = await repo.get_terminal_swaps_before(TERMINAL_STATUSES, cutoff)
            for swap in swaps:
                if any(e.status == EscrowStatus.OPEN.value for e in swap.escrows):
                    continue
                await repo.delete_swap(swap)
                deleted += 1
        if deleted:
            logger.info(f"Purged {deleted} terminal swap(s) older than {retention_seconds}s")
        return deleted

    # ======================
    # Intents
    # ======================

    async def create_intent(
        self,
        hashlock: str,
        source_chain: str,
        destination_chain: str,
        amount: Decimal,
        beneficiary_address: str,
        timelock: int,
        auction_start: Decimal,
        auction_floor: Decimal,
    ) -> IntentSnapshot:
        """Register a swap requested upstream, before its source escrow exists."""
        hashlock = normalize_hex(hashlock)
        intent_id = uuid.uuid4().hex
        try:
            async with self._unit_of_work() as repo:
                if await repo.get_intent_by_hashlock(hashlock) is not None:
                    raise DuplicateSwapError(hashlock)
                intent = SwapIntent(
                    id=intent_id,
                    hashlock=hashlock,
                    source_chain=source_chain,
                    destination_chain=destination_chain,
                    amount=amount,
                    beneficiary_address=beneficiary_address,
                    timelock=timelock,
                    auction_start=auction_start,
                    auction_floor=auction_floor,
                    created_at=self._now(),
                )
                await repo.add_intent(intent)
                snapshot = IntentSnapshot.from_model(intent)
        except IntegrityError:
            raise DuplicateSwapError(hashlock)
        logger.info(f"Intent {intent_id} registered for hashlock {hashlock[:12]}...")
        return snapshot

    async def get_intent(self, intent_id: str) -> Optional[IntentSnapshot]:
        async with self._unit_of_work() as repo:
            intent = await repo.get_intent(intent_id)
            return IntentSnapshot.from_model(intent) if intent else None

    async def get_intent_by_hashlock(self, hashlock: str) -> Optional[IntentSnapshot]:
        hashlock = normalize_hex(hashlock)
        async with self._unit_of_work() as repo:
            intent = await repo.get_intent_by_hashlock(hashlock)
            return IntentSnapshot.from_model(intent) if intent else None

    # ======================
    # Cursors and alerts
    # ======================

    async def get_cursor(self, chain: str) -> Optional[int]:
        async with self._unit_of_work() as repo:
            cursor = await repo.get_cursor(chain)
            return cursor.sequence if cursor else None

    async def set_cursor(self, chain: str, sequence: int) -> int:
        async with self._unit_of_work() as repo:
            cursor = await repo.set_cursor(chain, sequence, self._now())
            return cursor.sequence

    async def add_alert(self, kind: str, message: str, swap_id: Optional[str] = None) -> AlertSnapshot:
        async with self._unit_of_work() as repo:
            alert = await repo.add_alert(kind, message, swap_id, self._now())
            return AlertSnapshot.from_model(alert)

    async def list_alerts(self, swap_id: Optional[str] = None) -> list[AlertSnapshot]:
        async with self._unit_of_work() as repo:
            alerts = await repo.list_alerts(swap_id=swap_id)
            return [AlertSnapshot.from_model(a) for a in alerts]
