"""Simulated in-memory ledger for dry-run mode and tests.

Behaves like an HTLC contract: escrows are checked against their hashlock and
timelock, every state change is appended to an event log with a contiguous
sequence number, and live subscribers are woken on each new event.
"""

import asyncio
import hashlib
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional

from swaprelay.adapters.base import (
    AlreadyRefunded,
    AlreadyWithdrawn,
    ChainAdapter,
    EscrowInfo,
    EscrowNotFound,
    EscrowState,
    RawChainEvent,
    SecretMismatch,
    TimelockNotExpired,
)
from swaprelay.crypto import normalize_hex
from swaprelay.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

# Native event names per chain, mirroring what each contract emits
EVENT_NAMES: dict[str, dict[str, str]] = {
    "ethereum": {"created": "HTLCCreated", "withdrawn": "HTLCWithdrawn", "refunded": "HTLCRefunded"},
    "tron": {"created": "EscrowCreated", "withdrawn": "SwapCompleted", "refunded": "SwapRefunded"},
    "near": {"created": "htlc_created", "withdrawn": "htlc_withdrawn", "refunded": "htlc_refunded"},
}


@dataclass
class _Escrow:
    escrow_ref: str
    hashlock: str
    timelock: int
    initiator: str
    beneficiary: str
    amount: Decimal
    status: EscrowState = EscrowState.OPEN
    secret: Optional[str] = None


def _info(escrow: _Escrow) -> EscrowInfo:
    return EscrowInfo(
        escrow_ref=escrow.escrow_ref,
        amount=escrow.amount,
        hashlock=escrow.hashlock,
        timelock=escrow.timelock,
        status=escrow.status,
        initiator=escrow.initiator,
        beneficiary=escrow.beneficiary,
    )


class SimulatedChainAdapter(ChainAdapter):
    """In-memory HTLC ledger with failure injection."""

    def __init__(
        self,
        chain: str,
        clock: Callable[[], float] = time.time,
        relayer_address: str = "relayer",
    ):
        self._chain = chain
        self._clock = clock
        self.relayer_address = relayer_address
        self._escrows: dict[str, _Escrow] = {}
        self._events: list[RawChainEvent] = []
        self._hidden: set[int] = set()
        self._failures: dict[str, deque] = defaultdict(deque)
        self._changed = asyncio.Condition()
        self._drop_stream = False
        self._hide_live = False
        self._counter = 0
        self.calls: list[tuple] = []

    @property
    def chain(self) -> str:
        return self._chain

    # ======================
    # Test controls
    # ======================

    def fail_next(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls to an operation."""
        self._failures[operation].extend(errors)

    def drop_connection(self) -> None:
        """Make active subscriptions raise as if the connection dropped."""
        self._drop_stream = True
        self._notify_nowait()

    def hide_live_events(self, hidden: bool = True) -> None:
        """Record new events in history only, so live subscribers miss them."""
        self._hide_live = hidden

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    def _next_ref(self) -> str:
        self._counter += 1
        return f"{self._chain}-escrow-{self._counter}"

    def _tx_ref(self) -> str:
        return f"0x{hashlib.sha256(f'{self._chain}:{len(self._events)}:{self._counter}'.encode()).hexdigest()}"

    def _notify_nowait(self) -> None:
        async def _notify():
            async with self._changed:
                self._changed.notify_all()

        try:
            asyncio.get_running_loop().create_task(_notify())
        except RuntimeError:
            pass

    async def _emit(self, name: str, payload: dict) -> RawChainEvent:
        event = RawChainEvent(
            chain=self._chain,
            kind=EVENT_NAMES.get(self._chain, EVENT_NAMES["ethereum"])[name],
            sequence=len(self._events) + 1,
            tx_ref=self._tx_ref(),
            payload=payload,
        )
        self._events.append(event)
        if self._hide_live:
            self._hidden.add(event.sequence)
        async with self._changed:
            self._changed.notify_all()
        return event

    # ======================
    # User-side actions
    # ======================

    async def open_escrow(
        self,
        hashlock: str,
        timelock: int,
        initiator: str,
        beneficiary: str,
        amount: Decimal,
        extra: Optional[dict] = None,
    ) -> RawChainEvent:
        """Lock funds as a user or resolver would, emitting the creation event."""
        hashlock = normalize_hex(hashlock)
        ref = self._next_ref()
        self._escrows[ref] = _Escrow(
            escrow_ref=ref,
            hashlock=hashlock,
            timelock=int(timelock),
            initiator=initiator,
            beneficiary=beneficiary,
            amount=Decimal(amount),
        )
        payload = {
            "escrow_id": ref,
            "hashlock": f"0x{hashlock}",
            "timelock": int(timelock),
            "sender": initiator,
            "receiver": beneficiary,
            "amount": str(amount),
        }
        payload.update(extra or {})
        return await self._emit("created", payload)

    async def reveal(self, escrow_ref: str, secret: str) -> str:
        """Withdraw as the beneficiary would, publishing the secret."""
        return await self._withdraw(escrow_ref, secret)

    # ======================
    # ChainAdapter
    # ======================

    async def create_escrow(
        self,
        hashlock: str,
        timelock: int,
        beneficiary: str,
        amount: Decimal,
    ) -> str:
        self.calls.append(("create_escrow", hashlock, timelock, beneficiary, Decimal(amount)))
        self._maybe_fail("create_escrow")
        event = await self.open_escrow(
            hashlock, timelock, self.relayer_address, beneficiary, amount
        )
        ref = event.payload["escrow_id"]
        logger.info(f"[simulated {self._chain}] escrow {ref} created: {amount} to {beneficiary}")
        return ref

    async def withdraw(self, escrow_ref: str, secret: str) -> str:
        self.calls.append(("withdraw", escrow_ref, secret))
        self._maybe_fail("withdraw")
        return await self._withdraw(escrow_ref, secret)

    async def _withdraw(self, escrow_ref: str, secret: str) -> str:
        escrow = self._escrows.get(escrow_ref)
        if escrow is None:
            raise EscrowNotFound(f"{self._chain}: escrow {escrow_ref} not found")
        if escrow.status == EscrowState.WITHDRAWN:
            raise AlreadyWithdrawn(f"{self._chain}: escrow {escrow_ref} already withdrawn")
        if escrow.status == EscrowState.REFUNDED:
            raise AlreadyRefunded(f"{self._chain}: escrow {escrow_ref} already refunded")
        if hashlib.sha256(bytes.fromhex(secret)).hexdigest() != escrow.hashlock:
            raise SecretMismatch(f"{self._chain}: secret does not open escrow {escrow_ref}")
        escrow.status = EscrowState.WITHDRAWN
        escrow.secret = secret
        event = await self._emit(
            "withdrawn",
            {"escrow_id": escrow_ref, "hashlock": escrow.hashlock, "preimage": secret},
        )
        return event.tx_ref

    async def refund(self, escrow_ref: str) -> str:
        self.calls.append(("refund", escrow_ref))
        self._maybe_fail("refund")
        escrow = self._escrows.get(escrow_ref)
        if escrow is None:
            raise EscrowNotFound(f"{self._chain}: escrow {escrow_ref} not found")
        if escrow.status == EscrowState.REFUNDED:
            raise AlreadyRefunded(f"{self._chain}: escrow {escrow_ref} already refunded")
        if escrow.status == EscrowState.WITHDRAWN:
            raise AlreadyWithdrawn(f"{self._chain}: escrow {escrow_ref} already withdrawn")
        if self._clock() < escrow.timelock:
            raise TimelockNotExpired(
                f"{self._chain}: escrow {escrow_ref} locked until {escrow.timelock}"
            )
        escrow.status = EscrowState.REFUNDED
        event = await self._emit("refunded", {"escrow_id": escrow_ref, "hashlock": escrow.hashlock})
        return event.tx_ref

    async def get_escrow(self, escrow_ref: str) -> EscrowInfo:
        self._maybe_fail("get_escrow")
        escrow = self._escrows.get(escrow_ref)
        if escrow is None:
            raise EscrowNotFound(f"{self._chain}: escrow {escrow_ref} not found")
        return _info(escrow)

    async def find_escrows(self, hashlock: str) -> list[EscrowInfo]:
        self.calls.append(("find_escrows", hashlock))
        self._maybe_fail("find_escrows")
        hashlock = normalize_hex(hashlock)
        return [_info(e) for e in self._escrows.values() if e.hashlock == hashlock]

    async def head_sequence(self) -> int:
        self._maybe_fail("head_sequence")
        return len(self._events)

    async def backfill(self, after: int, until: Optional[int] = None) -> list[RawChainEvent]:
        self._maybe_fail("backfill")
        if until is None:
            until = len(self._events)
        return [e for e in self._events if after < e.sequence <= until]

    async def subscribe(self, after: int) -> AsyncIterator[RawChainEvent]:
        self._maybe_fail("subscribe")
        position = after
        while True:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: self._drop_stream or len(self._events) > position
                )
                if self._drop_stream:
                    self._drop_stream = False
                    raise TransientInfrastructureError(f"{self._chain}: event stream dropped")
                pending = self._events[position:]
            for event in pending:
                position = event.sequence
                if event.sequence in self._hidden:
                    continue
                yield event
