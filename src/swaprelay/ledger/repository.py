"""Repository for swap registry queries within a single session."""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from swaprelay.ledger.models import (
    ChainCursor,
    EscrowRecord,
    EscrowStatus,
    OperatorAlert,
    Swap,
    SwapIntent,
    SwapStatus,
)


def _values(statuses: Iterable[SwapStatus]) -> list[str]:
    return [SwapStatus(s).value for s in statuses]


class LedgerRepository:
    """Repository for all registry-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Swap operations
    async def get_swap(self, swap_id: str) -> Optional[Swap]:
        """Get swap by ID."""
        stmt = select(Swap).where(Swap.id == swap_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_swap_by_hashlock(self, hashlock: str) -> Optional[Swap]:
        """Get swap by hashlock."""
        stmt = select(Swap).where(Swap.hashlock == hashlock)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_swaps(
        self,
        status: Optional[SwapStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Swap]:
        """List swaps, newest first."""
        stmt = select(Swap)
        if status is not None:
            stmt = stmt.where(Swap.status == SwapStatus(status).value)
        stmt = stmt.order_by(Swap.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add_swap(self, swap: Swap) -> Swap:
        """Insert a new swap (and any escrows attached to it)."""
        self.session.add(swap)
        await self.session.flush()
        return swap

    async def get_swaps_past_deadline(
        self, statuses: Iterable[SwapStatus], now: int
    ) -> list[Swap]:
        """Get swaps in the given statuses whose destination timelock has passed."""
        stmt = (
            select(Swap)
            .where(Swap.status.in_(_values(statuses)), Swap.destination_timelock <= now)
            .order_by(Swap.destination_timelock)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_swaps_with_open_escrows(self, statuses: Iterable[SwapStatus]) -> list[Swap]:
        """Get swaps in the given statuses that still have an open escrow."""
        open_swap_ids = select(EscrowRecord.swap_id).where(
            EscrowRecord.status == EscrowStatus.OPEN.value
        )
        stmt = (
            select(Swap)
            .where(Swap.status.in_(_values(statuses)), Swap.id.in_(open_swap_ids))
            .order_by(Swap.destination_timelock)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_locked_swaps_with_secret(self) -> list[Swap]:
        """Get LOCKED swaps whose secret is already known."""
        stmt = select(Swap).where(
            Swap.status == SwapStatus.LOCKED.value, Swap.secret.is_not(None)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_terminal_swaps_before(
        self, statuses: Iterable[SwapStatus], cutoff: datetime
    ) -> list[Swap]:
        """Get swaps in terminal statuses last touched before the cutoff."""
        stmt = select(Swap).where(Swap.status.in_(_values(statuses)), Swap.updated_at < cutoff)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_swap(self, swap: Swap) -> None:
        await self.session.delete(swap)

    # Escrow operations
    async def get_escrow(self, chain: str, escrow_reference: str) -> Optional[EscrowRecord]:
        """Get escrow by chain and on-chain reference."""
        stmt = select(EscrowRecord).where(
            EscrowRecord.chain == chain,
            EscrowRecord.escrow_reference == escrow_reference,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_escrow_by_id(self, escrow_id: int) -> Optional[EscrowRecord]:
        stmt = select(EscrowRecord).where(EscrowRecord.id == escrow_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Intent operations
    async def get_intent(self, intent_id: str) -> Optional[SwapIntent]:
        stmt = select(SwapIntent).where(SwapIntent.id == intent_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_intent_by_hashlock(self, hashlock: str) -> Optional[SwapIntent]:
        stmt = select(SwapIntent).where(SwapIntent.hashlock == hashlock)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_intent(self, intent: SwapIntent) -> SwapIntent:
        self.session.add(intent)
        await self.session.flush()
        return intent

    # Cursor operations
    async def get_cursor(self, chain: str) -> Optional[ChainCursor]:
        stmt = select(ChainCursor).where(ChainCursor.chain == chain)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_cursor(self, chain: str, sequence: int, now: datetime) -> ChainCursor:
        """Advance the cursor for a chain. Never moves backwards."""
        cursor = await self.get_cursor(chain)
        if cursor is None:
            cursor = ChainCursor(chain=chain, sequence=sequence, updated_at=now)
            self.session.add(cursor)
        elif sequence > cursor.sequence:
            cursor.sequence = sequence
            cursor.updated_at = now
        await self.session.flush()
        return cursor

    # Alert operations
    async def add_alert(
        self, kind: str, message: str, swap_id: Optional[str], now: datetime
    ) -> OperatorAlert:
        alert = OperatorAlert(swap_id=swap_id, kind=kind, message=message, created_at=now)
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def list_alerts(self, swap_id: Optional[str] = None, limit: int = 100) -> list[OperatorAlert]:
        stmt = select(OperatorAlert)
        if swap_id is not None:
            stmt = stmt.where(OperatorAlert.swap_id == swap_id)
        stmt = stmt.order_by(OperatorAlert.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
