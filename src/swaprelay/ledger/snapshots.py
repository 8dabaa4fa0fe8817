"""Immutable views of registry rows handed to callers outside a session."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from swaprelay.ledger.models import (
    EscrowRecord,
    EscrowSide,
    EscrowStatus,
    OperatorAlert,
    PartialFill,
    Swap,
    SwapIntent,
    SwapStatus,
    as_utc,
)


@dataclass(frozen=True)
class FillSnapshot:
    id: int
    escrow_reference: str
    amount: Decimal
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, fill: PartialFill) -> "FillSnapshot":
        return cls(
            id=fill.id,
            escrow_reference=fill.escrow_reference,
            amount=fill.amount,
            created_at=as_utc(fill.created_at),
        )


@dataclass(frozen=True)
class EscrowSnapshot:
    id: int
    swap_id: str
    chain: str
    side: EscrowSide
    escrow_reference: str
    amount: Decimal
    timelock: int
    status: EscrowStatus
    owned: bool
    tx_ref: Optional[str]
    refund_attempts: int
    withdraw_attempts: int
    alerted: bool

    @property
    def is_open(self) -> bool:
        return self.status == EscrowStatus.OPEN

    @classmethod
    def from_model(cls, escrow: EscrowRecord) -> "EscrowSnapshot":
        return cls(
            id=escrow.id,
            swap_id=escrow.swap_id,
            chain=escrow.chain,
            side=EscrowSide(escrow.side),
            escrow_reference=escrow.escrow_reference,
            amount=escrow.amount,
            timelock=escrow.timelock,
            status=EscrowStatus(escrow.status),
            owned=bool(escrow.owned),
            tx_ref=escrow.tx_ref,
            refund_attempts=escrow.refund_attempts or 0,
            withdraw_attempts=escrow.withdraw_attempts or 0,
            alerted=bool(escrow.alerted),
        )


@dataclass(frozen=True)
class SwapSnapshot:
    """Point-in-time copy of a swap with its fills and escrows."""

    id: str
    hashlock: str
    secret: Optional[str]
    source_chain: str
    destination_chain: str
    principal_amount: Decimal
    counter_amount: Decimal
    initiator_address: str
    beneficiary_address: str
    source_timelock: int
    destination_timelock: int
    status: SwapStatus
    rate_source: str
    failure_reason: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    fills: tuple[FillSnapshot, ...] = ()
    escrows: tuple[EscrowSnapshot, ...] = ()

    @property
    def filled_amount(self) -> Decimal:
        return sum((fill.amount for fill in self.fills), Decimal("0"))

    @property
    def source_escrows(self) -> list[EscrowSnapshot]:
        return [e for e in self.escrows if e.side == EscrowSide.SOURCE]

    @property
    def destination_escrows(self) -> list[EscrowSnapshot]:
        return [e for e in self.escrows if e.side == EscrowSide.DESTINATION]

    @property
    def destination_coverage(self) -> Decimal:
        """Total amount escrowed on the destination chain so far."""
        return sum((e.amount for e in self.destination_escrows), Decimal("0"))

    @property
    def open_escrows(self) -> list[EscrowSnapshot]:
        return [e for e in self.escrows if e.is_open]

    def escrow(self, chain: str, escrow_reference: str) -> Optional[EscrowSnapshot]:
        for e in self.escrows:
            if e.chain == chain and e.escrow_reference == escrow_reference:
                return e
        return None

    @classmethod
    def from_model(cls, swap: Swap) -> "SwapSnapshot":
        return cls(
            id=swap.id,
            hashlock=swap.hashlock,
            secret=swap.secret,
            source_chain=swap.source_chain,
            destination_chain=swap.destination_chain,
            principal_amount=swap.principal_amount,
            counter_amount=swap.counter_amount,
            initiator_address=swap.initiator_address,
            beneficiary_address=swap.beneficiary_address,
            source_timelock=swap.source_timelock,
            destination_timelock=swap.destination_timelock,
            status=SwapStatus(swap.status),
            rate_source=swap.rate_source,
            failure_reason=swap.failure_reason,
            created_at=as_utc(swap.created_at),
            updated_at=as_utc(swap.updated_at),
            fills=tuple(FillSnapshot.from_model(f) for f in swap.fills),
            escrows=tuple(EscrowSnapshot.from_model(e) for e in swap.escrows),
        )


@dataclass(frozen=True)
class IntentSnapshot:
    id: str
    hashlock: str
    source_chain: str
    destination_chain: str
    amount: Decimal
    beneficiary_address: str
    timelock: int
    auction_start: Decimal
    auction_floor: Decimal
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, intent: SwapIntent) -> "IntentSnapshot":
        return cls(
            id=intent.id,
            hashlock=intent.hashlock,
            source_chain=intent.source_chain,
            destination_chain=intent.destination_chain,
            amount=intent.amount,
            beneficiary_address=intent.beneficiary_address,
            timelock=intent.timelock,
            auction_start=intent.auction_start,
            auction_floor=intent.auction_floor,
            created_at=as_utc(intent.created_at),
        )


@dataclass(frozen=True)
class AlertSnapshot:
    id: int
    swap_id: Optional[str]
    kind: str
    message: str
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, alert: OperatorAlert) -> "AlertSnapshot":
        return cls(
            id=alert.id,
            swap_id=alert.swap_id,
            kind=alert.kind,
            message=alert.message,
            created_at=as_utc(alert.created_at),
        )
