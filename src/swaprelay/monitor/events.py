"""Canonical chain events consumed by the relayer.

Every native event is normalized into one of four types, each tagged with
the chain it came from, the native transaction reference and the chain's
monotonic sequence marker.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union


@dataclass(frozen=True)
class ChainEvent:
    chain: str
    tx_ref: str
    sequence: int
    escrow_ref: str
    hashlock: Optional[str]

    @property
    def partition_key(self) -> str:
        """Key that serializes handling of events for the same swap."""
        return self.hashlock or f"{self.chain}:{self.escrow_ref}"


@dataclass(frozen=True)
class EscrowCreated(ChainEvent):
    """An HTLC escrow was funded."""

    amount: Decimal
    timelock: int
    initiator: str
    beneficiary: str
    destination_chain: Optional[str] = None
    destination_beneficiary: Optional[str] = None


@dataclass(frozen=True)
class SecretRevealed(ChainEvent):
    """The preimage of a hashlock became public on a chain."""

    secret: str


@dataclass(frozen=True)
class EscrowCompleted(ChainEvent):
    """An escrow was withdrawn by its beneficiary."""


@dataclass(frozen=True)
class EscrowRefunded(ChainEvent):
    """An escrow was returned to its creator."""


MonitorEvent = Union[EscrowCreated, SecretRevealed, EscrowCompleted, EscrowRefunded]
