"""Chain adapter contract.

The relayer never talks to a ledger directly. Each chain is wrapped by an
adapter exposing escrow primitives and a restartable, sequence-tagged event
stream.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Optional

from swaprelay.errors import (
    ConsistencyViolation,
    IrrecoverableLedgerError,
    SwapRelayError,
    TransientInfrastructureError,
)

logger = logging.getLogger(__name__)


class ChainAdapterError(SwapRelayError):
    """Base class for typed escrow failures reported by an adapter."""


class SecretMismatch(ChainAdapterError, ConsistencyViolation):
    """The escrow rejected the secret."""


class EscrowNotFound(ChainAdapterError, IrrecoverableLedgerError):
    """No escrow exists under that reference."""


class AlreadyWithdrawn(ChainAdapterError):
    """The escrow was already withdrawn with the secret."""


class AlreadyRefunded(ChainAdapterError):
    """The escrow was already refunded to its creator."""


class TimelockNotExpired(ChainAdapterError):
    """Refund attempted before the escrow's timelock."""


class AdapterTimeout(TransientInfrastructureError):
    """The adapter call did not finish in time."""


class EscrowState(str, Enum):
    """On-chain state of an escrow."""

    OPEN = "open"
    WITHDRAWN = "withdrawn"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class EscrowInfo:
    """Escrow as reported by the chain."""

    escrow_ref: str
    amount: Decimal
    hashlock: str
    timelock: int
    status: EscrowState
    initiator: str = ""
    beneficiary: str = ""


@dataclass(frozen=True)
class RawChainEvent:
    """Native event as emitted by a chain, before normalization.

    `kind` is the chain's own event name (HTLCCreated, htlc_withdrawn, ...)
    and `payload` its raw fields.
    """

    chain: str
    kind: str
    sequence: int
    tx_ref: str
    payload: dict = field(default_factory=dict)


class ChainAdapter(ABC):
    """Abstract base class for per-chain escrow adapters."""

    @property
    @abstractmethod
    def chain(self) -> str:
        """Chain name identifier (ethereum, tron, near)."""
        pass

    @abstractmethod
    async def create_escrow(
        self,
        hashlock: str,
        timelock: int,
        beneficiary: str,
        amount: Decimal,
    ) -> str:
        """
        Lock funds in a new HTLC escrow.

        Args:
            hashlock: SHA-256 commitment (64 hex chars)
            timelock: Absolute unix deadline after which the creator may refund
            beneficiary: Address able to withdraw with the secret
            amount: Amount in the chain's native asset

        Returns:
            Escrow reference

        Raises:
            TransientInfrastructureError: RPC failure, safe to retry
            IrrecoverableLedgerError: Revert, insufficient liquidity, nonce conflict
        """
        pass

    @abstractmethod
    async def withdraw(self, escrow_ref: str, secret: str) -> str:
        """
        Withdraw an escrow by presenting the secret.

        Returns:
            Transaction reference

        Raises:
            SecretMismatch, EscrowNotFound, AlreadyWithdrawn
        """
        pass

    @abstractmethod
    async def refund(self, escrow_ref: str) -> str:
        """
        Return an expired escrow to its creator.

        Returns:
            Transaction reference

        Raises:
            TimelockNotExpired, AlreadyRefunded, AlreadyWithdrawn, EscrowNotFound
        """
        pass

    @abstractmethod
    async def get_escrow(self, escrow_ref: str) -> EscrowInfo:
        """Query escrow details. Raises EscrowNotFound."""
        pass

    @abstractmethod
    async def find_escrows(self, hashlock: str) -> list[EscrowInfo]:
        """Escrows of any state locked under `hashlock`, oldest first.

        Used to reconcile a creation whose answer was lost: the escrow may
        have landed even though the call timed out.
        """
        pass

    @abstractmethod
    async def head_sequence(self) -> int:
        """Sequence marker of the newest event the chain has emitted."""
        pass

    @abstractmethod
    async def backfill(self, after: int, until: Optional[int] = None) -> list[RawChainEvent]:
        """Events with after < sequence <= until, in sequence order."""
        pass

    @abstractmethod
    def subscribe(self, after: int) -> AsyncIterator[RawChainEvent]:
        """Live stream of events with sequence > after.

        The iterator raises TransientInfrastructureError when the connection
        drops; callers resubscribe.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
