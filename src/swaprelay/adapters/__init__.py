"""Chain adapters: escrow primitives and event streams per ledger."""

from swaprelay.adapters.base import (
    AdapterTimeout,
    AlreadyRefunded,
    AlreadyWithdrawn,
    ChainAdapter,
    ChainAdapterError,
    EscrowInfo,
    EscrowNotFound,
    EscrowState,
    RawChainEvent,
    SecretMismatch,
    TimelockNotExpired,
)

__all__ = [
    "AdapterTimeout",
    "AlreadyRefunded",
    "AlreadyWithdrawn",
    "ChainAdapter",
    "ChainAdapterError",
    "EscrowInfo",
    "EscrowNotFound",
    "EscrowState",
    "RawChainEvent",
    "SecretMismatch",
    "TimelockNotExpired",
]
