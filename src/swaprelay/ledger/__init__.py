"""Ledger module: durable swap registry and its state machine."""

from swaprelay.ledger.database import get_db, get_session_factory, init_db
from swaprelay.ledger.models import (
    ChainCursor,
    EscrowRecord,
    EscrowSide,
    EscrowStatus,
    OperatorAlert,
    PartialFill,
    Swap,
    SwapIntent,
    SwapStatus,
)
from swaprelay.ledger.registry import NewSwap, SwapRegistry
from swaprelay.ledger.repository import LedgerRepository
from swaprelay.ledger.snapshots import EscrowSnapshot, IntentSnapshot, SwapSnapshot

__all__ = [
    # Models
    "Swap",
    "PartialFill",
    "EscrowRecord",
    "SwapIntent",
    "ChainCursor",
    "OperatorAlert",
    # Enums
    "SwapStatus",
    "EscrowSide",
    "EscrowStatus",
    # Snapshots
    "SwapSnapshot",
    "EscrowSnapshot",
    "IntentSnapshot",
    # Database
    "get_db",
    "get_session_factory",
    "init_db",
    "LedgerRepository",
    "NewSwap",
    "SwapRegistry",
]
