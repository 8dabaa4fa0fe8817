"""Cross-chain event monitor and canonical event types."""

from swaprelay.monitor.events import (
    ChainEvent,
    EscrowCompleted,
    EscrowCreated,
    EscrowRefunded,
    MonitorEvent,
    SecretRevealed,
)
from swaprelay.monitor.monitor import CrossChainEventMonitor, CursorTracker
from swaprelay.monitor.normalize import normalize

__all__ = [
    "ChainEvent",
    "CrossChainEventMonitor",
    "CursorTracker",
    "EscrowCompleted",
    "EscrowCreated",
    "EscrowRefunded",
    "MonitorEvent",
    "SecretRevealed",
    "normalize",
]
