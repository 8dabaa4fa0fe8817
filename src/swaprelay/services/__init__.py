"""Services exposed to upstream callers."""

from swaprelay.services.bridge_service import (
    AWAITING_SOURCE_ESCROW,
    BridgeService,
    QuoteView,
    SubmittedSwap,
    SwapStatusView,
)

__all__ = [
    "AWAITING_SOURCE_ESCROW",
    "BridgeService",
    "QuoteView",
    "SubmittedSwap",
    "SwapStatusView",
]
